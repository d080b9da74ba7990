"""
Ledger — FIFO closed-lot matching и realized PnL.

Pipeline: Trade Normalizer → Currency Converter → Lot Matcher
(+ Cycle Tracker) → Dust Closer → Metrics Aggregator, оркестрируемый
LedgerService.
"""

from src.ledger.config import LedgerConfig, ledger_config_from_mapping, load_ledger_config
from src.ledger.currency_converter import Conversion, CurrencyConverter
from src.ledger.cycle_tracker import CycleTracker, ReentryMetrics
from src.ledger.dust_closer import DustAssessment, DustCloser
from src.ledger.lot_matcher import LotMatcher, MatchResult, classify_exit
from src.ledger.metrics_aggregator import MetricsAggregate, MetricsAggregator, TradeRealizedMetrics
from src.ledger.normalizer import NormalizationResult, SkippedTrade, TradeNormalizer, parse_timestamp
from src.ledger.service import LedgerRun, LedgerService, PairOutcome

__all__ = [
    # Config
    "LedgerConfig",
    "ledger_config_from_mapping",
    "load_ledger_config",
    # Normalization
    "TradeNormalizer",
    "NormalizationResult",
    "SkippedTrade",
    "parse_timestamp",
    # Conversion
    "CurrencyConverter",
    "Conversion",
    # Matching
    "LotMatcher",
    "MatchResult",
    "classify_exit",
    "CycleTracker",
    "ReentryMetrics",
    "DustCloser",
    "DustAssessment",
    # Metrics
    "MetricsAggregator",
    "MetricsAggregate",
    "TradeRealizedMetrics",
    # Service
    "LedgerService",
    "LedgerRun",
    "PairOutcome",
]
