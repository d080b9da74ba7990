"""
Ports — capability-интерфейсы ledger и reference-адаптеры.

Ядро получает все внешние зависимости через конструктор:
trade source, price oracle, closed-lot store, metrics sink.
"""

from src.ports.metrics_sink import InMemoryMetricsSink, MetricsSink, StoredTradeMetrics
from src.ports.persistence import ClosedLotStore, InMemoryClosedLotStore
from src.ports.price_oracle import PriceOracle, StaticPriceOracle, StaticTokenPriceLookup, TokenPriceLookup
from src.ports.trade_source import InMemoryTradeSource, TradeSource

__all__ = [
    "TradeSource",
    "InMemoryTradeSource",
    "PriceOracle",
    "TokenPriceLookup",
    "StaticPriceOracle",
    "StaticTokenPriceLookup",
    "ClosedLotStore",
    "InMemoryClosedLotStore",
    "MetricsSink",
    "InMemoryMetricsSink",
    "StoredTradeMetrics",
]
