"""
Domain models and value objects.

Contains fundamental ledger entities: TradeEvent, OpenLot, ClosedLot, CycleRecord.
"""

from src.core.domain.closed_lot import SYNTHETIC_TRADE_ID, ClosedLot, ExitReason
from src.core.domain.cycle import CycleRecord
from src.core.domain.lot import OpenLot
from src.core.domain.trade_event import TradeEvent, TradeSide
from src.core.domain.units import (
    SECONDS_PER_MINUTE,
    day_of_week_sunday_zero,
    ensure_utc,
    minute_bucket,
    minutes_between,
    pnl_percent,
    price_change_percent,
    price_per_token,
    seconds_between,
)

__all__ = [
    # Units module
    "SECONDS_PER_MINUTE",
    "day_of_week_sunday_zero",
    "ensure_utc",
    "minute_bucket",
    "minutes_between",
    "pnl_percent",
    "price_change_percent",
    "price_per_token",
    "seconds_between",
    # Trade event
    "TradeEvent",
    "TradeSide",
    # Lots
    "OpenLot",
    "ClosedLot",
    "ExitReason",
    "SYNTHETIC_TRADE_ID",
    # Cycles
    "CycleRecord",
]
