"""Metrics Sink — запись realized-метрик обратно на уровень сделок."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol, runtime_checkable


@runtime_checkable
class MetricsSink(Protocol):
    async def update_trade_realized_metrics(
        self,
        trade_id: str,
        realized_pnl: Decimal,
        realized_pnl_percent: Optional[Decimal],
        hold_time_seconds: int,
    ) -> None:
        ...


@dataclass(frozen=True)
class StoredTradeMetrics:
    realized_pnl: Decimal
    realized_pnl_percent: Optional[Decimal]
    hold_time_seconds: int


class InMemoryMetricsSink:
    """Metrics sink в памяти; повторное обновление перезаписывает значения."""

    def __init__(self):
        self.metrics: dict[str, StoredTradeMetrics] = {}
        self.update_count = 0

    async def update_trade_realized_metrics(
        self,
        trade_id: str,
        realized_pnl: Decimal,
        realized_pnl_percent: Optional[Decimal],
        hold_time_seconds: int,
    ) -> None:
        self.metrics[trade_id] = StoredTradeMetrics(realized_pnl, realized_pnl_percent, hold_time_seconds)
        self.update_count += 1
