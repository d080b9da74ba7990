"""Metrics Aggregator — realized-метрики уровня сделки из closed lots.

Одна сделка может быть разбита на много лотов с любой стороны, поэтому
метрики накапливаются отдельно по sell_trade_id и по buy_trade_id:

    realized_pnl         = Σ pnl
    realized_pnl_percent = Σ pnl / Σ cost * 100   (None если Σ cost == 0)
    hold_time_seconds    = size-weighted среднее, округление до целых, >= 0

Synthetic (dust) лоты не имеют trade id и не агрегируются.
Результат информационный и не влияет на matching.
"""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Iterator, Optional

from src.core.domain import ClosedLot, pnl_percent
from src.core.math.numerical_safeguards import ZERO


@dataclass(frozen=True)
class TradeRealizedMetrics:
    """Агрегат для одной сделки (buy или sell)."""

    trade_id: str
    realized_pnl: Decimal
    realized_pnl_percent: Optional[Decimal]
    hold_time_seconds: int
    lot_count: int


@dataclass
class _Bucket:
    pnl: Decimal = ZERO
    cost: Decimal = ZERO
    size: Decimal = ZERO
    weighted_hold: Decimal = ZERO
    count: int = 0

    def add(self, lot: ClosedLot) -> None:
        self.pnl += lot.realized_pnl
        self.cost += lot.cost_basis
        self.size += lot.size
        self.weighted_hold += lot.size * lot.hold_time_seconds()
        self.count += 1

    def finish(self, trade_id: str) -> TradeRealizedMetrics:
        hold = self.weighted_hold / self.size if self.size > 0 else ZERO
        hold_seconds = max(0, int(hold.quantize(Decimal(1), rounding=ROUND_HALF_UP)))
        return TradeRealizedMetrics(
            trade_id=trade_id,
            realized_pnl=self.pnl,
            realized_pnl_percent=pnl_percent(self.pnl, self.cost),
            hold_time_seconds=hold_seconds,
            lot_count=self.count,
        )


@dataclass(frozen=True)
class MetricsAggregate:
    """Метрики по sell- и buy-сделкам."""

    by_sell: dict[str, TradeRealizedMetrics] = field(default_factory=dict)
    by_buy: dict[str, TradeRealizedMetrics] = field(default_factory=dict)

    def __iter__(self) -> Iterator[TradeRealizedMetrics]:
        yield from self.by_buy.values()
        yield from self.by_sell.values()

    def __len__(self) -> int:
        return len(self.by_buy) + len(self.by_sell)

    def get(self, trade_id: str) -> Optional[TradeRealizedMetrics]:
        return self.by_sell.get(trade_id) or self.by_buy.get(trade_id)

    def select(self, trade_ids: Iterable[str]) -> list[TradeRealizedMetrics]:
        """Метрики только указанных сделок (для инкрементального обновления)."""
        wanted = set(trade_ids)
        return [m for m in self if m.trade_id in wanted]


class MetricsAggregator:
    """Агрегация closed lots → TradeRealizedMetrics."""

    def aggregate(self, lots: Iterable[ClosedLot]) -> MetricsAggregate:
        sells: dict[str, _Bucket] = {}
        buys: dict[str, _Bucket] = {}
        for lot in lots:
            if lot.sell_trade_id is not None:
                sells.setdefault(lot.sell_trade_id, _Bucket()).add(lot)
            if lot.buy_trade_id is not None:
                buys.setdefault(lot.buy_trade_id, _Bucket()).add(lot)

        return MetricsAggregate(
            by_sell={tid: b.finish(tid) for tid, b in sells.items()},
            by_buy={tid: b.finish(tid) for tid, b in buys.items()},
        )
