"""Lot Matcher — FIFO сопоставление buy-лотов с sell-событиями.

Чистый детерминированный fold по упорядоченной последовательности
TradeEvent одной пары (wallet, token). Все quote amounts уже в
канонической валюте.

Buy: новый OpenLot в конец очереди (entry_price = цена сделки),
total_original_position += размер.

Sell размера S: пока S > 0 и очередь не пуста, берётся самый старый лот,
consumed = min(S, remaining_size):
- cost_basis фрагмента = consumed * entry_price лота
- proceeds фрагмента = pro-rata доля settlement-суммы sell по consumed;
  последний фрагмент получает остаток, сумма proceeds равна сумме sell точно
- остаток лота <= lot_epsilon поглощается фрагментом (лот удаляется)
- остаток sell <= lot_epsilon считается сопоставленным: proceeds не уменьшаются

Остаток S без открытых лотов (pre-history sell) не превращается в лот:
cost basis неизвестен. Он отбрасывается с диагностикой UnmatchedSellError.

Если sell опустошил непустую очередь, цикл закрывается в Cycle Tracker.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Optional

from src.core.domain import (
    ClosedLot,
    ExitReason,
    OpenLot,
    TradeEvent,
    day_of_week_sunday_zero,
    minutes_between,
    pnl_percent,
)
from src.core.errors import UnmatchedSellError
from src.core.math.numerical_safeguards import ZERO, is_positive, is_zero, split_pro_rata
from src.ledger.config import LedgerConfig
from src.ledger.cycle_tracker import CycleTracker

logger = logging.getLogger(__name__)


# =============================================================================
# ENRICHMENT
# =============================================================================


def classify_exit(pnl_pct: Decimal, config: LedgerConfig) -> ExitReason:
    """Эвристическая причина выхода по pnl% (пороги из конфигурации)."""
    if pnl_pct > config.take_profit_pct:
        return ExitReason.TAKE_PROFIT
    if pnl_pct < config.stop_loss_pct:
        return ExitReason.STOP_LOSS
    return ExitReason.MANUAL


def timing_fields(entry_time: datetime, exit_time: datetime) -> dict[str, Any]:
    """Час дня и день недели входа/выхода (UTC, воскресенье = 0)."""
    return {
        "entry_hour_of_day": entry_time.hour,
        "entry_day_of_week": day_of_week_sunday_zero(entry_time),
        "exit_hour_of_day": exit_time.hour,
        "exit_day_of_week": day_of_week_sunday_zero(exit_time),
    }


def excursion_fields(pnl_pct: Decimal) -> dict[str, Optional[Decimal]]:
    """Приближение MFE/MAE по итоговому pnl% (без внутрисделочной истории цен)."""
    return {
        "max_profit_percent": pnl_pct if pnl_pct > 0 else None,
        "max_drawdown_percent": -pnl_pct if pnl_pct < 0 else None,
    }


# =============================================================================
# RESULT
# =============================================================================


@dataclass(frozen=True)
class MatchResult:
    """Итог matching-прогона одной пары (wallet, token)."""

    wallet_id: str
    token_id: str
    closed_lots: tuple[ClosedLot, ...]
    open_lots: tuple[OpenLot, ...]
    total_original_position: Decimal
    unmatched_sells: tuple[UnmatchedSellError, ...] = ()
    last_price: Optional[Decimal] = None
    cycle_tracker: CycleTracker = field(default_factory=CycleTracker, compare=False)

    @property
    def open_balance(self) -> Decimal:
        return sum((lot.remaining_size for lot in self.open_lots), ZERO)

    @property
    def unmatched_amount(self) -> Decimal:
        return sum((u.unmatched_amount for u in self.unmatched_sells), ZERO)


# =============================================================================
# MATCHER
# =============================================================================


class LotMatcher:
    """FIFO matcher одной пары (wallet, token).

    Экземпляр принадлежит одному прогону и не разделяется между парами.

    Args:
        wallet_id: кошелёк
        token_id: токен
        config: политики (lot_epsilon, пороги exit reason)
        cycle_tracker: трекер циклов (default: новый)
    """

    def __init__(
        self,
        wallet_id: str,
        token_id: str,
        config: Optional[LedgerConfig] = None,
        cycle_tracker: Optional[CycleTracker] = None,
    ):
        self.wallet_id = wallet_id
        self.token_id = token_id
        self.config = config or LedgerConfig()
        self.cycle_tracker = cycle_tracker or CycleTracker()

        self._queue: deque[OpenLot] = deque()
        self._closed: list[ClosedLot] = []
        self._unmatched: list[UnmatchedSellError] = []
        self._total_original_position = ZERO
        self._last_price: Optional[Decimal] = None

    # -------------------------------------------------------------------------
    # STATE
    # -------------------------------------------------------------------------

    @property
    def open_lots(self) -> tuple[OpenLot, ...]:
        """Снимок очереди (копии, мутация снаружи не влияет на matcher)."""
        return tuple(replace(lot) for lot in self._queue)

    @property
    def open_balance(self) -> Decimal:
        return sum((lot.remaining_size for lot in self._queue), ZERO)

    @property
    def total_original_position(self) -> Decimal:
        return self._total_original_position

    # -------------------------------------------------------------------------
    # PROCESSING
    # -------------------------------------------------------------------------

    def process(self, event: TradeEvent) -> list[ClosedLot]:
        """Обработать одно событие; для buy возвращает пустой список."""
        if event.wallet_id != self.wallet_id or event.token_id != self.token_id:
            raise ValueError(
                f"event {event.source_trade_id} belongs to ({event.wallet_id}, {event.token_id}), "
                f"matcher is ({self.wallet_id}, {self.token_id})"
            )
        if event.quote_currency != self.config.canonical_currency:
            raise ValueError(
                f"event {event.source_trade_id} quoted in {event.quote_currency}, "
                f"expected {self.config.canonical_currency}"
            )
        self._last_price = event.price
        if event.is_buy:
            self.process_buy(event)
            return []
        return self.process_sell(event)

    def process_buy(self, event: TradeEvent) -> OpenLot:
        lot = OpenLot(
            remaining_size=event.token_amount,
            entry_price=event.price,
            entry_time=event.timestamp,
            origin_trade_id=event.source_trade_id,
            low_confidence=event.rate_degraded,
        )
        self._queue.append(lot)
        self._total_original_position += event.token_amount
        return lot

    def process_sell(self, event: TradeEvent) -> list[ClosedLot]:
        """Сопоставить sell с открытыми лотами FIFO.

        Returns:
            Closed lots этого sell (по одному на потреблённый лот)
        """
        eps = self.config.lot_epsilon
        to_sell = event.token_amount
        fragments: list[tuple[OpenLot, Decimal]] = []

        while is_positive(to_sell, eps) and self._queue:
            lot = self._queue[0]
            consumed = min(to_sell, lot.remaining_size)
            leftover = lot.remaining_size - consumed
            if is_zero(leftover, eps):
                consumed = lot.remaining_size
                self._queue.popleft()
            else:
                lot.remaining_size = leftover
            fragments.append((replace(lot, remaining_size=ZERO), consumed))
            to_sell -= consumed
            if is_zero(to_sell, eps):
                to_sell = ZERO

        # sell без единого фрагмента (в том числе размером <= epsilon) тоже попадает в диагностику
        fully_matched = not is_positive(to_sell, eps) and bool(fragments)
        if not fully_matched:
            unmatched = UnmatchedSellError(event.source_trade_id, to_sell, event.token_amount)
            self._unmatched.append(unmatched)
            logger.warning(
                "pre-history sell %s (wallet=%s token=%s): %s of %s tokens have no open lot, dropped",
                event.source_trade_id,
                self.wallet_id,
                self.token_id,
                to_sell,
                event.token_amount,
            )

        if not fragments:
            return []

        lots = self._close_fragments(event, fragments, fully_matched)
        self._closed.extend(lots)

        if not self._queue:
            record = self.cycle_tracker.close_cycle(event.timestamp, event.price)
            logger.debug("cycle %d closed for %s/%s pnl=%s", record.sequence_number, self.wallet_id, self.token_id, record.pnl)
        return lots

    def _close_fragments(
        self,
        event: TradeEvent,
        fragments: list[tuple[OpenLot, Decimal]],
        fully_matched: bool,
    ) -> list[ClosedLot]:
        # Остаток sell в пределах epsilon не уменьшает proceeds
        if fully_matched:
            matched_proceeds = event.quote_amount
        else:
            matched = sum((consumed for _, consumed in fragments), ZERO)
            matched_proceeds = event.quote_amount * matched / event.token_amount
        proceeds_parts = split_pro_rata(matched_proceeds, [consumed for _, consumed in fragments])

        exit_price = event.price
        sequence_number = self.cycle_tracker.sequence_number
        reentry = self.cycle_tracker.reentry_metrics(fragments[0][0].entry_time, exit_price, sequence_number)

        dca_entry_count = len(fragments) if len(fragments) > 1 else None
        span = minutes_between(fragments[0][0].entry_time, fragments[-1][0].entry_time)
        dca_time_span = span if span > 0 else None

        lots: list[ClosedLot] = []
        for (lot, consumed), proceeds in zip(fragments, proceeds_parts):
            cost_basis = lot.cost_of(consumed)
            pnl = proceeds - cost_basis
            pnl_pct = pnl_percent(pnl, cost_basis)
            if pnl_pct is None:
                pnl_pct = ZERO

            lots.append(
                ClosedLot(
                    wallet_id=self.wallet_id,
                    token_id=self.token_id,
                    buy_trade_id=lot.origin_trade_id,
                    sell_trade_id=event.source_trade_id,
                    sequence_number=sequence_number,
                    size=consumed,
                    entry_price=lot.entry_price,
                    exit_price=exit_price,
                    entry_time=lot.entry_time,
                    exit_time=event.timestamp,
                    hold_time_minutes=minutes_between(lot.entry_time, event.timestamp),
                    cost_basis=cost_basis,
                    proceeds=proceeds,
                    realized_pnl=pnl,
                    realized_pnl_percent=pnl_pct,
                    cost_known=lot.cost_known,
                    low_confidence=lot.low_confidence or event.rate_degraded,
                    exit_reason=classify_exit(pnl_pct, self.config),
                    dca_entry_count=dca_entry_count,
                    dca_time_span_minutes=dca_time_span,
                    reentry_time_minutes=reentry.reentry_time_minutes,
                    reentry_price_change_percent=reentry.reentry_price_change_percent,
                    previous_cycle_pnl=reentry.previous_cycle_pnl,
                    **timing_fields(lot.entry_time, event.timestamp),
                    **excursion_fields(pnl_pct),
                )
            )
            self.cycle_tracker.record_pnl(pnl)
        return lots

    def result(self) -> MatchResult:
        return MatchResult(
            wallet_id=self.wallet_id,
            token_id=self.token_id,
            closed_lots=tuple(self._closed),
            open_lots=self.open_lots,
            total_original_position=self._total_original_position,
            unmatched_sells=tuple(self._unmatched),
            last_price=self._last_price,
            cycle_tracker=self.cycle_tracker,
        )

    def run(self, events: Iterable[TradeEvent]) -> MatchResult:
        """Fold по событиям в детерминированном порядке (TradeEvent.sort_key)."""
        for event in sorted(events, key=TradeEvent.sort_key):
            self.process(event)
        return self.result()
