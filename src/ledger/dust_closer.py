"""Dust Closer — synthetic закрытие пренебрежимо малого остатка позиции.

После обработки всего потока сделок:
    remaining_balance = Σ remaining_size открытых лотов
    balance_fraction  = remaining_balance / total_original_position

Если 0 < balance_fraction < dust_threshold (строго), весь остаток
закрывается одним synthetic ClosedLot:
- entry_price = size-weighted средняя цена входа открытых лотов
- exit_price = текущая цена токена; без неё — entry_price (PnL = 0)
- entry_time = самый ранний вход среди открытых лотов
- exit_time = now (инъецируемые часы)
- buy_trade_id / sell_trade_id = None (synthetic), is_dust = True
- sequence_number = следующий номер: текущий цикл закрывается частичными
  продажами, synthetic лот открывает и сразу закрывает свой цикл

Остаток на пороге и выше считается реально открытой позицией:
closed lot не создаётся.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Sequence

from src.core.domain import ClosedLot, ExitReason, OpenLot, ensure_utc, minutes_between, pnl_percent
from src.core.math.numerical_safeguards import ZERO, safe_divide, weighted_average
from src.ledger.config import LedgerConfig
from src.ledger.cycle_tracker import CycleTracker
from src.ledger.lot_matcher import MatchResult, excursion_fields, timing_fields

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DustAssessment:
    """Оценка остатка относительно исторической позиции."""

    remaining_balance: Decimal
    total_original_position: Decimal
    balance_fraction: Optional[Decimal]
    is_dust: bool


class DustCloser:
    """Закрытие dust-остатков по порогу из LedgerConfig.dust_threshold."""

    def __init__(self, config: Optional[LedgerConfig] = None):
        self.config = config or LedgerConfig()

    def evaluate(self, open_lots: Sequence[OpenLot], total_original_position: Decimal) -> DustAssessment:
        remaining = sum((lot.remaining_size for lot in open_lots), ZERO)
        fraction = safe_divide(remaining, total_original_position) if total_original_position > 0 else None
        is_dust = fraction is not None and ZERO < fraction < self.config.dust_threshold
        return DustAssessment(
            remaining_balance=remaining,
            total_original_position=total_original_position,
            balance_fraction=fraction,
            is_dust=is_dust,
        )

    def close(
        self,
        wallet_id: str,
        token_id: str,
        open_lots: Sequence[OpenLot],
        total_original_position: Decimal,
        cycle_tracker: CycleTracker,
        now: datetime,
        current_price: Optional[Decimal] = None,
    ) -> Optional[ClosedLot]:
        """Synthetic closed lot для dust-остатка или None.

        Args:
            open_lots: открытые лоты в FIFO-порядке
            total_original_position: сумма всех buy за прогон
            cycle_tracker: трекер циклов прогона (цикл закрывается)
            now: момент закрытия
            current_price: текущая цена токена (canonical/token), если известна
        """
        assessment = self.evaluate(open_lots, total_original_position)
        if not assessment.is_dust:
            if assessment.remaining_balance > 0:
                logger.debug(
                    "%s/%s: open balance %s (%s of position) stays open",
                    wallet_id,
                    token_id,
                    assessment.remaining_balance,
                    assessment.balance_fraction,
                )
            return None

        size = assessment.remaining_balance
        cost_basis = sum((lot.remaining_cost() for lot in open_lots), ZERO)
        entry_price = weighted_average((lot.entry_price, lot.remaining_size) for lot in open_lots)

        if current_price is not None and current_price > 0:
            exit_price = current_price
            proceeds = size * exit_price
        else:
            exit_price = entry_price
            proceeds = cost_basis

        pnl = proceeds - cost_basis
        pnl_pct = pnl_percent(pnl, cost_basis)
        if pnl_pct is None:
            pnl_pct = ZERO

        entry_time = min(lot.entry_time for lot in open_lots)
        exit_time = max(ensure_utc(now), entry_time)
        # Номер dust-лота на единицу больше номера, под которым шли продажи
        cycle_tracker.close_cycle(exit_time, exit_price)
        sequence_number = cycle_tracker.sequence_number

        closed = ClosedLot(
            wallet_id=wallet_id,
            token_id=token_id,
            buy_trade_id=None,
            sell_trade_id=None,
            sequence_number=sequence_number,
            size=size,
            entry_price=entry_price,
            exit_price=exit_price,
            entry_time=entry_time,
            exit_time=exit_time,
            hold_time_minutes=minutes_between(entry_time, exit_time),
            cost_basis=cost_basis,
            proceeds=proceeds,
            realized_pnl=pnl,
            realized_pnl_percent=pnl_pct,
            is_dust=True,
            cost_known=all(lot.cost_known for lot in open_lots),
            low_confidence=any(lot.low_confidence for lot in open_lots),
            exit_reason=ExitReason.DUST,
            **timing_fields(entry_time, exit_time),
            **excursion_fields(pnl_pct),
        )
        cycle_tracker.record_pnl(pnl)
        cycle_tracker.close_cycle(exit_time, exit_price)

        logger.info(
            "dust close %s/%s: %s tokens (%s of position), seq=%d",
            wallet_id,
            token_id,
            size,
            assessment.balance_fraction,
            sequence_number,
        )
        return closed

    def apply(self, result: MatchResult, now: datetime, current_price: Optional[Decimal] = None) -> Optional[ClosedLot]:
        """Dust-закрытие по итогу LotMatcher.run()."""
        return self.close(
            wallet_id=result.wallet_id,
            token_id=result.token_id,
            open_lots=result.open_lots,
            total_original_position=result.total_original_position,
            cycle_tracker=result.cycle_tracker,
            now=now,
            current_price=current_price,
        )
