"""Cycle Tracker — нумерация циклов buy→…→sell по токену.

Цикл начинается первым buy при пустой очереди и завершается sell,
который опустошает очередь открытых лотов. Dust-закрытие завершает
текущий цикл, а synthetic лот получает следующий номер и свой цикл.

- Все closed lots одного цикла получают текущий sequence_number.
- Номер увеличивается только ПОСЛЕ полного закрытия, поэтому все
  фрагменты закрывающего sell разделяют один номер.
- Re-entry метрики берутся из CycleRecord[sequence_number - 1];
  для первого цикла их нет.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from src.core.domain import CycleRecord, minutes_between, price_change_percent
from src.core.math.numerical_safeguards import ZERO


@dataclass(frozen=True)
class ReentryMetrics:
    """Метрики повторного входа относительно предыдущего цикла."""

    reentry_time_minutes: Optional[int] = None
    reentry_price_change_percent: Optional[Decimal] = None
    previous_cycle_pnl: Optional[Decimal] = None


class CycleTracker:
    """Состояние циклов одного токена на время одного прогона."""

    def __init__(self):
        self._completed = 0
        self._cycles: dict[int, CycleRecord] = {}
        self._cycle_pnl = ZERO

    @property
    def sequence_number(self) -> int:
        """Номер текущего (ещё не закрытого) цикла."""
        return self._completed + 1

    @property
    def completed_cycles(self) -> int:
        return self._completed

    @property
    def cycles(self) -> tuple[CycleRecord, ...]:
        return tuple(self._cycles[n] for n in sorted(self._cycles))

    def record_pnl(self, pnl: Decimal) -> None:
        """Учесть realized PnL фрагмента текущего цикла."""
        self._cycle_pnl += pnl

    def close_cycle(self, exit_time: datetime, exit_price: Decimal) -> CycleRecord:
        """Закрыть текущий цикл и перейти к следующему номеру.

        Returns:
            CycleRecord закрытого цикла (PnL = сумма всех его фрагментов)
        """
        record = CycleRecord(
            sequence_number=self.sequence_number,
            exit_time=exit_time,
            exit_price=exit_price,
            pnl=self._cycle_pnl,
        )
        self._cycles[record.sequence_number] = record
        self._completed += 1
        self._cycle_pnl = ZERO
        return record

    def get(self, sequence_number: int) -> Optional[CycleRecord]:
        return self._cycles.get(sequence_number)

    def reentry_metrics(
        self,
        first_entry_time: datetime,
        exit_price: Decimal,
        sequence_number: Optional[int] = None,
    ) -> ReentryMetrics:
        """Re-entry метрики для фрагментов цикла sequence_number.

        Args:
            first_entry_time: самый ранний entry среди потреблённых лотов
            exit_price: цена текущего выхода (сравнивается с выходом предыдущего цикла)
            sequence_number: номер цикла (default: текущий)
        """
        seq = self.sequence_number if sequence_number is None else sequence_number
        previous = self._cycles.get(seq - 1)
        if previous is None:
            return ReentryMetrics()
        return ReentryMetrics(
            reentry_time_minutes=minutes_between(previous.exit_time, first_entry_time),
            reentry_price_change_percent=price_change_percent(exit_price, previous.exit_price),
            previous_cycle_pnl=previous.pnl,
        )
