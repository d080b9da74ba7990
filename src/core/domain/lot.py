"""
OpenLot — рабочее состояние открытого лота внутри matcher

Mutable dataclass: создаётся buy-событием, уменьшается по мере
потребления sell-событиями и удаляется при исчерпании. Не персистится.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal


@dataclass
class OpenLot:
    """Открытый лот FIFO-очереди."""

    remaining_size: Decimal
    entry_price: Decimal
    entry_time: datetime
    origin_trade_id: str

    # False только для позиции, чьё происхождение предшествует трекингу
    cost_known: bool = True

    # Лот открыт по fallback-курсу
    low_confidence: bool = False

    def cost_of(self, size: Decimal) -> Decimal:
        """Cost basis для size токенов этого лота."""
        return size * self.entry_price

    def remaining_cost(self) -> Decimal:
        return self.cost_of(self.remaining_size)
