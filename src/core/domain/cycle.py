"""
CycleRecord — итог завершённого цикла позиции

Transient состояние per-token: хранится в Cycle Tracker на время одного
прогона и используется для re-entry метрик следующего цикла.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class CycleRecord(BaseModel):
    """Завершённый цикл open → close."""

    sequence_number: int = Field(..., ge=1, description="Номер цикла")
    exit_time: datetime = Field(..., description="Время закрывающего выхода")
    exit_price: Decimal = Field(..., ge=0, description="Цена закрывающего выхода")
    pnl: Decimal = Field(..., description="Суммарный realized PnL цикла")

    model_config = {"frozen": True}
