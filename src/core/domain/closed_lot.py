"""
ClosedLot — Модель закрытого лота

Immutable Pydantic модель: полностью разрешённая пара entry → exit
с cost basis, proceeds, realized PnL и временем удержания.
Создаётся Lot Matcher или Dust Closer; при пересчёте набор closed lots
пары (wallet, token) заменяется целиком, отдельные лоты не обновляются.

Инварианты:
- proceeds - cost_basis == realized_pnl (точно, Decimal)
- size > 0
- exit_time >= entry_time
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Final, Optional

from pydantic import BaseModel, Field, field_validator

from src.core.domain.units import ensure_utc, seconds_between

# Маркер synthetic стороны в ключе (buy_trade_id, sell_trade_id)
SYNTHETIC_TRADE_ID: Final[str] = "synthetic"


# =============================================================================
# ENUMS
# =============================================================================


class ExitReason(str, Enum):
    """Эвристическая классификация выхода по PnL percent"""

    TAKE_PROFIT = "take_profit"  # pnl% > take_profit_pct
    STOP_LOSS = "stop_loss"  # pnl% < stop_loss_pct
    MANUAL = "manual"  # Всё остальное
    DUST = "dust"  # Synthetic закрытие остатка


# =============================================================================
# CLOSED LOT MODEL
# =============================================================================


class ClosedLot(BaseModel):
    """
    Модель закрытого лота.

    Все денежные поля в канонической валюте. *_percent поля в процентах (×100).
    buy_trade_id / sell_trade_id равны None у synthetic (dust) лота.

    Immutable модель (frozen=True).
    """

    # Идентификация
    wallet_id: str = Field(..., min_length=1, description="Кошелёк")
    token_id: str = Field(..., min_length=1, description="Токен")
    buy_trade_id: Optional[str] = Field(None, description="Buy-сделка (None если synthetic)")
    sell_trade_id: Optional[str] = Field(None, description="Sell-сделка (None если synthetic)")
    sequence_number: int = Field(..., ge=1, description="Номер цикла buy→…→sell по токену")

    # Размер и цены
    size: Decimal = Field(..., gt=0, description="Количество токенов")
    entry_price: Decimal = Field(..., ge=0, description="Цена входа (canonical/token)")
    exit_price: Decimal = Field(..., ge=0, description="Цена выхода (canonical/token)")

    # Время
    entry_time: datetime = Field(..., description="Время входа (UTC)")
    exit_time: datetime = Field(..., description="Время выхода (UTC)")
    hold_time_minutes: int = Field(..., description="Время удержания, минуты")

    # Результаты
    cost_basis: Decimal = Field(..., ge=0, description="Cost basis")
    proceeds: Decimal = Field(..., ge=0, description="Proceeds")
    realized_pnl: Decimal = Field(..., description="Realized PnL = proceeds - cost_basis")
    realized_pnl_percent: Decimal = Field(..., description="Realized PnL, % от cost basis")

    # Флаги
    is_dust: bool = Field(False, description="Synthetic закрытие dust-остатка")
    cost_known: bool = Field(True, description="Cost basis известен")
    low_confidence: bool = Field(False, description="Одна из сторон пересчитана по fallback-курсу")
    exit_reason: Optional[ExitReason] = Field(None, description="Эвристическая причина выхода")

    # Timing enrichment (UTC, воскресенье = 0)
    entry_hour_of_day: Optional[int] = Field(None, ge=0, le=23)
    entry_day_of_week: Optional[int] = Field(None, ge=0, le=6)
    exit_hour_of_day: Optional[int] = Field(None, ge=0, le=23)
    exit_day_of_week: Optional[int] = Field(None, ge=0, le=6)

    # Excursion approximation
    max_profit_percent: Optional[Decimal] = Field(None, ge=0)
    max_drawdown_percent: Optional[Decimal] = Field(None, ge=0)

    # DCA enrichment
    dca_entry_count: Optional[int] = Field(None, ge=2, description="Число buy-лотов в sell (если > 1)")
    dca_time_span_minutes: Optional[int] = Field(None, gt=0, description="Первый → последний buy, минуты")

    # Re-entry enrichment (None для первого цикла)
    reentry_time_minutes: Optional[int] = Field(None, description="Предыдущий exit → этот entry, минуты")
    reentry_price_change_percent: Optional[Decimal] = Field(None, description="Изменение цены от предыдущего exit, %")
    previous_cycle_pnl: Optional[Decimal] = Field(None, description="PnL предыдущего цикла")

    model_config = {"frozen": True}  # Immutable

    @field_validator("entry_time", "exit_time")
    @classmethod
    def normalize_timestamps(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @field_validator("exit_time")
    @classmethod
    def validate_exit_not_before_entry(cls, v: datetime, info) -> datetime:
        """Проверка, что выход не раньше входа"""
        if "entry_time" in info.data and v < info.data["entry_time"]:
            raise ValueError(f"exit_time {v.isoformat()} is before entry_time {info.data['entry_time'].isoformat()}")
        return v

    @field_validator("realized_pnl")
    @classmethod
    def validate_pnl_identity(cls, v: Decimal, info) -> Decimal:
        """Проверка инварианта proceeds - cost_basis == realized_pnl"""
        if "proceeds" in info.data and "cost_basis" in info.data:
            expected = info.data["proceeds"] - info.data["cost_basis"]
            if v != expected:
                raise ValueError(f"realized_pnl {v} != proceeds - cost_basis ({expected})")
        return v

    @property
    def is_synthetic(self) -> bool:
        return self.buy_trade_id is None and self.sell_trade_id is None

    def key(self) -> tuple[str, str]:
        """
        Ключ идемпотентного upsert (buy_trade_id, sell_trade_id).

        Sell потребляет каждый лот не более одного раза, поэтому пара
        уникальна в пределах (wallet, token); synthetic лот — один на пару.
        """
        return (
            self.buy_trade_id or SYNTHETIC_TRADE_ID,
            self.sell_trade_id or SYNTHETIC_TRADE_ID,
        )

    def hold_time_seconds(self) -> Decimal:
        """Точное время удержания в секундах."""
        return seconds_between(self.entry_time, self.exit_time)

    def is_winner(self) -> bool:
        return self.realized_pnl > 0

    def is_loser(self) -> bool:
        return self.realized_pnl < 0

    def to_record(self) -> dict[str, Any]:
        """
        Сериализация для persistence (JSON-совместимый dict).

        Decimal → строка, datetime → ISO-8601; формат описан контрактом closed_lot.json.
        """
        return self.model_dump(mode="json")
