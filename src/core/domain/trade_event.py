"""
TradeEvent — Каноническое торговое событие

Immutable Pydantic модель одной экономической сделки по паре (wallet, token).
Создаётся один раз в Normalizer/Converter и потребляется ровно один раз
Lot Matcher. Никакие loosely-typed payloads не проходят дальше этой границы.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from src.core.domain.units import ensure_utc, price_per_token


# =============================================================================
# ENUMS
# =============================================================================


class TradeSide(str, Enum):
    """Сторона сделки (закрытый union buy | sell)"""

    BUY = "buy"
    SELL = "sell"


# =============================================================================
# TRADE EVENT MODEL
# =============================================================================


class TradeEvent(BaseModel):
    """
    Каноническое торговое событие.

    quote_amount выражен в quote_currency; после Currency Converter
    quote_currency равна канонической валюте, а rate_degraded отмечает
    события, пересчитанные по fallback-курсу.

    Immutable модель (frozen=True).
    """

    # Идентификация
    source_trade_id: str = Field(..., min_length=1, description="Идентификатор исходной сделки")
    wallet_id: str = Field(..., min_length=1, description="Кошелёк")
    token_id: str = Field(..., min_length=1, description="Токен")
    side: TradeSide = Field(..., description="Сторона сделки (buy/sell)")

    # Объёмы
    token_amount: Decimal = Field(..., gt=0, description="Количество токенов")
    quote_amount: Decimal = Field(..., gt=0, description="Сумма в quote-валюте")
    quote_currency: str = Field(..., min_length=1, description="Quote-валюта (после конверсии — каноническая)")

    # Время
    timestamp: datetime = Field(..., description="Время сделки (UTC)")

    # Качество конверсии
    rate_degraded: bool = Field(False, description="Конверсия по fallback-курсу (пониженная точность)")

    model_config = {"frozen": True}

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        """Приведение timestamp к aware UTC"""
        return ensure_utc(v)

    @field_validator("quote_currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.strip().upper()

    @property
    def price(self) -> Decimal:
        """Цена = quote_amount / token_amount"""
        return price_per_token(self.quote_amount, self.token_amount)

    @property
    def is_buy(self) -> bool:
        return self.side == TradeSide.BUY

    @property
    def is_sell(self) -> bool:
        return self.side == TradeSide.SELL

    def sort_key(self) -> tuple[datetime, int, str]:
        """
        Ключ детерминированной сортировки.

        По времени; при равном времени buy раньше sell (чтобы пара с
        одинаковым timestamp сматчилась); затем по source_trade_id.
        """
        return (self.timestamp, 0 if self.is_buy else 1, self.source_trade_id)
