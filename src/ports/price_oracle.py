"""Price Oracle — capability исторических курсов и текущих цен.

Контракт:
- rate_at(currency, timestamp) → Decimal | None
  курс 1 единицы currency в канонической валюте на момент timestamp;
  None означает Unavailable. Транспортные ошибки адаптер обязан
  заворачивать в RateUnavailableError.
- current_price(token_id) → Decimal | None
  текущая цена токена в канонической валюте (для Dust Closer).
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Mapping, Optional, Protocol, Union, runtime_checkable

from src.core.errors import RateUnavailableError
from src.core.math.numerical_safeguards import DecimalLike, to_decimal

RateSource = Union[DecimalLike, Callable[[datetime], Optional[Decimal]]]


@runtime_checkable
class PriceOracle(Protocol):
    """Исторические курсы settlement-валют в каноническую."""

    async def rate_at(self, currency: str, timestamp: datetime) -> Optional[Decimal]:
        ...


@runtime_checkable
class TokenPriceLookup(Protocol):
    """Текущая цена токена в канонической валюте."""

    async def current_price(self, token_id: str) -> Optional[Decimal]:
        ...


class StaticPriceOracle:
    """Oracle на фиксированных курсах или функциях от времени.

    Используется в batch-пересчётах с заранее выгруженными курсами и в тестах.

    Args:
        rates: currency → курс (число) или callable(timestamp) → курс | None
        unavailable: валюты, для которых oracle бросает RateUnavailableError
    """

    def __init__(self, rates: Optional[Mapping[str, RateSource]] = None, unavailable: Optional[set[str]] = None):
        self._rates: Dict[str, RateSource] = {k.upper(): v for k, v in (rates or {}).items()}
        self._unavailable = {c.upper() for c in (unavailable or set())}
        self.calls: list[tuple[str, datetime]] = []

    def mark_unavailable(self, currency: str, unavailable: bool = True) -> None:
        if unavailable:
            self._unavailable.add(currency.upper())
        else:
            self._unavailable.discard(currency.upper())

    async def rate_at(self, currency: str, timestamp: datetime) -> Optional[Decimal]:
        key = currency.upper()
        self.calls.append((key, timestamp))
        if key in self._unavailable:
            raise RateUnavailableError(key, "marked unavailable")
        source = self._rates.get(key)
        if source is None:
            return None
        if callable(source):
            value = source(timestamp)
            return None if value is None else to_decimal(value)
        return to_decimal(source)


class StaticTokenPriceLookup:
    """Текущие цены токенов из mapping token_id → цена."""

    def __init__(self, prices: Optional[Mapping[str, DecimalLike]] = None):
        self._prices = {k: to_decimal(v) for k, v in (prices or {}).items()}

    async def current_price(self, token_id: str) -> Optional[Decimal]:
        return self._prices.get(token_id)
