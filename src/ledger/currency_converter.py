"""Currency Converter — приведение quote amounts к канонической валюте.

Контракт:
    convert(quote_currency, quote_amount, timestamp) -> Conversion

- Каноническая валюта (и её синонимы): identity, курс 1.
- Признанная альтернативная валюта: исторический курс из PriceOracle
  на момент сделки, amount * rate.
- Отказ oracle (None, RateUnavailableError, неположительный курс):
  fallback на caller-supplied курс, затем на последний известный курс
  этой валюты; результат помечается degraded. Без fallback —
  RateUnavailableError, и caller исключает только эту сделку.

Кэш: (currency, minute_bucket) → курс. Вытеснение по возрасту: bucket'ы
старше окна относительно самого свежего bucket удаляются. Внутри одного
прогона запросы монотонны по времени, поэтому rolling map достаточно.
Один экземпляр на прогон; кэш не разделяется между прогонами.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from src.core.domain import TradeEvent, minute_bucket
from src.core.errors import RateUnavailableError
from src.core.math.numerical_safeguards import ONE
from src.ledger import reject_reasons
from src.ledger.config import LedgerConfig
from src.ledger.normalizer import NormalizationResult, SkippedTrade
from src.ports.price_oracle import PriceOracle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Conversion:
    """Результат конверсии в каноническую валюту."""

    amount: Decimal
    rate: Decimal
    degraded: bool = False


class CurrencyConverter:
    """Конвертер quote amounts с bounded rolling-кэшем курсов."""

    def __init__(self, oracle: PriceOracle, config: Optional[LedgerConfig] = None):
        self.config = config or LedgerConfig()
        self._oracle = oracle
        self._rates: dict[tuple[str, int], Decimal] = {}
        self._last_known: dict[str, Decimal] = {}
        self._newest_bucket: Optional[int] = None

    @property
    def cache_size(self) -> int:
        return len(self._rates)

    def _cache_put(self, currency: str, bucket: int, rate: Decimal) -> None:
        self._rates[(currency, bucket)] = rate
        self._last_known[currency] = rate
        if self._newest_bucket is None or bucket > self._newest_bucket:
            self._newest_bucket = bucket
            horizon = bucket - self.config.rate_cache_window_minutes
            for key in [k for k in self._rates if k[1] < horizon]:
                del self._rates[key]

    async def rate_for(
        self,
        currency: str,
        timestamp: datetime,
        fallback_rate: Optional[Decimal] = None,
    ) -> tuple[Decimal, bool]:
        """Курс 1 единицы currency в канонической валюте.

        Returns:
            (rate, degraded)

        Raises:
            RateUnavailableError: oracle не ответил и fallback-курса нет
        """
        currency = currency.upper()
        if self.config.is_canonical(currency):
            return ONE, False
        if currency not in self.config.alternate_currencies:
            raise RateUnavailableError(currency, "not a recognized settlement currency")

        bucket = minute_bucket(timestamp)
        cached = self._rates.get((currency, bucket))
        if cached is not None:
            return cached, False

        detail = "oracle returned no rate"
        try:
            rate = await self._oracle.rate_at(currency, timestamp)
        except RateUnavailableError as e:
            rate = None
            detail = e.detail or str(e)

        if rate is not None and rate > 0:
            self._cache_put(currency, bucket, rate)
            return rate, False
        if rate is not None:
            detail = f"oracle returned non-positive rate {rate}"

        fallback = fallback_rate if fallback_rate is not None and fallback_rate > 0 else self._last_known.get(currency)
        if fallback is None:
            raise RateUnavailableError(currency, detail)

        logger.warning(
            "degraded precision: %s rate at %s unavailable (%s), using fallback %s",
            currency,
            timestamp.isoformat(),
            detail,
            fallback,
        )
        return fallback, True

    async def convert(
        self,
        quote_currency: str,
        quote_amount: Decimal,
        timestamp: datetime,
        fallback_rate: Optional[Decimal] = None,
    ) -> Conversion:
        """Пересчёт quote_amount в каноническую валюту."""
        rate, degraded = await self.rate_for(quote_currency, timestamp, fallback_rate)
        return Conversion(amount=quote_amount * rate, rate=rate, degraded=degraded)

    async def convert_event(self, event: TradeEvent, fallback_rate: Optional[Decimal] = None) -> TradeEvent:
        """TradeEvent в исходной валюте → TradeEvent в канонической.

        Raises:
            RateUnavailableError: курс недоступен и fallback нет
        """
        if self.config.is_canonical(event.quote_currency):
            if event.quote_currency == self.config.canonical_currency:
                return event
            return event.model_copy(update={"quote_currency": self.config.canonical_currency})

        conversion = await self.convert(event.quote_currency, event.quote_amount, event.timestamp, fallback_rate)
        return event.model_copy(
            update={
                "quote_amount": conversion.amount,
                "quote_currency": self.config.canonical_currency,
                "rate_degraded": event.rate_degraded or conversion.degraded,
            }
        )

    async def convert_events(self, events: Iterable[TradeEvent]) -> NormalizationResult:
        """Конверсия упорядоченного потока событий.

        Курсы запрашиваются строго по порядку событий (awaited inline).
        Сделка без курса исключается с reason rate_unavailable, остальные
        продолжают обрабатываться.
        """
        converted: list[TradeEvent] = []
        skipped: list[SkippedTrade] = []
        for event in events:
            try:
                converted.append(await self.convert_event(event))
            except RateUnavailableError as e:
                logger.warning("skip trade %s: %s", event.source_trade_id, e)
                skipped.append(
                    SkippedTrade(
                        trade_id=event.source_trade_id,
                        reason=reject_reasons.RATE_UNAVAILABLE,
                        detail=str(e),
                    )
                )
        return NormalizationResult(events=tuple(converted), skipped=tuple(skipped))
