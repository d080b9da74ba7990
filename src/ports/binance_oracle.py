"""
Binance kline price oracle

Исторические курсы USD-stable → SOL из публичного Binance klines API:
rate(USDC|USDT → SOL) = 1 / close(SOLUSDT, 1m kline минуты сделки).

Собственного кэша у oracle нет: кэш по (currency, minute bucket)
ведёт Currency Converter.
"""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import aiohttp

from src.core.domain.units import minute_bucket
from src.core.errors import RateUnavailableError
from src.core.math.numerical_safeguards import ONE, to_decimal

logger = logging.getLogger(__name__)


# Конфигурация
BINANCE_API_URL = "https://api.binance.com/api/v3"
BINANCE_TIMEOUT = 10.0  # секунды
KLINE_CLOSE_INDEX = 4

# Stablecoins, котируемые через пару SOLUSDT
USD_STABLES = frozenset({"USDC", "USDT"})


def parse_kline_close(payload: Any) -> Optional[Decimal]:
    """
    Извлечение close из ответа klines.

    Формат kline: [openTime, open, high, low, close, volume, ...]

    Returns:
        Цена close или None, если payload пустой или битый
    """
    if not isinstance(payload, list) or not payload:
        return None
    kline = payload[0]
    if not isinstance(kline, list) or len(kline) <= KLINE_CLOSE_INDEX:
        return None
    try:
        close = to_decimal(kline[KLINE_CLOSE_INDEX])
    except ValueError:
        return None
    if close <= 0:
        return None
    return close


class BinanceKlinePriceOracle:
    """
    PriceOracle поверх 1m klines SOLUSDT на Binance.

    Особенности:
    - Исторический запрос, выровненный по минуте (endTime = minute bucket)
    - Транспортные ошибки заворачиваются в RateUnavailableError
    - Каноническая валюта (SOL/WSOL) даёт 1 без запроса
    """

    def __init__(
        self,
        base_url: str = BINANCE_API_URL,
        symbol: str = "SOLUSDT",
        canonical_aliases: frozenset[str] = frozenset({"SOL", "WSOL"}),
        timeout: float = BINANCE_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._symbol = symbol
        self._canonical = frozenset(c.upper() for c in canonical_aliases)
        self._timeout = timeout
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Текущая aiohttp-сессия (создаётся при необходимости)."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
                headers={"Accept": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> "BinanceKlinePriceOracle":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def rate_at(self, currency: str, timestamp: datetime) -> Optional[Decimal]:
        key = currency.upper()
        if key in self._canonical:
            return ONE
        if key not in USD_STABLES:
            return None

        close = await self.fetch_close(timestamp)
        if close is None:
            return None
        return ONE / close

    async def fetch_close(self, timestamp: datetime) -> Optional[Decimal]:
        """
        Close SOLUSDT 1m kline для минуты timestamp.

        Returns:
            Цена close или None, если у Binance нет данных за эту минуту

        Raises:
            RateUnavailableError: сетевая ошибка или неожиданный HTTP-статус
        """
        end_time_ms = minute_bucket(timestamp) * 60 * 1000
        params = {"symbol": self._symbol, "interval": "1m", "limit": "1", "endTime": str(end_time_ms)}
        session = await self._get_session()
        try:
            async with session.get(f"{self._base_url}/klines", params=params) as response:
                if response.status == 400:
                    logger.warning("Binance: no historical data for %s", timestamp.isoformat())
                    return None
                if response.status != 200:
                    raise RateUnavailableError(self._symbol, f"Binance API error: {response.status}")
                payload = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RateUnavailableError(self._symbol, f"Binance request failed: {e}") from e

        close = parse_kline_close(payload)
        if close is None:
            logger.warning("Binance: no klines data for %s", timestamp.isoformat())
        return close
