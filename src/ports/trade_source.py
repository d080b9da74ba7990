"""Trade Source — capability чтения сырых сделок кошелька.

Порядок записей не гарантируется: сортировка — задача Trade Normalizer.
Структурный отказ чтения адаптер обязан заворачивать в TradeSourceError
(фатально для прогона).
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional, Protocol, Sequence, runtime_checkable

from src.core.errors import TradeSourceError

RawTrade = Mapping[str, Any]


@runtime_checkable
class TradeSource(Protocol):
    """Источник сырых записей сделок."""

    async def fetch_trades(self, wallet_id: str, token_id: Optional[str] = None) -> Sequence[RawTrade]:
        ...


class InMemoryTradeSource:
    """Trade source поверх списков записей в памяти.

    Args:
        trades: wallet_id → записи сделок
    """

    def __init__(self, trades: Optional[Mapping[str, Iterable[RawTrade]]] = None):
        self._trades: dict[str, list[dict[str, Any]]] = {
            wallet: [dict(t) for t in records] for wallet, records in (trades or {}).items()
        }
        self._failing: set[str] = set()

    def add(self, wallet_id: str, *records: RawTrade) -> None:
        self._trades.setdefault(wallet_id, []).extend(dict(r) for r in records)

    def fail_for(self, wallet_id: str) -> None:
        """Следующие чтения кошелька завершаются TradeSourceError."""
        self._failing.add(wallet_id)

    async def fetch_trades(self, wallet_id: str, token_id: Optional[str] = None) -> list[dict[str, Any]]:
        if wallet_id in self._failing:
            raise TradeSourceError(f"trade source unavailable for wallet {wallet_id}")
        records = self._trades.get(wallet_id, [])
        if token_id is not None:
            records = [r for r in records if str(r.get("token_id")) == token_id]
        return [dict(r) for r in records]
