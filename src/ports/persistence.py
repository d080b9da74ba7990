"""Closed-Lot Store — capability хранения closed lots.

Операции:
- replace_closed_lots(wallet, token, lots): полный пересчёт, атомарная
  замена всего набора пары
- append_closed_lots(wallet, token, lots): инкрементальное добавление,
  идемпотентный upsert по ключу (buy_trade_id, sell_trade_id)
- list_closed_lots(wallet, token): текущий набор
- current_open_balance(wallet, token): диагностика, не нужна для корректности

Взаимное исключение per (wallet, token) обеспечивает адаптер через
pair_lock(): второй писатель на занятую пару получает
PersistenceConflictError и должен повторить прогон позже.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import AsyncIterator, Optional, Protocol, Sequence, runtime_checkable

from src.core.domain import ClosedLot
from src.core.errors import PersistenceConflictError, PersistenceError
from src.core.math.numerical_safeguards import ZERO

logger = logging.getLogger(__name__)

Pair = tuple[str, str]
LotKey = tuple[str, str]


@runtime_checkable
class ClosedLotStore(Protocol):
    """Persistence closed lots с per-pair взаимным исключением."""

    def pair_lock(self, wallet_id: str, token_id: str):
        ...

    async def replace_closed_lots(self, wallet_id: str, token_id: str, lots: Sequence[ClosedLot]) -> None:
        ...

    async def append_closed_lots(self, wallet_id: str, token_id: str, lots: Sequence[ClosedLot]) -> int:
        ...

    async def list_closed_lots(self, wallet_id: str, token_id: str) -> list[ClosedLot]:
        ...

    async def set_open_balance(self, wallet_id: str, token_id: str, balance: Decimal) -> None:
        ...

    async def current_open_balance(self, wallet_id: str, token_id: str) -> Decimal:
        ...


def _check_pair(wallet_id: str, token_id: str, lots: Sequence[ClosedLot]) -> dict[LotKey, ClosedLot]:
    indexed: dict[LotKey, ClosedLot] = {}
    for lot in lots:
        if lot.wallet_id != wallet_id or lot.token_id != token_id:
            raise PersistenceError(
                f"lot {lot.key()} belongs to ({lot.wallet_id}, {lot.token_id}), not ({wallet_id}, {token_id})"
            )
        if lot.key() in indexed:
            raise PersistenceError(f"duplicate closed lot key {lot.key()} for ({wallet_id}, {token_id})")
        indexed[lot.key()] = lot
    return indexed


class InMemoryClosedLotStore:
    """Closed-lot store в памяти.

    Набор пары хранится как упорядоченный dict key → ClosedLot; замена
    строит новый dict целиком и подменяет ссылку, поэтому ошибка
    валидации не оставляет частичной записи.
    """

    def __init__(self):
        self._lots: dict[Pair, dict[LotKey, ClosedLot]] = {}
        self._open_balances: dict[Pair, Decimal] = {}
        self._held: set[Pair] = set()
        self._fail_writes = False
        self.write_log: list[tuple[str, Pair, int]] = []

    def fail_writes(self, enabled: bool = True) -> None:
        """Все последующие записи завершаются PersistenceError."""
        self._fail_writes = enabled

    @asynccontextmanager
    async def pair_lock(self, wallet_id: str, token_id: str) -> AsyncIterator[None]:
        pair = (wallet_id, token_id)
        if pair in self._held:
            logger.error("closed-lot write conflict for wallet=%s token=%s", wallet_id, token_id)
            raise PersistenceConflictError(wallet_id, token_id)
        self._held.add(pair)
        try:
            yield
        finally:
            self._held.discard(pair)

    def is_locked(self, wallet_id: str, token_id: str) -> bool:
        return (wallet_id, token_id) in self._held

    def _ensure_writable(self, wallet_id: str, token_id: str) -> None:
        if self._fail_writes:
            raise PersistenceError(f"write failed for wallet={wallet_id} token={token_id}")

    async def replace_closed_lots(self, wallet_id: str, token_id: str, lots: Sequence[ClosedLot]) -> None:
        self._ensure_writable(wallet_id, token_id)
        indexed = _check_pair(wallet_id, token_id, lots)
        self._lots[(wallet_id, token_id)] = indexed
        self.write_log.append(("replace", (wallet_id, token_id), len(indexed)))

    async def append_closed_lots(self, wallet_id: str, token_id: str, lots: Sequence[ClosedLot]) -> int:
        """Upsert по ключу; возвращает число новых ключей."""
        self._ensure_writable(wallet_id, token_id)
        indexed = _check_pair(wallet_id, token_id, lots)
        merged = dict(self._lots.get((wallet_id, token_id), {}))
        inserted = sum(1 for key in indexed if key not in merged)
        merged.update(indexed)
        self._lots[(wallet_id, token_id)] = merged
        self.write_log.append(("append", (wallet_id, token_id), inserted))
        return inserted

    async def list_closed_lots(self, wallet_id: str, token_id: str) -> list[ClosedLot]:
        return list(self._lots.get((wallet_id, token_id), {}).values())

    async def set_open_balance(self, wallet_id: str, token_id: str, balance: Decimal) -> None:
        self._open_balances[(wallet_id, token_id)] = balance

    async def current_open_balance(self, wallet_id: str, token_id: str) -> Decimal:
        return self._open_balances.get((wallet_id, token_id), ZERO)

    def pairs(self, wallet_id: Optional[str] = None) -> list[Pair]:
        return [p for p in self._lots if wallet_id is None or p[0] == wallet_id]
