"""
Errors — таксономия ошибок ledger

Per-trade аномалии (SkippableTradeError, RateUnavailableError,
UnmatchedSellError) изолируются внутри прогона и попадают в диагностику.
Фатальными для прогона являются только TradeSourceError, PersistenceError
и PersistenceConflictError.
"""

from decimal import Decimal
from typing import Optional


class LedgerError(Exception):
    """Базовое исключение ledger."""


class ConfigError(LedgerError):
    """Невалидная конфигурация ledger."""


class SkippableTradeError(LedgerError):
    """
    Сделка не может представлять реальный экономический трансфер.

    Сделка исключается из построения лотов, прогон продолжается.
    """

    def __init__(self, reason: str, detail: str = "", trade_id: Optional[str] = None):
        self.reason = reason
        self.detail = detail
        self.trade_id = trade_id
        super().__init__(f"{reason}: {detail}" if detail else reason)


class RateUnavailableError(LedgerError):
    """
    Oracle не вернул курс и fallback-курса нет.

    Adapters price oracle обязаны заворачивать транспортные ошибки в это исключение.
    """

    def __init__(self, currency: str, detail: str = ""):
        self.currency = currency
        self.detail = detail
        super().__init__(f"rate unavailable for {currency}: {detail}" if detail else f"rate unavailable for {currency}")


class UnmatchedSellError(LedgerError):
    """
    Sell превышает известную открытую позицию (pre-history sell).

    Не бросается из matcher: экземпляр сохраняется как диагностика прогона.
    """

    def __init__(self, trade_id: str, unmatched_amount: Decimal, sell_amount: Decimal):
        self.trade_id = trade_id
        self.unmatched_amount = unmatched_amount
        self.sell_amount = sell_amount
        super().__init__(
            f"sell {trade_id} exceeds open position by {unmatched_amount} of {sell_amount} tokens"
        )


class TradeSourceError(LedgerError):
    """Структурная ошибка чтения trade source (фатально для прогона)."""


class PersistenceError(LedgerError):
    """Ошибка записи closed lots (фатально для прогона)."""


class PersistenceConflictError(PersistenceError):
    """
    Конкурентная запись для той же пары (wallet, token).

    Caller должен повторить прогон после завершения конфликтующей записи.
    """

    def __init__(self, wallet_id: str, token_id: str):
        self.wallet_id = wallet_id
        self.token_id = token_id
        super().__init__(f"concurrent closed-lot write in progress for wallet={wallet_id} token={token_id}")
