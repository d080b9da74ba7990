"""
Units — Централизованный модуль конверсии единиц ledger

Единственный допустимый способ преобразований между:
- quote amount / token amount → price (canonical unit per token)
- realized PnL / cost basis → PnL percent (проценты, ×100)
- entry/exit timestamps → hold time (минуты, секунды)
- timestamp → minute bucket (ключ кэша курсов)

ЗАПРЕЩЕНО смешивать единицы без явного конвертера из этого модуля.
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Final, Optional

from src.core.math.numerical_safeguards import HUNDRED, ZERO, safe_divide

# =============================================================================
# КОНСТАНТЫ
# =============================================================================

SECONDS_PER_MINUTE: Final[int] = 60


# =============================================================================
# ЦЕНА И PnL
# =============================================================================


def price_per_token(quote_amount: Decimal, token_amount: Decimal) -> Decimal:
    """
    Цена в quote-единицах за один токен.

    Raises:
        ValueError: Если token_amount <= 0
    """
    if token_amount <= 0:
        raise ValueError(f"token_amount must be positive, got {token_amount}")
    return quote_amount / token_amount


def pnl_percent(realized_pnl: Decimal, cost_basis: Decimal) -> Optional[Decimal]:
    """
    PnL в процентах от cost basis.

    Returns:
        realized_pnl / cost_basis * 100 или None если cost_basis == 0
    """
    ratio = safe_divide(realized_pnl, cost_basis)
    if ratio is None:
        return None
    return ratio * HUNDRED


def price_change_percent(new_price: Decimal, old_price: Decimal) -> Optional[Decimal]:
    """
    Изменение цены в процентах.

    Returns:
        (new - old) / old * 100 или None если old_price <= 0
    """
    if old_price <= ZERO:
        return None
    return (new_price - old_price) / old_price * HUNDRED


# =============================================================================
# ВРЕМЯ
# =============================================================================


def ensure_utc(ts: datetime) -> datetime:
    """Naive datetime трактуется как UTC; aware приводится к UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def seconds_between(start: datetime, end: datetime) -> Decimal:
    """Длительность между двумя моментами в секундах (Decimal, может быть < 0)."""
    delta = ensure_utc(end) - ensure_utc(start)
    micros = (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds
    return Decimal(micros) / Decimal(1_000_000)


def minutes_between(start: datetime, end: datetime) -> int:
    """
    Длительность в целых минутах, округление half-up.

    Examples:
        90 секунд → 2 минуты, 89 секунд → 1 минута
    """
    minutes = seconds_between(start, end) / SECONDS_PER_MINUTE
    return int(minutes.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def minute_bucket(ts: datetime) -> int:
    """
    Минутный bucket timestamp (unix minutes, UTC).

    Используется как часть ключа кэша курсов (currency, minute_bucket).
    """
    return int(ensure_utc(ts).timestamp()) // SECONDS_PER_MINUTE


def day_of_week_sunday_zero(ts: datetime) -> int:
    """День недели UTC: 0 = воскресенье, 6 = суббота."""
    return (ensure_utc(ts).weekday() + 1) % 7
