"""
Numerical Safeguards — Decimal Money Primitives

Модуль обеспечивает точную арифметику для cost basis, proceeds и PnL:
- Строгое приведение входов к Decimal (float через str, без бинарного хвоста)
- Epsilon-защиты для остатков лотов (absorb rounding crumbs)
- Безопасное деление с fallback вместо ZeroDivisionError
- Pro-rata распределение суммы с точным сохранением итога

КРИТИЧЕСКИЕ ИНВАРИАНТЫ:
1. Денежные величины никогда не проходят через float
2. NaN/Inf никогда не попадают в вычисления (ValueError на входе)
3. split_pro_rata: сумма частей всегда точно равна total
4. Все операции детерминированы и воспроизводимы
"""

from decimal import Decimal, InvalidOperation
from typing import Final, Iterable, Optional, Sequence, Union

DecimalLike = Union[Decimal, int, float, str]

# =============================================================================
# EPSILON-ПАРАМЕТРЫ
# =============================================================================

ZERO: Final[Decimal] = Decimal(0)
ONE: Final[Decimal] = Decimal(1)
HUNDRED: Final[Decimal] = Decimal(100)

# Epsilon для количеств токенов: остаток лота <= EPS_QTY считается нулём
EPS_QTY: Final[Decimal] = Decimal("1e-8")


# =============================================================================
# ПРИВЕДЕНИЕ ТИПОВ
# =============================================================================


def to_decimal(value: DecimalLike) -> Decimal:
    """
    Приведение значения к конечному Decimal.

    float конвертируется через repr-строку, чтобы 0.1 стало Decimal("0.1"),
    а не Decimal("0.1000000000000000055511151231257827...").

    Args:
        value: Decimal, int, float или числовая строка

    Returns:
        Конечный Decimal

    Raises:
        ValueError: bool, пустая строка, нечисловая строка, NaN или Inf

    Examples:
        >>> to_decimal(0.1)
        Decimal('0.1')
        >>> to_decimal("1.50")
        Decimal('1.50')
    """
    if isinstance(value, bool):
        raise ValueError(f"bool is not a numeric amount: {value!r}")

    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        result = Decimal(repr(value))
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("empty string is not a numeric amount")
        try:
            result = Decimal(text)
        except InvalidOperation:
            raise ValueError(f"not a numeric amount: {value!r}") from None
    else:
        raise ValueError(f"unsupported numeric type {type(value).__name__}: {value!r}")

    if not result.is_finite():
        raise ValueError(f"amount must be finite, got {value!r}")
    return result


# =============================================================================
# EPSILON-СРАВНЕНИЯ
# =============================================================================


def is_zero(value: Decimal, tol: Decimal = EPS_QTY) -> bool:
    """
    Проверка, близко ли значение к нулю с учётом толерантности.

    Returns:
        True если abs(value) <= tol
    """
    return abs(value) <= tol


def is_positive(value: Decimal, tol: Decimal = EPS_QTY) -> bool:
    """True если value > tol."""
    return value > tol


# =============================================================================
# БЕЗОПАСНОЕ ДЕЛЕНИЕ
# =============================================================================


def safe_divide(
    numerator: Decimal,
    denominator: Decimal,
    fallback: Optional[Decimal] = None,
) -> Optional[Decimal]:
    """
    Деление с fallback при нулевом знаменателе.

    В отличие от float-версии здесь нет epsilon-подмены знаменателя:
    для денег деление на "почти ноль" не должно давать огромных чисел,
    поэтому возвращается fallback.

    Args:
        numerator: Числитель
        denominator: Знаменатель
        fallback: Значение при denominator == 0 (default: None)

    Returns:
        numerator / denominator или fallback

    Examples:
        >>> safe_divide(Decimal(10), Decimal(4))
        Decimal('2.5')
        >>> safe_divide(Decimal(10), Decimal(0)) is None
        True
    """
    if denominator == 0:
        return fallback
    return numerator / denominator


# =============================================================================
# РАСПРЕДЕЛЕНИЕ И СРЕДНИЕ
# =============================================================================


def split_pro_rata(total: Decimal, weights: Sequence[Decimal]) -> list[Decimal]:
    """
    Распределение total пропорционально весам.

    Каждая часть = total * w_i / sum(w); последняя часть получает остаток,
    поэтому sum(parts) == total точно, без rounding drift.

    Args:
        total: Распределяемая сумма
        weights: Неотрицательные веса (хотя бы один положительный)

    Returns:
        Список частей той же длины, что weights

    Raises:
        ValueError: Пустые веса, отрицательный вес или нулевая сумма весов

    Examples:
        >>> split_pro_rata(Decimal(180), [Decimal(100), Decimal(20)])
        [Decimal('150'), Decimal('30')]
    """
    if not weights:
        raise ValueError("weights must not be empty")
    if any(w < 0 for w in weights):
        raise ValueError(f"weights must be non-negative, got {list(weights)}")

    weight_sum = sum(weights, ZERO)
    if weight_sum == 0:
        raise ValueError("sum of weights must be positive")

    parts: list[Decimal] = []
    allocated = ZERO
    for weight in weights[:-1]:
        part = total * weight / weight_sum
        parts.append(part)
        allocated += part
    parts.append(total - allocated)
    return parts


def weighted_average(pairs: Iterable[tuple[Decimal, Decimal]]) -> Optional[Decimal]:
    """
    Взвешенное среднее по парам (value, weight).

    Returns:
        sum(value * weight) / sum(weight) или None если сумма весов 0
    """
    numerator = ZERO
    weight_sum = ZERO
    for value, weight in pairs:
        numerator += value * weight
        weight_sum += weight
    return safe_divide(numerator, weight_sum)
