"""
Core math modules для ledger

Decimal-примитивы для точной арифметики cost basis / proceeds / PnL.
"""

from src.core.math.numerical_safeguards import (
    # Constants
    EPS_QTY,
    HUNDRED,
    ONE,
    ZERO,
    DecimalLike,
    # Conversion
    to_decimal,
    # Comparisons
    is_positive,
    is_zero,
    # Division / allocation
    safe_divide,
    split_pro_rata,
    weighted_average,
)

__all__ = [
    # Constants
    "EPS_QTY",
    "HUNDRED",
    "ONE",
    "ZERO",
    "DecimalLike",
    # Conversion
    "to_decimal",
    # Comparisons
    "is_positive",
    "is_zero",
    # Division / allocation
    "safe_divide",
    "split_pro_rata",
    "weighted_average",
]
