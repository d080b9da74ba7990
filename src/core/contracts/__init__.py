"""
Contract Validation Module

Модуль для валидации JSON контрактов на границах ledger:
сырые сделки из trade source и closed lots для persistence.
"""

from .validators import (
    ClosedLotValidator,
    ContractValidator,
    RawTradeValidator,
    SchemaLoader,
    validate_closed_lot,
    validate_raw_trade,
)

__all__ = [
    # Classes
    "SchemaLoader",
    "ContractValidator",
    "RawTradeValidator",
    "ClosedLotValidator",
    # Functions
    "validate_raw_trade",
    "validate_closed_lot",
]
