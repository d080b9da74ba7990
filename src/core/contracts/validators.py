"""
JSON Schema Contract Validators

Модуль для валидации данных на границах ledger согласно формальным
JSON Schema контрактам. Использует библиотеку jsonschema.

Схемы:
- raw_trade.json — сырая запись сделки из trade source (граница Normalizer)
- closed_lot.json — сериализованный ClosedLot (граница persistence)
"""

import json
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping

import jsonschema
from jsonschema import Draft202012Validator, ValidationError
from jsonschema.exceptions import best_match


# =============================================================================
# SCHEMA LOADER
# =============================================================================


class SchemaLoader:
    """
    Загрузчик JSON Schema файлов.

    Схемы лежат в schema/ рядом с этим модулем (ставятся вместе с пакетом).
    """

    def __init__(self, schema_dir: Path | None = None):
        self._schema_dir = schema_dir or Path(__file__).parent / "schema"
        if not self._schema_dir.exists():
            raise RuntimeError(f"Schema directory not found: {self._schema_dir}")

        # Кэш загруженных схем
        self._schemas: Dict[str, Dict[str, Any]] = {}

    def load_schema(self, schema_name: str) -> Dict[str, Any]:
        """
        Загрузка JSON Schema файла.

        Args:
            schema_name: Имя схемы без расширения (например, 'raw_trade')

        Returns:
            Загруженная схема как dict

        Raises:
            FileNotFoundError: Если файл схемы не найден
            ValueError: Если файл не является валидной JSON Schema
        """
        if schema_name in self._schemas:
            return self._schemas[schema_name]

        schema_path = self._schema_dir / f"{schema_name}.json"
        if not schema_path.exists():
            raise FileNotFoundError(f"Schema not found: {schema_path}")

        with open(schema_path, "r", encoding="utf-8") as f:
            schema = json.load(f)

        # Валидируем саму схему (meta-validation)
        try:
            Draft202012Validator.check_schema(schema)
        except jsonschema.SchemaError as e:
            raise ValueError(f"Invalid JSON Schema in {schema_name}.json: {e}")

        self._schemas[schema_name] = schema
        return schema


# Загрузчик схем пакета; схемы read-only, поэтому один экземпляр на процесс
_SCHEMA_LOADER = SchemaLoader()


# =============================================================================
# CONTRACT VALIDATORS
# =============================================================================


class ContractValidator:
    """
    Базовый класс для валидаторов контрактов.

    Инкапсулирует логику валидации данных против JSON Schema.
    """

    def __init__(self, schema_name: str, loader: SchemaLoader | None = None):
        """
        Args:
            schema_name: Имя схемы для валидации
            loader: Загрузчик схем (default: загрузчик пакета)
        """
        self.schema_name = schema_name
        self.schema = (loader or _SCHEMA_LOADER).load_schema(schema_name)
        self.validator = Draft202012Validator(self.schema)

    def validate(self, data: Mapping[str, Any]) -> None:
        """
        Валидация данных против схемы.

        Raises:
            ValidationError: Если данные не соответствуют схеме
        """
        self.validator.validate(data)

    def is_valid(self, data: Mapping[str, Any]) -> bool:
        """Проверка валидности данных без exception."""
        return self.validator.is_valid(data)

    def iter_errors(self, data: Mapping[str, Any]) -> Iterator[ValidationError]:
        """Итератор по всем ошибкам валидации."""
        return self.validator.iter_errors(data)

    def first_error_message(self, data: Mapping[str, Any]) -> str | None:
        """
        Короткое описание самой релевантной ошибки (для reason detail).

        Returns:
            "<path>: <message>" или None если данные валидны
        """
        error = best_match(self.validator.iter_errors(data))
        if error is None:
            return None
        path = ".".join(str(p) for p in error.absolute_path) or "<root>"
        return f"{path}: {error.message}"


class RawTradeValidator(ContractValidator):
    """Валидатор для raw_trade контракта (вход Normalizer)."""

    def __init__(self):
        super().__init__("raw_trade")


class ClosedLotValidator(ContractValidator):
    """Валидатор для closed_lot контракта (выход в persistence)."""

    def __init__(self):
        super().__init__("closed_lot")


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================


def validate_raw_trade(data: Mapping[str, Any]) -> None:
    """
    Валидация сырой записи сделки.

    Raises:
        ValidationError: Если данные не соответствуют схеме
    """
    RawTradeValidator().validate(data)


def validate_closed_lot(data: Mapping[str, Any]) -> None:
    """
    Валидация сериализованного closed lot (ClosedLot.to_record()).

    Raises:
        ValidationError: Если данные не соответствуют схеме
    """
    ClosedLotValidator().validate(data)
