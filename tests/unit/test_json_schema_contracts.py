"""
Tests for JSON Schema Contract Validators

Комплексное тестирование JSON Schema валидаторов:
- Валидность самих схем
- Валидация правильных данных
- Детекция нарушений required полей
- Детекция нарушений типов и pattern
- Условные правила (dust ↔ synthetic ids)
- Интеграция с Pydantic моделями (ClosedLot.to_record)
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from jsonschema import Draft202012Validator, ValidationError

from src.core.contracts import (
    ClosedLotValidator,
    RawTradeValidator,
    SchemaLoader,
    validate_closed_lot,
    validate_raw_trade,
)
from src.core.domain import ClosedLot, ExitReason

T0 = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)


# =============================================================================
# FIXTURES - VALID DATA SAMPLES
# =============================================================================


@pytest.fixture
def valid_raw_trade():
    """Валидная сырая запись сделки."""
    return {
        "id": "sig-1",
        "wallet_id": "w1",
        "token_id": "TKN",
        "side": "buy",
        "amount_token": "100",
        "amount_base": 100.0,
        "base_token": "SOL",
        "timestamp": "2024-03-01T09:30:00Z",
        "dex": "raydium",
    }


@pytest.fixture
def valid_closed_lot() -> ClosedLot:
    return ClosedLot(
        wallet_id="w1",
        token_id="TKN",
        buy_trade_id="b1",
        sell_trade_id="s1",
        sequence_number=1,
        size=Decimal(20),
        entry_price=Decimal("1.2"),
        exit_price=Decimal("1.5"),
        entry_time=T0,
        exit_time=T0 + timedelta(minutes=10),
        hold_time_minutes=10,
        cost_basis=Decimal("24.0"),
        proceeds=Decimal(30),
        realized_pnl=Decimal("6.0"),
        realized_pnl_percent=Decimal(25),
        exit_reason=ExitReason.TAKE_PROFIT,
        max_profit_percent=Decimal(25),
    )


# =============================================================================
# SCHEMA LOADING
# =============================================================================


class TestSchemaLoader:
    @pytest.mark.parametrize("name", ["raw_trade", "closed_lot"])
    def test_schemas_are_valid_draft_2020_12(self, name: str) -> None:
        schema = SchemaLoader().load_schema(name)
        Draft202012Validator.check_schema(schema)

    def test_schema_cached(self) -> None:
        loader = SchemaLoader()
        assert loader.load_schema("raw_trade") is loader.load_schema("raw_trade")

    def test_missing_schema(self) -> None:
        with pytest.raises(FileNotFoundError):
            SchemaLoader().load_schema("does_not_exist")

    def test_missing_directory(self, tmp_path) -> None:
        with pytest.raises(RuntimeError):
            SchemaLoader(tmp_path / "nope")

    def test_invalid_schema_rejected(self, tmp_path) -> None:
        (tmp_path / "broken.json").write_text('{"type": 12}', encoding="utf-8")
        with pytest.raises(ValueError, match="Invalid JSON Schema"):
            SchemaLoader(tmp_path).load_schema("broken")


# =============================================================================
# RAW TRADE CONTRACT
# =============================================================================


class TestRawTradeContract:
    def test_valid(self, valid_raw_trade) -> None:
        validate_raw_trade(valid_raw_trade)

    def test_numeric_id_and_decimal_amounts(self, valid_raw_trade) -> None:
        valid_raw_trade["id"] = 42
        valid_raw_trade["amount_token"] = Decimal("1.5")
        assert RawTradeValidator().is_valid(valid_raw_trade)

    @pytest.mark.parametrize("field", ["id", "token_id", "side", "amount_token", "amount_base", "timestamp"])
    def test_required_fields(self, valid_raw_trade, field: str) -> None:
        del valid_raw_trade[field]
        with pytest.raises(ValidationError):
            validate_raw_trade(valid_raw_trade)

    def test_non_numeric_amount_string(self, valid_raw_trade) -> None:
        valid_raw_trade["amount_base"] = "lots"
        message = RawTradeValidator().first_error_message(valid_raw_trade)
        assert message is not None
        assert message.startswith("amount_base:")

    def test_first_error_message_none_when_valid(self, valid_raw_trade) -> None:
        assert RawTradeValidator().first_error_message(valid_raw_trade) is None

    def test_missing_field_reported_at_root(self, valid_raw_trade) -> None:
        del valid_raw_trade["side"]
        message = RawTradeValidator().first_error_message(valid_raw_trade)
        assert message.startswith("<root>:")
        assert "side" in message


# =============================================================================
# CLOSED LOT CONTRACT
# =============================================================================


class TestClosedLotContract:
    def test_pydantic_record_is_valid(self, valid_closed_lot: ClosedLot) -> None:
        validate_closed_lot(valid_closed_lot.to_record())

    def test_decimals_must_be_strings(self, valid_closed_lot: ClosedLot) -> None:
        record = valid_closed_lot.to_record()
        record["proceeds"] = 30.0
        assert not ClosedLotValidator().is_valid(record)

    def test_unknown_field_rejected(self, valid_closed_lot: ClosedLot) -> None:
        record = valid_closed_lot.to_record()
        record["unexpected"] = 1
        assert not ClosedLotValidator().is_valid(record)

    def test_dust_requires_synthetic_ids(self, valid_closed_lot: ClosedLot) -> None:
        record = valid_closed_lot.to_record()
        record["is_dust"] = True
        assert not ClosedLotValidator().is_valid(record)

        record["buy_trade_id"] = None
        record["sell_trade_id"] = None
        record["exit_reason"] = "dust"
        assert ClosedLotValidator().is_valid(record)

    def test_regular_lot_requires_sell_id(self, valid_closed_lot: ClosedLot) -> None:
        record = valid_closed_lot.to_record()
        record["sell_trade_id"] = None
        assert not ClosedLotValidator().is_valid(record)

    def test_exit_reason_enum(self, valid_closed_lot: ClosedLot) -> None:
        record = valid_closed_lot.to_record()
        record["exit_reason"] = "liquidation"
        errors = list(ClosedLotValidator().iter_errors(record))
        assert errors
