"""
Тесты для Ledger Service (end-to-end прогоны на in-memory адаптерах)

Проверяет:
1. Полный пересчёт: эталонный сценарий, запись, метрики
2. Идемпотентность пересчёта (побайтно одинаковые наборы)
3. Эквивалентность инкрементального режима полному пересчёту
4. Fallback инкрементального режима на replace
5. Конфликты и отказы persistence/trade source (без частичной записи)
6. Диагностику отброшенных сделок и pre-history sells
7. Конверсию валют, dust-закрытие, debounce, worker pool
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from src.core.errors import PersistenceConflictError, PersistenceError, TradeSourceError
from src.ledger import reject_reasons
from src.ledger.config import LedgerConfig
from src.ledger.service import MODE_APPEND, MODE_NOOP, MODE_REPLACE, LedgerService
from src.ports import (
    InMemoryClosedLotStore,
    InMemoryMetricsSink,
    InMemoryTradeSource,
    StaticPriceOracle,
    StaticTokenPriceLookup,
)

T0 = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)
NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


def raw(trade_id, side, tokens, quote, minute, token_id="TKN", base_token="SOL", wallet_id="w1"):
    return {
        "id": trade_id,
        "wallet_id": wallet_id,
        "token_id": token_id,
        "side": side,
        "amount_token": str(tokens),
        "amount_base": str(quote),
        "base_token": base_token,
        "timestamp": (T0 + timedelta(minutes=minute)).isoformat(),
    }


WORKED_EXAMPLE = [
    raw("b1", "buy", 100, 100, 0),
    raw("b2", "buy", 50, 60, 10),
    raw("s1", "sell", 120, 180, 20),
]


class FakeMonotonic:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class FailingSink:
    async def update_trade_realized_metrics(self, trade_id, realized_pnl, realized_pnl_percent, hold_time_seconds):
        raise RuntimeError("sink offline")


@pytest.fixture
def store() -> InMemoryClosedLotStore:
    return InMemoryClosedLotStore()


@pytest.fixture
def sink() -> InMemoryMetricsSink:
    return InMemoryMetricsSink()


def make_service(trades, store, sink=None, **kwargs) -> LedgerService:
    return LedgerService(
        trade_source=InMemoryTradeSource({"w1": trades}),
        oracle=kwargs.pop("oracle", StaticPriceOracle({"USDC": "0.01", "USDT": "0.01"})),
        store=store,
        metrics_sink=sink,
        clock=lambda: NOW,
        **kwargs,
    )


# =============================================================================
# FULL RECALCULATION
# =============================================================================


class TestRecalculate:
    def test_worked_example_persisted(self, store, sink) -> None:
        service = make_service(WORKED_EXAMPLE, store, sink)
        run = asyncio.run(service.recalculate("w1", "TKN"))

        assert run.mode == MODE_REPLACE
        assert [(lot.buy_trade_id, lot.size, lot.proceeds) for lot in run.closed_lots] == [
            ("b1", Decimal(100), Decimal(150)),
            ("b2", Decimal(20), Decimal(30)),
        ]
        assert run.realized_pnl == Decimal(56)
        assert run.open_balance == Decimal(30)

        stored = asyncio.run(store.list_closed_lots("w1", "TKN"))
        assert stored == list(run.closed_lots)
        assert asyncio.run(store.current_open_balance("w1", "TKN")) == Decimal(30)

    def test_metrics_published(self, store, sink) -> None:
        service = make_service(WORKED_EXAMPLE, store, sink)
        asyncio.run(service.recalculate("w1", "TKN"))

        assert set(sink.metrics) == {"b1", "b2", "s1"}
        assert sink.metrics["s1"].realized_pnl == Decimal(56)
        assert sink.metrics["b2"].realized_pnl_percent == Decimal(25)
        # (100*1200 + 20*600) / 120
        assert sink.metrics["s1"].hold_time_seconds == 1100

    def test_idempotent_byte_identical(self, store) -> None:
        service = make_service(WORKED_EXAMPLE + [raw("s2", "sell", 29.5, 40, 30)], store)

        first = asyncio.run(service.recalculate("w1", "TKN"))
        first_bytes = json.dumps([lot.to_record() for lot in first.closed_lots], sort_keys=True)
        second = asyncio.run(service.recalculate("w1", "TKN"))
        second_bytes = json.dumps([lot.to_record() for lot in second.closed_lots], sort_keys=True)

        assert first.dust_lot is not None
        assert first_bytes == second_bytes

    def test_replace_removes_stale_lots(self, store) -> None:
        service = make_service(WORKED_EXAMPLE, store)
        asyncio.run(service.recalculate("w1", "TKN"))

        service.trade_source = InMemoryTradeSource({"w1": WORKED_EXAMPLE[:2]})
        run = asyncio.run(service.recalculate("w1", "TKN"))

        assert run.closed_lots == ()
        assert asyncio.run(store.list_closed_lots("w1", "TKN")) == []
        assert asyncio.run(store.current_open_balance("w1", "TKN")) == Decimal(150)

    def test_pre_history_sell_reported(self, store) -> None:
        service = make_service([raw("s0", "sell", 10, 10, -5)] + WORKED_EXAMPLE, store)
        run = asyncio.run(service.recalculate("w1", "TKN"))

        assert [u.trade_id for u in run.unmatched_sells] == ["s0"]
        assert len(run.closed_lots) == 2

    def test_redelivered_trade_does_not_abort_run(self, store) -> None:
        trades = [WORKED_EXAMPLE[0], dict(WORKED_EXAMPLE[0])] + WORKED_EXAMPLE[1:]
        run = asyncio.run(make_service(trades, store).recalculate("w1", "TKN"))

        assert [(s.trade_id, s.reason) for s in run.skipped] == [("b1", reject_reasons.DUPLICATE_TRADE)]
        assert [lot.key() for lot in run.closed_lots] == [("b1", "s1"), ("b2", "s1")]
        assert len(asyncio.run(store.list_closed_lots("w1", "TKN"))) == 2

    def test_skipped_trades_reported(self, store) -> None:
        trades = WORKED_EXAMPLE + [
            raw("v1", "void", 10, 10, 5),
            raw("x1", "buy", 10, 10, 5, base_token="BONK"),
            raw("d1", "buy", 10, "0.00001", 5),
            raw("u1", "buy", 10, 10, 5, base_token="USDT"),
        ]
        oracle = StaticPriceOracle(unavailable={"USDT"})
        service = make_service(trades, store, oracle=oracle)
        run = asyncio.run(service.recalculate("w1", "TKN"))

        assert {s.trade_id: s.reason for s in run.skipped} == {
            "v1": reject_reasons.VOID_TRADE,
            "x1": reject_reasons.UNSUPPORTED_QUOTE_CURRENCY,
            "d1": reject_reasons.BELOW_MIN_VALUE,
            "u1": reject_reasons.RATE_UNAVAILABLE,
        }
        assert len(run.closed_lots) == 2

    def test_alternate_currency_converted(self, store) -> None:
        trades = [
            raw("b1", "buy", 100, 10000, 0, base_token="USDC"),
            raw("s1", "sell", 100, 150, 5),
        ]
        run = asyncio.run(make_service(trades, store).recalculate("w1", "TKN"))
        lot = run.closed_lots[0]
        assert lot.cost_basis == Decimal(100)
        assert lot.realized_pnl == Decimal(50)
        assert not run.low_confidence

    def test_degraded_rate_marks_low_confidence(self, store, caplog) -> None:
        cutoff = T0 + timedelta(minutes=2)
        oracle = StaticPriceOracle({"USDC": lambda ts: "0.01" if ts < cutoff else None})
        trades = [
            raw("b1", "buy", 100, 10000, 0, base_token="USDC"),
            raw("b2", "buy", 100, 10000, 5, base_token="USDC"),
            raw("s1", "sell", 150, 150, 10),
        ]
        with caplog.at_level("WARNING"):
            run = asyncio.run(make_service(trades, store, oracle=oracle).recalculate("w1", "TKN"))

        assert run.low_confidence
        assert [lot.low_confidence for lot in run.closed_lots] == [False, True]
        assert "fallback conversion rates" in caplog.text


# =============================================================================
# DUST
# =============================================================================


class TestDust:
    DUST_TRADES = [
        raw("b1", "buy", 100, 100, 0),
        raw("s1", "sell", 99, 198, 10),
    ]

    def test_dust_closed_with_last_trade_price(self, store) -> None:
        run = asyncio.run(make_service(self.DUST_TRADES, store).recalculate("w1", "TKN"))

        dust = run.dust_lot
        assert dust is not None
        assert dust.size == Decimal(1)
        assert dust.exit_price == Decimal(2)
        assert dust.exit_time == NOW
        assert dust.sequence_number == run.closed_lots[0].sequence_number + 1 == 2
        assert run.open_lots == ()
        assert asyncio.run(store.current_open_balance("w1", "TKN")) == Decimal(0)

    def test_dust_uses_price_lookup(self, store) -> None:
        lookup = StaticTokenPriceLookup({"TKN": "3"})
        run = asyncio.run(make_service(self.DUST_TRADES, store, price_lookup=lookup).recalculate("w1", "TKN"))
        assert run.dust_lot.exit_price == Decimal(3)
        assert run.dust_lot.realized_pnl == Decimal(2)

    def test_dust_not_in_trade_metrics(self, store, sink) -> None:
        asyncio.run(make_service(self.DUST_TRADES, store, sink).recalculate("w1", "TKN"))
        assert set(sink.metrics) == {"b1", "s1"}
        assert sink.metrics["b1"].realized_pnl == Decimal(99)

    def test_residual_at_threshold_stays_open(self, store) -> None:
        trades = [raw("b1", "buy", 100, 100, 0), raw("s1", "sell", 98, 100, 10)]
        run = asyncio.run(make_service(trades, store).recalculate("w1", "TKN"))
        assert run.dust_lot is None
        assert run.open_balance == Decimal(2)


# =============================================================================
# INCREMENTAL
# =============================================================================


class TestIncremental:
    HISTORY = [
        raw("b1", "buy", 100, 100, 0),
        raw("s1", "sell", 50, 60, 10),
        raw("b2", "buy", 20, 30, 20),
        raw("s2", "sell", 69, 100, 30),
    ]

    def test_incremental_equals_full_recalculation(self, sink) -> None:
        incremental_store = InMemoryClosedLotStore()
        source = InMemoryTradeSource()
        service = LedgerService(
            source, StaticPriceOracle(), incremental_store, metrics_sink=sink, clock=lambda: NOW
        )

        modes = []
        for trade in self.HISTORY:
            source.add("w1", trade)
            modes.append(asyncio.run(service.apply_incremental("w1", "TKN")).mode)

        full_store = InMemoryClosedLotStore()
        asyncio.run(make_service(self.HISTORY, full_store).recalculate("w1", "TKN"))

        incremental_lots = asyncio.run(incremental_store.list_closed_lots("w1", "TKN"))
        full_lots = asyncio.run(full_store.list_closed_lots("w1", "TKN"))
        assert incremental_lots == full_lots
        assert modes == [MODE_NOOP, MODE_APPEND, MODE_NOOP, MODE_APPEND]
        assert any(lot.is_dust for lot in incremental_lots)

    def test_retried_delivery_is_noop(self, store) -> None:
        service = make_service(WORKED_EXAMPLE, store)
        first = asyncio.run(service.apply_incremental("w1", "TKN"))
        writes = len(store.write_log)
        second = asyncio.run(service.apply_incremental("w1", "TKN"))

        assert first.mode == MODE_APPEND
        assert first.written_lots == 2
        assert second.mode == MODE_NOOP
        assert len(store.write_log) == writes

    def test_only_touched_trades_sent_to_sink(self, store, sink) -> None:
        source = InMemoryTradeSource({"w1": self.HISTORY[:2]})
        service = LedgerService(source, StaticPriceOracle(), store, metrics_sink=sink, clock=lambda: NOW)
        asyncio.run(service.apply_incremental("w1", "TKN"))
        count = sink.update_count

        source.add("w1", raw("s3", "sell", 10, 20, 15))
        asyncio.run(service.apply_incremental("w1", "TKN"))

        # b1 (пересчитан с новым лотом) и s3
        assert sink.update_count - count == 2
        assert sink.metrics["b1"].realized_pnl == Decimal(20)

    def test_back_dated_trade_falls_back_to_replace(self, store) -> None:
        source = InMemoryTradeSource({"w1": WORKED_EXAMPLE})
        service = LedgerService(source, StaticPriceOracle(), store, clock=lambda: NOW)
        asyncio.run(service.apply_incremental("w1", "TKN"))

        # Более ранний buy меняет FIFO-сопоставление уже записанного sell
        source.add("w1", raw("b0", "buy", 10, 5, -10))
        run = asyncio.run(service.apply_incremental("w1", "TKN"))

        assert run.mode == MODE_REPLACE
        stored = asyncio.run(store.list_closed_lots("w1", "TKN"))
        assert [lot.buy_trade_id for lot in stored] == ["b0", "b1", "b2"]

    def test_stale_dust_lot_replaced(self, store) -> None:
        source = InMemoryTradeSource({"w1": TestDust.DUST_TRADES})
        service = LedgerService(source, StaticPriceOracle(), store, clock=lambda: NOW)
        asyncio.run(service.apply_incremental("w1", "TKN"))
        assert any(lot.is_dust for lot in asyncio.run(store.list_closed_lots("w1", "TKN")))

        source.add("w1", raw("b2", "buy", 100, 100, 20))
        run = asyncio.run(service.apply_incremental("w1", "TKN"))

        assert run.mode == MODE_REPLACE
        assert not any(lot.is_dust for lot in asyncio.run(store.list_closed_lots("w1", "TKN")))
        assert run.open_balance == Decimal(101)


# =============================================================================
# FAILURES
# =============================================================================


class TestFailures:
    def test_concurrent_write_conflict(self, store) -> None:
        service = make_service(WORKED_EXAMPLE, store)

        async def scenario():
            async with store.pair_lock("w1", "TKN"):
                with pytest.raises(PersistenceConflictError):
                    await service.recalculate("w1", "TKN")
                with pytest.raises(PersistenceConflictError):
                    await service.apply_incremental("w1", "TKN")

        asyncio.run(scenario())
        assert asyncio.run(store.list_closed_lots("w1", "TKN")) == []
        assert not store.is_locked("w1", "TKN")

    def test_write_failure_keeps_previous_set(self, store) -> None:
        service = make_service(WORKED_EXAMPLE, store)
        asyncio.run(service.recalculate("w1", "TKN"))
        before = asyncio.run(store.list_closed_lots("w1", "TKN"))

        service.trade_source = InMemoryTradeSource({"w1": WORKED_EXAMPLE[:2]})
        store.fail_writes()
        with pytest.raises(PersistenceError):
            asyncio.run(service.recalculate("w1", "TKN"))

        assert asyncio.run(store.list_closed_lots("w1", "TKN")) == before
        assert not store.is_locked("w1", "TKN")

    def test_trade_source_failure_is_fatal(self, store) -> None:
        source = InMemoryTradeSource({"w1": WORKED_EXAMPLE})
        source.fail_for("w1")
        service = LedgerService(source, StaticPriceOracle(), store)
        with pytest.raises(TradeSourceError):
            asyncio.run(service.recalculate("w1", "TKN"))
        assert store.write_log == []

    def test_metrics_sink_failure_not_fatal(self, store, caplog) -> None:
        service = make_service(WORKED_EXAMPLE, store, FailingSink())
        with caplog.at_level("WARNING", logger="src.ledger.service"):
            run = asyncio.run(service.recalculate("w1", "TKN"))
        assert len(run.closed_lots) == 2
        assert "metrics update failed" in caplog.text


# =============================================================================
# DEBOUNCE И WORKER POOL
# =============================================================================


class TestDebounce:
    def test_recalculation_debounced(self, store) -> None:
        monotonic = FakeMonotonic()
        service = make_service(
            WORKED_EXAMPLE, store, config=LedgerConfig(recalc_debounce_seconds=60), monotonic=monotonic
        )

        assert asyncio.run(service.recalculate("w1", "TKN")) is not None
        monotonic.now += 30
        assert asyncio.run(service.recalculate("w1", "TKN")) is None
        assert asyncio.run(service.recalculate("w1", "TKN", force=True)) is not None
        monotonic.now += 31
        assert asyncio.run(service.recalculate("w1", "TKN")) is not None

    def test_debounce_is_per_pair(self, store) -> None:
        trades = WORKED_EXAMPLE + [raw("o1", "buy", 1, 1, 0, token_id="OTHER")]
        service = make_service(
            trades, store, config=LedgerConfig(recalc_debounce_seconds=60), monotonic=FakeMonotonic()
        )
        assert asyncio.run(service.recalculate("w1", "TKN")) is not None
        assert asyncio.run(service.recalculate("w1", "OTHER")) is not None


class TestWorkerPool:
    def test_recalculate_pairs_isolates_failures(self, store) -> None:
        source = InMemoryTradeSource(
            {
                "w1": WORKED_EXAMPLE,
                "w2": [raw("c1", "buy", 10, 10, 0, wallet_id="w2"), raw("c2", "sell", 10, 20, 1, wallet_id="w2")],
                "w3": [],
            }
        )
        source.fail_for("w3")
        service = LedgerService(source, StaticPriceOracle(), store, config=LedgerConfig(max_concurrency=2))

        outcomes = asyncio.run(service.recalculate_pairs([("w1", "TKN"), ("w2", "TKN"), ("w3", "TKN")]))

        assert [(o.wallet_id, o.ok) for o in outcomes] == [("w1", True), ("w2", True), ("w3", False)]
        assert isinstance(outcomes[2].error, TradeSourceError)
        assert outcomes[1].run.realized_pnl == Decimal(10)

    def test_recalculate_pairs_incremental(self, store) -> None:
        service = make_service(WORKED_EXAMPLE, store)
        outcomes = asyncio.run(service.recalculate_pairs([("w1", "TKN"), ("w1", "TKN")], incremental=True))
        assert len(outcomes) == 1
        assert outcomes[0].run.mode == MODE_APPEND

    def test_recalculate_wallet_groups_by_token(self, store) -> None:
        trades = WORKED_EXAMPLE + [
            raw("o1", "buy", 10, 10, 0, token_id="OTHER"),
            raw("o2", "sell", 10, 5, 1, token_id="OTHER"),
        ]
        service = make_service(trades, store)
        outcomes = asyncio.run(service.recalculate_wallet("w1"))

        by_token = {o.token_id: o.run for o in outcomes}
        assert set(by_token) == {"TKN", "OTHER"}
        assert by_token["OTHER"].realized_pnl == Decimal(-5)
        assert len(asyncio.run(store.list_closed_lots("w1", "TKN"))) == 2
        assert sorted(store.pairs("w1")) == [("w1", "OTHER"), ("w1", "TKN")]
