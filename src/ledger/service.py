"""Ledger Service — оркестрация matching-прогонов.

Pipeline одного прогона пары (wallet, token):

    fetch → normalize → convert (inline, по порядку) → FIFO match
          → dust close → contract check → persist → metrics sink

Режимы записи:
- recalculate(): полный пересчёт, replace_closed_lots (атомарно)
- apply_incremental(): тот же детерминированный fold; если все
  сохранённые лоты совпадают с пересчитанными, дописываются только новые
  ключи (append_closed_lots), иначе fallback на replace. Итоговый набор
  всегда совпадает с полным пересчётом; повторная доставка — no-op.

Пара обрабатывается под store.pair_lock(). Per-trade аномалии попадают
в диагностику LedgerRun; фатальны только TradeSourceError и
PersistenceError (включая PersistenceConflictError), и тогда записи нет.

Независимые пары обрабатываются конкурентно под asyncio.Semaphore
размера max_concurrency: общего mutable состояния у них нет.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, Sequence

from src.core.contracts import ClosedLotValidator
from src.core.domain import ClosedLot, CycleRecord, OpenLot
from src.core.errors import LedgerError, PersistenceError, RateUnavailableError, UnmatchedSellError
from src.core.math.numerical_safeguards import ZERO
from src.ledger.config import LedgerConfig
from src.ledger.currency_converter import CurrencyConverter
from src.ledger.dust_closer import DustCloser
from src.ledger.lot_matcher import LotMatcher, MatchResult
from src.ledger.metrics_aggregator import MetricsAggregate, MetricsAggregator, TradeRealizedMetrics
from src.ledger.normalizer import SkippedTrade, TradeNormalizer
from src.ports.metrics_sink import MetricsSink
from src.ports.persistence import ClosedLotStore
from src.ports.price_oracle import PriceOracle, TokenPriceLookup
from src.ports.trade_source import TradeSource

logger = logging.getLogger(__name__)

# Режимы записи прогона
MODE_REPLACE = "replace"
MODE_APPEND = "append"
MODE_NOOP = "noop"


# =============================================================================
# RESULTS
# =============================================================================


@dataclass(frozen=True)
class LedgerRun:
    """Итог прогона пары (wallet, token)."""

    wallet_id: str
    token_id: str
    closed_lots: tuple[ClosedLot, ...]
    open_lots: tuple[OpenLot, ...]
    total_original_position: Decimal
    skipped: tuple[SkippedTrade, ...] = ()
    unmatched_sells: tuple[UnmatchedSellError, ...] = ()
    cycles: tuple[CycleRecord, ...] = ()
    metrics: MetricsAggregate = field(default_factory=MetricsAggregate)
    mode: str = MODE_REPLACE
    written_lots: int = 0

    @property
    def open_balance(self) -> Decimal:
        return sum((lot.remaining_size for lot in self.open_lots), ZERO)

    @property
    def dust_lot(self) -> Optional[ClosedLot]:
        return next((lot for lot in self.closed_lots if lot.is_dust), None)

    @property
    def low_confidence(self) -> bool:
        """Хотя бы один лот посчитан по fallback-курсу."""
        return any(lot.low_confidence for lot in self.closed_lots) or any(
            lot.low_confidence for lot in self.open_lots
        )

    @property
    def realized_pnl(self) -> Decimal:
        return sum((lot.realized_pnl for lot in self.closed_lots), ZERO)


@dataclass(frozen=True)
class PairOutcome:
    """Итог обработки пары в worker pool: run или ошибка."""

    wallet_id: str
    token_id: str
    run: Optional[LedgerRun] = None
    error: Optional[LedgerError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def debounced(self) -> bool:
        return self.error is None and self.run is None


# =============================================================================
# SERVICE
# =============================================================================


class LedgerService:
    """Ledger: closed lots и realized-метрики по истории сделок.

    Args:
        trade_source: источник сырых сделок
        oracle: исторические курсы альтернативных settlement-валют
        store: closed-lot store с pair_lock
        metrics_sink: приёмник trade-level метрик (опционально)
        config: политики ledger
        price_lookup: текущая цена токена для dust-закрытия (опционально)
        clock: текущее время для exit_time dust-лота (default: now UTC)
        monotonic: монотонные часы для debounce (default: time.monotonic)
    """

    def __init__(
        self,
        trade_source: TradeSource,
        oracle: PriceOracle,
        store: ClosedLotStore,
        metrics_sink: Optional[MetricsSink] = None,
        config: Optional[LedgerConfig] = None,
        price_lookup: Optional[TokenPriceLookup] = None,
        clock: Optional[Callable[[], datetime]] = None,
        monotonic: Optional[Callable[[], float]] = None,
    ):
        self.config = config or LedgerConfig()
        self.trade_source = trade_source
        self.oracle = oracle
        self.store = store
        self.metrics_sink = metrics_sink
        self.price_lookup = price_lookup
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._monotonic = monotonic or time.monotonic

        self._normalizer = TradeNormalizer(self.config)
        self._dust_closer = DustCloser(self.config)
        self._aggregator = MetricsAggregator()
        self._lot_validator = ClosedLotValidator()
        self._last_recalc: dict[tuple[str, str], float] = {}

    # -------------------------------------------------------------------------
    # COMPUTATION
    # -------------------------------------------------------------------------

    async def compute(
        self,
        wallet_id: str,
        token_id: str,
        records: Optional[Sequence[Mapping[str, Any]]] = None,
    ) -> LedgerRun:
        """Детерминированный прогон без записи.

        Args:
            records: уже прочитанные сырые сделки кошелька (иначе читаются из trade source)

        Raises:
            TradeSourceError: структурный отказ trade source
        """
        if records is None:
            records = await self.trade_source.fetch_trades(wallet_id, token_id)

        normalized = self._normalizer.normalize(records, wallet_id=wallet_id, token_id=token_id)
        events = [e for e in normalized.events if e.wallet_id == wallet_id]

        # Кэш курсов принадлежит прогону
        converter = CurrencyConverter(self.oracle, self.config)
        converted = await converter.convert_events(events)

        matcher = LotMatcher(wallet_id, token_id, self.config)
        result = matcher.run(converted.events)

        closed_lots = list(result.closed_lots)
        open_lots = result.open_lots
        assessment = self._dust_closer.evaluate(result.open_lots, result.total_original_position)
        if assessment.is_dust:
            current_price = await self._current_price(token_id, result)
            dust_lot = self._dust_closer.apply(result, now=self._clock(), current_price=current_price)
            if dust_lot is not None:
                closed_lots.append(dust_lot)
                open_lots = ()

        return LedgerRun(
            wallet_id=wallet_id,
            token_id=token_id,
            closed_lots=tuple(closed_lots),
            open_lots=open_lots,
            total_original_position=result.total_original_position,
            skipped=normalized.skipped + converted.skipped,
            unmatched_sells=result.unmatched_sells,
            cycles=result.cycle_tracker.cycles,
            metrics=self._aggregator.aggregate(closed_lots),
        )

    async def _current_price(self, token_id: str, result: MatchResult) -> Optional[Decimal]:
        if self.price_lookup is not None:
            try:
                price = await self.price_lookup.current_price(token_id)
            except RateUnavailableError as e:
                logger.warning("current price for %s unavailable: %s", token_id, e)
                price = None
            if price is not None and price > 0:
                return price
        return result.last_price

    def _check_contract(self, lots: Iterable[ClosedLot]) -> None:
        for lot in lots:
            problem = self._lot_validator.first_error_message(lot.to_record())
            if problem is not None:
                raise PersistenceError(f"closed lot {lot.key()} violates contract: {problem}")

    # -------------------------------------------------------------------------
    # FULL RECALCULATION
    # -------------------------------------------------------------------------

    def _debounced(self, wallet_id: str, token_id: str) -> bool:
        window = self.config.recalc_debounce_seconds
        if window <= 0:
            return False
        now = self._monotonic()
        last = self._last_recalc.get((wallet_id, token_id))
        if last is not None and now - last < window:
            return True
        self._last_recalc[(wallet_id, token_id)] = now
        return False

    async def recalculate(
        self,
        wallet_id: str,
        token_id: str,
        records: Optional[Sequence[Mapping[str, Any]]] = None,
        force: bool = False,
    ) -> Optional[LedgerRun]:
        """Полный пересчёт пары с атомарной заменой набора closed lots.

        Returns:
            LedgerRun или None, если вызов подавлен debounce

        Raises:
            TradeSourceError, PersistenceError, PersistenceConflictError
        """
        if not force and self._debounced(wallet_id, token_id):
            logger.debug("recalculation of %s/%s debounced", wallet_id, token_id)
            return None

        async with self.store.pair_lock(wallet_id, token_id):
            run = await self.compute(wallet_id, token_id, records)
            self._check_contract(run.closed_lots)
            await self._write(self.store.replace_closed_lots, run)
            await self.store.set_open_balance(wallet_id, token_id, run.open_balance)

        run = _with_mode(run, MODE_REPLACE, len(run.closed_lots))
        self._log_run(run)
        await self._publish_metrics(run.metrics)
        return run

    # -------------------------------------------------------------------------
    # INCREMENTAL
    # -------------------------------------------------------------------------

    async def apply_incremental(
        self,
        wallet_id: str,
        token_id: str,
        records: Optional[Sequence[Mapping[str, Any]]] = None,
    ) -> LedgerRun:
        """Инкрементальное обновление пары после новых сделок.

        Raises:
            TradeSourceError, PersistenceError, PersistenceConflictError
        """
        async with self.store.pair_lock(wallet_id, token_id):
            run = await self.compute(wallet_id, token_id, records)
            self._check_contract(run.closed_lots)

            stored = {lot.key(): lot for lot in await self.store.list_closed_lots(wallet_id, token_id)}
            fresh = {lot.key(): lot for lot in run.closed_lots}
            prefix_intact = all(fresh.get(key) == lot for key, lot in stored.items())

            if prefix_intact:
                new_lots = [lot for lot in run.closed_lots if lot.key() not in stored]
                if new_lots:
                    await self._write(self.store.append_closed_lots, run, new_lots)
                    run = _with_mode(run, MODE_APPEND, len(new_lots))
                else:
                    run = _with_mode(run, MODE_NOOP, 0)
            else:
                logger.info(
                    "stored closed lots of %s/%s diverge from recomputation, replacing",
                    wallet_id,
                    token_id,
                )
                new_lots = list(run.closed_lots)
                await self._write(self.store.replace_closed_lots, run)
                run = _with_mode(run, MODE_REPLACE, len(new_lots))

            await self.store.set_open_balance(wallet_id, token_id, run.open_balance)

        self._log_run(run)
        touched = {lot.buy_trade_id for lot in new_lots} | {lot.sell_trade_id for lot in new_lots}
        touched.discard(None)
        await self._publish_metrics(run.metrics.select(touched))
        return run

    # -------------------------------------------------------------------------
    # BATCH
    # -------------------------------------------------------------------------

    async def recalculate_pairs(
        self,
        pairs: Iterable[tuple[str, str]],
        incremental: bool = False,
        force: bool = False,
    ) -> list[PairOutcome]:
        """Обработка независимых пар в bounded worker pool.

        Ошибка одной пары (LedgerError) не прерывает остальные и
        возвращается в PairOutcome.error.
        """
        sem = asyncio.Semaphore(self.config.max_concurrency)

        def job(wallet_id: str, token_id: str):
            if incremental:
                return lambda: self.apply_incremental(wallet_id, token_id)
            return lambda: self.recalculate(wallet_id, token_id, force=force)

        tasks = [self._guarded(sem, w, t, job(w, t)) for w, t in dict.fromkeys(pairs)]
        return list(await asyncio.gather(*tasks))

    async def _guarded(
        self,
        sem: asyncio.Semaphore,
        wallet_id: str,
        token_id: str,
        job: Callable[[], Awaitable[Optional[LedgerRun]]],
    ) -> PairOutcome:
        async with sem:
            try:
                run = await job()
            except LedgerError as e:
                logger.error("ledger run failed for %s/%s: %s", wallet_id, token_id, e)
                return PairOutcome(wallet_id, token_id, error=e)
        return PairOutcome(wallet_id, token_id, run=run)

    async def recalculate_wallet(self, wallet_id: str, force: bool = False) -> list[PairOutcome]:
        """Полный пересчёт всех токенов кошелька.

        Сделки читаются один раз и группируются по token_id; токен без
        closed lots получает пустой набор (устаревшие лоты удаляются).

        Raises:
            TradeSourceError: структурный отказ trade source
        """
        records = await self.trade_source.fetch_trades(wallet_id)
        by_token: dict[str, list[Mapping[str, Any]]] = {}
        for record in records:
            token = record.get("token_id")
            if token is None or token == "":
                continue
            by_token.setdefault(str(token), []).append(record)

        sem = asyncio.Semaphore(self.config.max_concurrency)

        def job(token_id: str, token_records: list[Mapping[str, Any]]):
            return lambda: self.recalculate(wallet_id, token_id, records=token_records, force=force)

        outcomes = await asyncio.gather(
            *(self._guarded(sem, wallet_id, t, job(t, r)) for t, r in by_token.items())
        )
        logger.info(
            "wallet %s: %d tokens recalculated, %d failed",
            wallet_id,
            sum(1 for o in outcomes if o.run is not None),
            sum(1 for o in outcomes if o.error is not None),
        )
        return list(outcomes)

    # -------------------------------------------------------------------------
    # OUTPUT
    # -------------------------------------------------------------------------

    async def _write(self, op: Callable[..., Any], run: LedgerRun, lots: Optional[Sequence[ClosedLot]] = None) -> None:
        try:
            await op(run.wallet_id, run.token_id, list(run.closed_lots if lots is None else lots))
        except PersistenceError as e:
            logger.error("closed-lot write failed for %s/%s: %s", run.wallet_id, run.token_id, e)
            raise

    async def _publish_metrics(self, metrics: Iterable[TradeRealizedMetrics]) -> None:
        if self.metrics_sink is None:
            return
        for m in metrics:
            try:
                await self.metrics_sink.update_trade_realized_metrics(
                    m.trade_id,
                    m.realized_pnl,
                    m.realized_pnl_percent,
                    m.hold_time_seconds,
                )
            except Exception as e:  # sink информационный: прогон не откатывается
                logger.warning("metrics update failed for trade %s: %s", m.trade_id, e)

    def _log_run(self, run: LedgerRun) -> None:
        logger.info(
            "%s/%s: %s %d lots (%d closed, open balance %s, skipped %d, pre-history sells %d)",
            run.wallet_id,
            run.token_id,
            run.mode,
            run.written_lots,
            len(run.closed_lots),
            run.open_balance,
            len(run.skipped),
            len(run.unmatched_sells),
        )
        if run.low_confidence:
            logger.warning("%s/%s: result uses fallback conversion rates", run.wallet_id, run.token_id)


def _with_mode(run: LedgerRun, mode: str, written: int) -> LedgerRun:
    return replace(run, mode=mode, written_lots=written)
