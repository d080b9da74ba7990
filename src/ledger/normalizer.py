"""Trade Normalizer — сырые записи сделок → канонические TradeEvent.

Граница валидации: после нормализации дальше по pipeline идут только
строго типизированные TradeEvent.

Отбрасываются (с reason code, без остановки прогона):
- записи, не прошедшие raw_trade контракт
- void-сделки (token-for-token swap без settlement-ноги, liquidity add/remove)
- quote-валюта вне settlement-набора
- нулевой/отрицательный размер, неположительная цена
- quote-сумма ниже min_quote_amount (airdrop / dust transfer)
- повторы уже принятого id (повторная доставка одной сделки)

Выход упорядочен по времени; при равном времени buy раньше sell.
Порядок входа не предполагается.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional

from src.core.contracts import RawTradeValidator
from src.core.domain import TradeEvent, TradeSide
from src.core.errors import SkippableTradeError
from src.core.math.numerical_safeguards import to_decimal
from src.ledger import reject_reasons
from src.ledger.config import LedgerConfig

logger = logging.getLogger(__name__)

# Синонимы сторон из trade source; liquidity add/remove ведут себя как buy/sell
_SIDE_ALIASES = {
    "buy": TradeSide.BUY,
    "b": TradeSide.BUY,
    "add": TradeSide.BUY,
    "sell": TradeSide.SELL,
    "s": TradeSide.SELL,
    "remove": TradeSide.SELL,
}

_VOID_SIDE = "void"

# unix-время больше этого порога трактуется как миллисекунды
_EPOCH_MS_THRESHOLD = 100_000_000_000


@dataclass(frozen=True)
class SkippedTrade:
    """Сделка, исключённая из построения лотов."""

    trade_id: Optional[str]
    reason: str
    detail: str = ""


@dataclass(frozen=True)
class NormalizationResult:
    """Упорядоченные события + диагностика исключённых сделок."""

    events: tuple[TradeEvent, ...] = ()
    skipped: tuple[SkippedTrade, ...] = ()

    def skipped_by_reason(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for s in self.skipped:
            counts[s.reason] = counts.get(s.reason, 0) + 1
        return counts


@dataclass
class _Accumulator:
    events: list[TradeEvent] = field(default_factory=list)
    skipped: list[SkippedTrade] = field(default_factory=list)
    seen_ids: set[str] = field(default_factory=set)


def parse_timestamp(value: Any) -> datetime:
    """Разбор timestamp из trade source в aware UTC datetime.

    Поддерживается:
    - datetime (naive трактуется как UTC)
    - int/float или числовая строка: unix секунды, либо миллисекунды если > 1e11
    - ISO-8601 строка, включая суффикс 'Z'

    Raises:
        ValueError: значение не распознано
    """
    if isinstance(value, datetime):
        return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)

    if isinstance(value, bool):
        raise ValueError(f"bad timestamp: {value!r}")

    if isinstance(value, (int, float)):
        return _from_epoch(float(value))

    s = str(value or "").strip()
    if not s:
        raise ValueError("bad timestamp: empty")

    try:
        return _from_epoch(float(s))
    except ValueError:
        pass

    # Handle common 'Z'
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"

    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _from_epoch(ts: float) -> datetime:
    if ts != ts or ts in (float("inf"), float("-inf")):
        raise ValueError(f"bad timestamp: {ts!r}")
    if abs(ts) > _EPOCH_MS_THRESHOLD:
        ts = ts / 1000.0
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class TradeNormalizer:
    """Нормализация сырых записей сделок кошелька."""

    def __init__(self, config: Optional[LedgerConfig] = None, validator: Optional[RawTradeValidator] = None):
        self.config = config or LedgerConfig()
        self._validator = validator or RawTradeValidator()

    def normalize_record(self, record: Mapping[str, Any], wallet_id: Optional[str] = None) -> TradeEvent:
        """Нормализация одной записи.

        Args:
            record: сырая запись сделки
            wallet_id: кошелёк, если запись его не содержит

        Returns:
            TradeEvent в исходной quote-валюте (конверсия — задача Currency Converter)

        Raises:
            SkippableTradeError: запись исключается из построения лотов
        """
        trade_id = _opt_id(record.get("id"))

        problem = self._validator.first_error_message(record)
        if problem is not None:
            raise SkippableTradeError(reject_reasons.INVALID_RECORD, problem, trade_id)

        raw_side = str(record["side"]).strip().lower()
        if raw_side == _VOID_SIDE:
            raise SkippableTradeError(reject_reasons.VOID_TRADE, "void trade has no settlement leg", trade_id)
        side = _SIDE_ALIASES.get(raw_side)
        if side is None:
            raise SkippableTradeError(reject_reasons.BAD_SIDE, f"bad_side:{raw_side}", trade_id)

        currency = str(record.get("base_token") or self.config.canonical_currency).strip().upper()
        if currency not in self.config.settlement_currencies:
            raise SkippableTradeError(reject_reasons.UNSUPPORTED_QUOTE_CURRENCY, currency, trade_id)
        if self.config.is_canonical(currency):
            currency = self.config.canonical_currency

        token_amount = to_decimal(record["amount_token"])
        if token_amount <= 0:
            raise SkippableTradeError(reject_reasons.NON_POSITIVE_AMOUNT, f"amount_token={token_amount}", trade_id)

        quote_amount = to_decimal(record["amount_base"])
        if quote_amount <= 0:
            raise SkippableTradeError(reject_reasons.NON_POSITIVE_PRICE, f"amount_base={quote_amount}", trade_id)
        if quote_amount < self.config.min_quote_amount:
            raise SkippableTradeError(
                reject_reasons.BELOW_MIN_VALUE,
                f"{side.value} amount_base={quote_amount} < {self.config.min_quote_amount}",
                trade_id,
            )

        try:
            timestamp = parse_timestamp(record["timestamp"])
        except (ValueError, OverflowError, OSError) as e:
            raise SkippableTradeError(reject_reasons.BAD_TIMESTAMP, str(e), trade_id) from e

        wallet = record.get("wallet_id") or wallet_id
        if not wallet:
            raise SkippableTradeError(reject_reasons.INVALID_RECORD, "wallet_id: missing", trade_id)

        return TradeEvent(
            source_trade_id=trade_id or "",
            wallet_id=str(wallet),
            token_id=str(record["token_id"]),
            side=side,
            token_amount=token_amount,
            quote_amount=quote_amount,
            quote_currency=currency,
            timestamp=timestamp,
        )

    def normalize(
        self,
        records: Iterable[Mapping[str, Any]],
        wallet_id: Optional[str] = None,
        token_id: Optional[str] = None,
    ) -> NormalizationResult:
        """Нормализация набора записей кошелька.

        Args:
            records: сырые записи в любом порядке
            wallet_id: кошелёк по умолчанию для записей без wallet_id
            token_id: если задан, записи других токенов игнорируются (без reason code)

        Returns:
            NormalizationResult с событиями, отсортированными по TradeEvent.sort_key
        """
        acc = _Accumulator()
        for record in records:
            if token_id is not None and str(record.get("token_id")) != token_id:
                continue
            try:
                event = self.normalize_record(record, wallet_id=wallet_id)
            except SkippableTradeError as e:
                logger.debug("skip trade %s: %s %s", e.trade_id, e.reason, e.detail)
                acc.skipped.append(SkippedTrade(trade_id=e.trade_id, reason=e.reason, detail=e.detail))
                continue

            if event.source_trade_id in acc.seen_ids:
                logger.debug("skip trade %s: %s", event.source_trade_id, reject_reasons.DUPLICATE_TRADE)
                acc.skipped.append(
                    SkippedTrade(
                        trade_id=event.source_trade_id,
                        reason=reject_reasons.DUPLICATE_TRADE,
                        detail="trade id already accepted",
                    )
                )
                continue
            if event.source_trade_id:
                acc.seen_ids.add(event.source_trade_id)
            acc.events.append(event)

        acc.events.sort(key=TradeEvent.sort_key)
        if acc.skipped:
            logger.info(
                "normalized %d trades, skipped %d (wallet=%s token=%s)",
                len(acc.events),
                len(acc.skipped),
                wallet_id,
                token_id,
            )
        return NormalizationResult(events=tuple(acc.events), skipped=tuple(acc.skipped))


def _opt_id(x: Any) -> Optional[str]:
    if x is None or x == "":
        return None
    return str(x)
