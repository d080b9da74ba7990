"""Ledger Config — политики и константы matching-прогона.

Все эвристические константы (dust threshold, пороги классификации
take-profit / stop-loss, settlement-набор валют) задаются здесь, а не
литералами в алгоритме.

YAML-формат (все ключи опциональны, неуказанные берут default):

    canonical_currency: SOL
    canonical_aliases: [SOL, WSOL]
    alternate_currencies: [USDC, USDT]
    min_quote_amount: "0.0001"
    lot_epsilon: "1e-8"
    dust_threshold: "0.02"
    take_profit_pct: "10"
    stop_loss_pct: "-10"
    rate_cache_window_minutes: 60
    max_concurrency: 4
    recalc_debounce_seconds: 0
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, FrozenSet, Mapping

import yaml

from src.core.errors import ConfigError
from src.core.math.numerical_safeguards import EPS_QTY, to_decimal


@dataclass(frozen=True)
class LedgerConfig:
    """Конфигурация ledger.

    Attributes:
        canonical_currency: единая settlement-валюта, в которую приводятся quote amounts
        canonical_aliases: синонимы канонической валюты (конверсия не нужна)
        alternate_currencies: признанные альтернативные settlement-валюты (конверсия через oracle)
        min_quote_amount: минимальная quote-сумма реальной сделки (фильтр airdrop/dust transfer)
        lot_epsilon: остаток лота/sell не больше epsilon считается нулём
        dust_threshold: доля от суммарной исторической позиции, ниже которой остаток закрывается как dust
        take_profit_pct: pnl% выше порога → take_profit
        stop_loss_pct: pnl% ниже порога → stop_loss
        rate_cache_window_minutes: окно rolling-кэша курсов (в минутах от самого свежего bucket)
        max_concurrency: размер worker pool для независимых пар (wallet, token)
        recalc_debounce_seconds: минимальный интервал между пересчётами одной пары (0 = выкл.)
    """

    canonical_currency: str = "SOL"
    canonical_aliases: FrozenSet[str] = field(default_factory=lambda: frozenset({"SOL", "WSOL"}))
    alternate_currencies: FrozenSet[str] = field(default_factory=lambda: frozenset({"USDC", "USDT"}))
    min_quote_amount: Decimal = Decimal("0.0001")
    lot_epsilon: Decimal = EPS_QTY
    dust_threshold: Decimal = Decimal("0.02")
    take_profit_pct: Decimal = Decimal("10")
    stop_loss_pct: Decimal = Decimal("-10")
    rate_cache_window_minutes: int = 60
    max_concurrency: int = 4
    recalc_debounce_seconds: float = 0.0

    def __post_init__(self) -> None:
        if not self.canonical_currency:
            raise ConfigError("canonical_currency must not be empty")
        if self.canonical_currency not in self.canonical_aliases:
            raise ConfigError(
                f"canonical_aliases must contain canonical_currency {self.canonical_currency!r}"
            )
        overlap = self.canonical_aliases & self.alternate_currencies
        if overlap:
            raise ConfigError(f"currencies both canonical and alternate: {sorted(overlap)}")
        if self.min_quote_amount < 0:
            raise ConfigError(f"min_quote_amount must be >= 0, got {self.min_quote_amount}")
        if self.lot_epsilon < 0:
            raise ConfigError(f"lot_epsilon must be >= 0, got {self.lot_epsilon}")
        if not (Decimal(0) < self.dust_threshold < Decimal(1)):
            raise ConfigError(f"dust_threshold must be in (0, 1), got {self.dust_threshold}")
        if self.stop_loss_pct > self.take_profit_pct:
            raise ConfigError(
                f"stop_loss_pct {self.stop_loss_pct} must not exceed take_profit_pct {self.take_profit_pct}"
            )
        if self.rate_cache_window_minutes < 1:
            raise ConfigError(f"rate_cache_window_minutes must be >= 1, got {self.rate_cache_window_minutes}")
        if self.max_concurrency < 1:
            raise ConfigError(f"max_concurrency must be >= 1, got {self.max_concurrency}")
        if self.recalc_debounce_seconds < 0:
            raise ConfigError(f"recalc_debounce_seconds must be >= 0, got {self.recalc_debounce_seconds}")

    @property
    def settlement_currencies(self) -> FrozenSet[str]:
        """Все признанные settlement-валюты."""
        return self.canonical_aliases | self.alternate_currencies

    def is_canonical(self, currency: str) -> bool:
        return currency.upper() in self.canonical_aliases


_DECIMAL_KEYS = ("min_quote_amount", "lot_epsilon", "dust_threshold", "take_profit_pct", "stop_loss_pct")
_CURRENCY_SET_KEYS = ("canonical_aliases", "alternate_currencies")
_INT_KEYS = ("rate_cache_window_minutes", "max_concurrency")


def ledger_config_from_mapping(raw: Mapping[str, Any], base: LedgerConfig | None = None) -> LedgerConfig:
    """Собрать LedgerConfig из mapping (например, распарсенного YAML).

    Raises:
        ConfigError: неизвестный ключ или невалидное значение
    """
    known = {f.name for f in fields(LedgerConfig)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigError(f"Unknown ledger config keys: {', '.join(unknown)}")

    values: Dict[str, Any] = {}
    for key, value in raw.items():
        try:
            if key in _DECIMAL_KEYS:
                values[key] = to_decimal(value)
            elif key in _CURRENCY_SET_KEYS:
                if isinstance(value, str) or not isinstance(value, (list, tuple, set, frozenset)):
                    raise ConfigError(f"{key} must be a list of currency codes")
                values[key] = frozenset(str(c).strip().upper() for c in value)
            elif key in _INT_KEYS:
                if isinstance(value, bool) or not isinstance(value, int):
                    raise ConfigError(f"{key} must be an integer, got {value!r}")
                values[key] = value
            elif key == "recalc_debounce_seconds":
                values[key] = float(value)
            elif key == "canonical_currency":
                values[key] = str(value).strip().upper()
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid value for {key}: {e}") from e

    return replace(base or LedgerConfig(), **values)


def load_ledger_config(path: str | Path) -> LedgerConfig:
    """Загрузить LedgerConfig из YAML-файла.

    Пустой файл → конфигурация по умолчанию.

    Raises:
        ConfigError: файл не найден, не YAML mapping или содержит невалидные значения
    """
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"Config not found: {p}")

    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {p}: {e}") from e

    if raw is None:
        return LedgerConfig()
    if not isinstance(raw, dict):
        raise ConfigError(f"{p} must be a YAML mapping (dict at top-level)")

    return ledger_config_from_mapping(raw)
