"""Канонические reason codes для сделок, исключённых из построения лотов.

Простые строковые константы, чтобы:
- агрегировать статистику (почему сделка не попала в лоты?)
- не допускать дрейфа ad-hoc строк между модулями
"""

# Normalizer: структура записи
INVALID_RECORD = "invalid_record"
BAD_SIDE = "bad_side"
BAD_TIMESTAMP = "bad_timestamp"

# Normalizer: экономический смысл
VOID_TRADE = "void_trade"
UNSUPPORTED_QUOTE_CURRENCY = "unsupported_quote_currency"
NON_POSITIVE_AMOUNT = "non_positive_amount"
NON_POSITIVE_PRICE = "non_positive_price"
BELOW_MIN_VALUE = "below_min_value"

# Normalizer: повторная доставка записи с уже принятым id
DUPLICATE_TRADE = "duplicate_trade"

# Currency Converter
RATE_UNAVAILABLE = "rate_unavailable"

# Lot Matcher
PRE_HISTORY_SELL = "pre_history_sell"
