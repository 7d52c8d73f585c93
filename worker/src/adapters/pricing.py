from __future__ import annotations

import re

DEFAULT_CURRENCY: str = "USD"

# Digits with optional thousands groups and an optional fractional part,
# e.g. "1 299", "1.299,00", "1,299.99", "12'500".
_PRICE_NUMBER = re.compile(r"\d+(?:[ \u00a0\u202f.,']\d{3})*(?:[.,]\d+)?")
_GROUPING_CHARS = re.compile(r"[ \u00a0\u202f']")

_ISO_CODES: tuple[str, ...] = (
    "USD", "EUR", "GBP", "DKK", "SEK", "NOK", "CHF", "CAD", "AUD", "NZD",
    "JPY", "CNY", "INR", "PLN", "CZK", "HUF", "BRL", "MXN", "ZAR",
)
_ISO_CODE_PATTERN = re.compile(r"(?<![A-Z])(" + "|".join(_ISO_CODES) + r")(?![A-Z])")

# Longest symbols first so "C$" is not read as "$".
_CURRENCY_SYMBOLS: tuple[tuple[str, str], ...] = (
    ("US$", "USD"),
    ("CA$", "CAD"),
    ("C$", "CAD"),
    ("AU$", "AUD"),
    ("A$", "AUD"),
    ("NZ$", "NZD"),
    ("R$", "BRL"),
    ("zł", "PLN"),
    ("Kč", "CZK"),
    ("kr", "DKK"),
    ("€", "EUR"),
    ("£", "GBP"),
    ("¥", "JPY"),
    ("₹", "INR"),
    ("$", "USD"),
)


def _normalise_number(raw: str) -> str:
    cleaned = _GROUPING_CHARS.sub("", raw)
    last_dot = cleaned.rfind(".")
    last_comma = cleaned.rfind(",")
    if last_dot == -1 and last_comma == -1:
        return cleaned

    decimal_pos = max(last_dot, last_comma)
    separator = cleaned[decimal_pos]
    integer, fraction = cleaned[:decimal_pos], cleaned[decimal_pos + 1 :]
    mixed = last_dot != -1 and last_comma != -1

    if not mixed:
        repeated = cleaned.count(separator) > 1
        # "1,299" and "1.299" are grouped thousands, "0.999" is not
        if repeated or (len(fraction) == 3 and integer.strip("0") != ""):
            return cleaned.replace(separator, "")

    return integer.replace(".", "").replace(",", "") + "." + fraction


def parse_price(text: str | None) -> float | None:
    """Extract a numeric price from text like '$1,299.99', 'kr 1 299,-' or '1.299,00 €'.

    Returns ``None`` when no number can be found; an unknown price is never
    reported as zero.
    """
    if not text:
        return None
    match = _PRICE_NUMBER.search(text)
    if match is None:
        return None
    try:
        value = float(_normalise_number(match.group()))
    except ValueError:
        return None
    return value if value >= 0 else None


def detect_currency(text: str | None, default: str = DEFAULT_CURRENCY) -> str:
    """Map a currency code or symbol found in ``text`` to a 3-letter code."""
    if not text:
        return default
    code = _ISO_CODE_PATTERN.search(text.upper())
    if code is not None:
        return code.group(1)
    for symbol, iso in _CURRENCY_SYMBOLS:
        if symbol in text:
            return iso
    return default


def normalise_currency(value: object, default: str = DEFAULT_CURRENCY) -> str:
    """Coerce a structured-data currency value (code or symbol) into a 3-letter code."""
    if isinstance(value, str):
        stripped = value.strip()
        if len(stripped) == 3 and stripped.isalpha():
            return stripped.upper()
        return detect_currency(stripped, default)
    return default
