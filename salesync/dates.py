"""
Date parsing for spreadsheet cells.

Handles ISO dates, slash/dash/dot separated day-month-year in either order,
gviz `Date(2025,0,31)` literals, spreadsheet serial numbers and month names
in English or Greek (`5 Μαΐ 2025`, `12-Jan-24`).
"""
import re
import unicodedata
from datetime import date, datetime, timedelta
from typing import Any, Optional

_ISO = re.compile(r"^(\d{4})[-/](\d{1,2})[-/](\d{1,2})(?:[T\s].*)?$")
_NUMERIC = re.compile(r"^(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{2,4})(?:\s.*)?$")
_GVIZ = re.compile(r"^Date\((\d{4}),\s*(\d{1,2}),\s*(\d{1,2})")
_NAMED_MONTH = re.compile(r"(\d{1,2})[/\-.\s]+([a-zͰ-Ͽ]+)(?:[/\-.\s]+(\d{2,4}))?")
_FOUR_DIGITS = re.compile(r"\d{4}")

_SERIAL_EPOCH = date(1899, 12, 30)

_GREEK_TO_LATIN = {
    "α": "a", "β": "v", "γ": "g", "δ": "d", "ε": "e", "ζ": "z", "η": "i",
    "θ": "th", "ι": "i", "κ": "k", "λ": "l", "μ": "m", "ν": "n", "ξ": "x",
    "ο": "o", "π": "p", "ρ": "r", "σ": "s", "ς": "s", "τ": "t", "υ": "u",
    "φ": "f", "χ": "ch", "ψ": "ps", "ω": "o",
}

# Transliterated prefixes; longest candidate is tried first
_MONTH_ALIASES = {
    "ian": 1, "ianouar": 1, "jan": 1,
    "fev": 2, "feb": 2, "febr": 2,
    "mar": 3, "mart": 3,
    "apr": 4, "avr": 4,
    "may": 5, "mai": 5,
    "ioun": 6, "jun": 6,
    "ioul": 7, "jul": 7,
    "aug": 8, "augou": 8,
    "sep": 9, "sept": 9,
    "okt": 10, "oct": 10,
    "nov": 11, "noe": 11,
    "dec": 12, "dek": 12,
}


def _strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text.lower())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def _month_index(token: str) -> Optional[int]:
    latin = "".join(
        ch if "a" <= ch <= "z" else _GREEK_TO_LATIN.get(ch, "")
        for ch in _strip_accents(token)
    )
    if not latin:
        return None
    for size in (len(latin), 6, 5, 4, 3):
        candidate = latin[:size]
        if candidate in _MONTH_ALIASES:
            return _MONTH_ALIASES[candidate]
    return None


def _year(token: Optional[str]) -> Optional[int]:
    if not token:
        return None
    value = int(token)
    if value < 100:
        return value + 1900 if value >= 70 else value + 2000
    return value


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _day_month(first: int, second: int) -> tuple:
    """(day, month) for an `a/b/yyyy` pair; ambiguous pairs read month-first."""
    if first > 12:
        return first, second
    return second, first


def parse_sheet_date(value: Any) -> Optional[date]:
    """
    Parse a spreadsheet date cell into a `date`.

    Returns None when the value is empty or no supported format matches.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)):
        if value <= 0:
            return None
        return _SERIAL_EPOCH + timedelta(days=int(value))

    text = str(value).strip()
    if not text:
        return None

    match = _GVIZ.match(text)
    if match:
        year, month0, day = (int(g) for g in match.groups())
        return _safe_date(year, month0 + 1, day)

    match = _ISO.match(text)
    if match:
        year, month, day = (int(g) for g in match.groups())
        return _safe_date(year, month, day)

    match = _NUMERIC.match(text)
    if match:
        first, second, year = int(match.group(1)), int(match.group(2)), _year(match.group(3))
        if "-" in text or "." in text:
            # dash and dot separated exports are always day-first
            return _safe_date(year, second, first)
        day, month = _day_month(first, second)
        return _safe_date(year, month, day)

    normalized = _strip_accents(text)
    match = _NAMED_MONTH.search(normalized)
    if match:
        month = _month_index(match.group(2))
        if month is not None:
            year = _year(match.group(3))
            if year is None:
                fallback = _FOUR_DIGITS.search(normalized)
                year = int(fallback.group(0)) if fallback else date.today().year
            return _safe_date(year, month, int(match.group(1)))

    return None
