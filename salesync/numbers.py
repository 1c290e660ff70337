"""
Locale-tolerant numeric parsing for spreadsheet cells.

Sheets exported by different offices mix `1.234,56`, `1,234.56`, `1234,5`
and `€ 1 234`. `parse_locale_number` decides which separator is the decimal
one from the shape of the string alone.
"""
import math
import re
from typing import Any, Optional

_WHITESPACE = re.compile(r"\s+")
_CURRENCY = re.compile(r"[€$£]")
_DOT_THOUSANDS = re.compile(r"^\d{1,3}(\.\d{3})+$")
_NON_NUMERIC = re.compile(r"[^0-9.]")
_NON_ALNUM = re.compile(r"[^0-9A-Za-z]")


def _comma_is_thousands(body: str) -> bool:
    groups = body.split(",")
    head, tail = groups[0], groups[1:]
    if not head.isdigit() or len(head) > 3:
        return False
    return all(len(g) == 3 and g.isdigit() for g in tail)


def parse_locale_number(value: Any, default: Optional[float] = 0.0) -> Optional[float]:
    """
    Parse a number written with either `,` or `.` as decimal separator.

    Rules:
        - both separators present: the later one is the decimal separator
        - only commas: `1,234,567` is grouping, anything else (`12,5`,
          `1234,567`) uses the last comma as decimal separator
        - only dots: `1.234.567` is grouping, otherwise the last dot is
          the decimal separator
        - a leading minus or surrounding parentheses make it negative

    Returns default for None, empty strings, non-finite values and anything
    unparseable.
    """
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else default

    text = _CURRENCY.sub("", _WHITESPACE.sub("", str(value)))
    if not text:
        return default

    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1]
    if text.startswith("-"):
        negative = not negative
        text = text[1:]
    elif text.startswith("+"):
        text = text[1:]

    has_comma = "," in text
    has_dot = "." in text

    if has_comma and has_dot:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif has_comma:
        if _comma_is_thousands(text):
            text = text.replace(",", "")
        else:
            head, _, tail = text.rpartition(",")
            text = head.replace(",", "") + "." + tail
    elif has_dot:
        if _DOT_THOUSANDS.match(text):
            text = text.replace(".", "")
        elif text.count(".") > 1:
            head, _, tail = text.rpartition(".")
            text = head.replace(".", "") + "." + tail

    text = _NON_NUMERIC.sub("", text)
    if not text or text == ".":
        return default

    try:
        number = float(text)
    except ValueError:
        return default
    if not math.isfinite(number):
        return default
    return -number if negative else number


def normalize_customer_code(value: Any) -> str:
    """Strip everything but letters and digits, uppercase."""
    if value is None:
        return ""
    return _NON_ALNUM.sub("", str(value)).upper()


def normalize_salesman(value: Any) -> str:
    """Collapse whitespace and uppercase a salesperson name."""
    if value is None:
        return ""
    return _WHITESPACE.sub(" ", str(value)).strip().upper()
