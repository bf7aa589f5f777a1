from __future__ import annotations

import re
from datetime import datetime, time, timezone
from typing import Any

import pandas as pd

DATE_FORMATS = [
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%m/%d/%y",
    "%m-%d-%Y",
    "%Y-%m-%d %H:%M:%S",
    "%Y/%m/%d %H:%M:%S",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y %I:%M %p",
]

DATE_FORMATS_WITH_TZ = [
    "%m/%d/%Y %H:%M:%S %z",
    "%Y-%m-%d %H:%M:%S %z",
    "%Y/%m/%d %H:%M:%S %z",
]

TIME_FORMATS = ["%H:%M:%S", "%H:%M", "%I:%M:%S %p", "%I:%M %p", "%H:%M:%S.%f"]

TZ_ABBR_OFFSETS = {
    "EST": "-0500",
    "EDT": "-0400",
    "ET": "-0500",
    "CST": "-0600",
    "CDT": "-0500",
    "MST": "-0700",
    "MDT": "-0600",
    "PST": "-0800",
    "PDT": "-0700",
    "UTC": "+0000",
    "GMT": "+0000",
}

TZ_SUFFIX_RE = re.compile(r"^(.*\d)\s+([A-Za-z]{2,4})$")
TIME_ONLY_RE = re.compile(r"^\d{1,2}:\d{2}(:\d{2}(\.\d+)?)?(\s*[AaPp][Mm])?$")
EU_NUMBER_RE = re.compile(r"^[-+(]?\d{1,3}(\.\d{3})*,\d+\)?$|^[-+(]?\d+,\d{1,2}\)?$")
US_NUMBER_RE = re.compile(r"^[-+(]?\d{1,3}(,\d{3})*\.\d+\)?$|^[-+(]?\d+\.\d+\)?$")
SYMBOL_RE = re.compile(r"^[A-Za-z][A-Za-z0-9.\-/ ]{0,31}$")

SIDE_ALIASES = {
    "BUY": "BUY",
    "B": "BUY",
    "BOT": "BUY",
    "BOUGHT": "BUY",
    "YOU BOUGHT": "BUY",
    "BUY TO OPEN": "BUY",
    "BUY TO CLOSE": "BUY",
    "BUY TO COVER": "BUY",
    "COVER": "BUY",
    "LONG": "BUY",
    "SELL": "SELL",
    "S": "SELL",
    "SLD": "SELL",
    "SOLD": "SELL",
    "YOU SOLD": "SELL",
    "SELL TO OPEN": "SELL",
    "SELL TO CLOSE": "SELL",
    "SELL SHORT": "SELL",
    "SHORT": "SELL",
    "SS": "SELL",
}

ORDER_TYPE_ALIASES = {
    "MARKET": "MARKET",
    "MKT": "MARKET",
    "LIMIT": "LIMIT",
    "LMT": "LIMIT",
    "STOP": "STOP",
    "STP": "STOP",
    "STOP LIMIT": "STOP_LIMIT",
    "STP LMT": "STOP_LIMIT",
    "STOP_LIMIT": "STOP_LIMIT",
    "TRAILING STOP": "TRAILING_STOP",
    "TRAIL": "TRAILING_STOP",
}

TIME_IN_FORCE_ALIASES = {
    "DAY": "DAY",
    "GTC": "GTC",
    "GOOD TIL CANCELED": "GTC",
    "GOOD TILL CANCELLED": "GTC",
    "IOC": "IOC",
    "FOK": "FOK",
    "EXT": "EXT",
    "GTC_EXT": "GTC_EXT",
}

ORDER_STATUS_ALIASES = {
    "FILLED": "FILLED",
    "EXECUTED": "FILLED",
    "PARTIALLY FILLED": "PARTIAL",
    "PARTIAL": "PARTIAL",
    "WORKING": "PENDING",
    "PENDING": "PENDING",
    "OPEN": "PENDING",
    "CANCELED": "CANCELLED",
    "CANCELLED": "CANCELLED",
    "REJECTED": "REJECTED",
    "EXPIRED": "EXPIRED",
}

UNFILLED_STATUSES = {"CANCELLED", "REJECTED", "EXPIRED", "PENDING"}


def _to_naive_utc(parsed: datetime) -> datetime:
    if parsed.tzinfo is None:
        return parsed
    return parsed.astimezone(timezone.utc).replace(tzinfo=None)


def _replace_tz_abbreviation(text: str) -> str:
    match = TZ_SUFFIX_RE.match(text.strip())
    if not match:
        return text
    base, abbr = match.groups()
    offset = TZ_ABBR_OFFSETS.get(abbr.upper())
    if offset is None:
        return text
    return f"{base} {offset}"


def parse_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _to_naive_utc(value)
    text = str(value).strip()
    if not text or TIME_ONLY_RE.match(text):
        return None

    text_with_offset = _replace_tz_abbreviation(text)

    for fmt in DATE_FORMATS_WITH_TZ:
        try:
            return _to_naive_utc(datetime.strptime(text_with_offset, fmt))
        except ValueError:
            continue

    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue

    parsed = pd.to_datetime(text_with_offset, errors="coerce", utc=False)
    if isinstance(parsed, pd.Timestamp) and pd.notna(parsed):
        return _to_naive_utc(parsed.to_pydatetime())
    return None


def parse_time(value: Any) -> time | None:
    if value is None:
        return None
    text = str(value).strip().upper()
    if not text:
        return None
    for fmt in TIME_FORMATS:
        try:
            return datetime.strptime(text, fmt).time()
        except ValueError:
            continue
    return None


def combine_date_time(date_value: Any, time_value: Any) -> datetime | None:
    """Join a broker's separate date and time-of-day columns into one timestamp."""
    day = parse_datetime(date_value)
    if day is None:
        return None
    clock = parse_time(time_value)
    if clock is None:
        return day
    return datetime.combine(day.date(), clock)


def detect_decimal_separator(values: list[Any]) -> str:
    eu_votes = 0
    us_votes = 0
    for value in values:
        text = str(value or "").strip().replace("$", "").replace("€", "").replace(" ", "")
        if not text:
            continue
        if EU_NUMBER_RE.match(text):
            eu_votes += 1
        elif US_NUMBER_RE.match(text):
            us_votes += 1
    return "," if eu_votes > us_votes else "."


def parse_decimal(value: Any, default: float | None = None, *, decimal_separator: str = ".") -> float | None:
    if value is None:
        return default
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = (
        str(value)
        .strip()
        .replace("US$", "")
        .replace("USD", "")
        .replace("$", "")
        .replace("€", "")
        .replace("@", "")
        .replace(" ", "")
        .strip()
    )
    if text == "":
        return default
    if decimal_separator == ",":
        text = text.replace(".", "").replace(",", ".")
    else:
        text = text.replace(",", "")
    if text.startswith("(") and text.endswith(")"):
        text = f"-{text[1:-1]}"
    try:
        return float(text)
    except ValueError:
        return default


def normalize_side(value: Any) -> str:
    text = " ".join(str(value if value is not None else "").strip().upper().split())
    return SIDE_ALIASES.get(text, text)


def normalize_order_type(value: Any) -> str | None:
    text = " ".join(str(value if value is not None else "").strip().upper().split())
    if not text:
        return None
    return ORDER_TYPE_ALIASES.get(text, text[:16])


def normalize_time_in_force(value: Any) -> str | None:
    text = " ".join(str(value if value is not None else "").strip().upper().split())
    if not text:
        return None
    return TIME_IN_FORCE_ALIASES.get(text, text[:16])


def normalize_order_status(value: Any) -> str | None:
    text = " ".join(str(value if value is not None else "").strip().upper().split())
    if not text:
        return None
    return ORDER_STATUS_ALIASES.get(text, text)


def looks_like_symbol(value: Any) -> bool:
    return bool(SYMBOL_RE.match(str(value or "").strip()))


def normalize_symbol(value: Any) -> str | None:
    text = str(value if value is not None else "").strip().upper()
    return text or None
