"""Small text parsers used by the rule-based decision strategy.

Amounts follow Indian real-estate usage: "50 lakh", "1.2 crore", "1,50,000".
"""

import re
from datetime import date, datetime, time, timedelta
from typing import Optional

_NUMBER = r"(\d[\d,]*(?:\.\d+)?)"
_UNIT = r"(crores?|cr|lakhs?|lacs?|l|k|thousand|millions?|mn|m)"
_CURRENCY = r"(₹|\brs\.?|\binr|\$)"

_AMOUNT_RE = re.compile(rf"{_CURRENCY}?\s*{_NUMBER}\s*{_UNIT}?\b", re.IGNORECASE)
_RANGE_RE = re.compile(
    rf"{_CURRENCY}?\s*{_NUMBER}\s*{_UNIT}?\s*(?:-|–|to|and)\s*{_CURRENCY}?\s*{_NUMBER}\s*{_UNIT}\b",
    re.IGNORECASE,
)

_MULTIPLIERS = {
    "crore": 10_000_000, "crores": 10_000_000, "cr": 10_000_000,
    "lakh": 100_000, "lakhs": 100_000, "lac": 100_000, "lacs": 100_000, "l": 100_000,
    "k": 1_000, "thousand": 1_000,
    "million": 1_000_000, "millions": 1_000_000, "mn": 1_000_000, "m": 1_000_000,
}


def _to_number(raw: str) -> Optional[float]:
    try:
        return float(raw.replace(",", ""))
    except ValueError:
        return None


def _scaled(raw: str, unit: Optional[str]) -> Optional[float]:
    value = _to_number(raw)
    if value is None:
        return None
    if unit:
        value *= _MULTIPLIERS[unit.lower()]
    return round(value, 2)


def parse_amount(text: str) -> Optional[float]:
    """Parse the first amount in text. "15 lakh" -> 1500000.0, "2 crore" -> 20000000.0."""
    if not text:
        return None
    match = _AMOUNT_RE.search(str(text))
    if not match:
        return None
    return _scaled(match.group(2), match.group(3))


def extract_amounts(text: str) -> list[float]:
    """Money amounts spoken in free text.

    Bare numbers are ignored unless they carry a unit or a currency marker,
    so "3 pm" or "2 bedrooms" never become budgets. In a range such as
    "50 to 80 lakh" the trailing unit applies to both ends.
    """
    if not text:
        return []
    found: list[tuple[int, float]] = []
    taken: list[tuple[int, int]] = []

    for m in _RANGE_RE.finditer(text):
        low_unit = m.group(3) or m.group(6)
        low = _scaled(m.group(2), low_unit)
        high = _scaled(m.group(5), m.group(6))
        if low is not None and high is not None:
            found.append((m.start(), low))
            found.append((m.start() + 1, high))
            taken.append(m.span())

    for m in _AMOUNT_RE.finditer(text):
        if any(start <= m.start() < end for start, end in taken):
            continue
        currency, number, unit = m.group(1), m.group(2), m.group(3)
        if not unit and not currency:
            continue
        value = _scaled(number, unit)
        if value is not None:
            found.append((m.start(), value))

    return [value for _, value in sorted(found)]


# --- dates -----------------------------------------------------------------

_WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
_MONTHS = {
    name: i + 1 for i, name in enumerate(
        ["january", "february", "march", "april", "may", "june", "july",
         "august", "september", "october", "november", "december"]
    )
}
_MONTHS.update({name[:3]: num for name, num in list(_MONTHS.items())})

_TIME_RE = re.compile(r"\b(\d{1,2})(?::(\d{2}))?\s*(am|pm|a\.m\.|p\.m\.)(?![a-z])", re.IGNORECASE)
_AT_TIME_RE = re.compile(r"\bat\s+(\d{1,2})(?::(\d{2}))?\b", re.IGNORECASE)
_IN_DAYS_RE = re.compile(r"\bin\s+(\d{1,2})\s+days?\b", re.IGNORECASE)
_ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")
_DAY_MONTH_RE = re.compile(r"\b(\d{1,2})(?:st|nd|rd|th)?\s+(?:of\s+)?([a-z]{3,9})\b", re.IGNORECASE)
_MONTH_DAY_RE = re.compile(r"\b([a-z]{3,9})\s+(\d{1,2})(?:st|nd|rd|th)?\b", re.IGNORECASE)

DEFAULT_HOUR = 10


def _parse_time(text: str) -> Optional[time]:
    m = _TIME_RE.search(text)
    if m:
        hour, minute = int(m.group(1)), int(m.group(2) or 0)
        meridiem = m.group(3).lower().replace(".", "")
        if meridiem == "pm" and hour < 12:
            hour += 12
        if meridiem == "am" and hour == 12:
            hour = 0
        if hour < 24 and minute < 60:
            return time(hour, minute)
    m = _AT_TIME_RE.search(text)
    if m:
        hour, minute = int(m.group(1)), int(m.group(2) or 0)
        # "at 5" during business hours means 5 pm
        if 1 <= hour <= 7:
            hour += 12
        if hour < 24 and minute < 60:
            return time(hour, minute)
    return None


def _month_date(day: int, month: int, today: date) -> Optional[date]:
    try:
        candidate = date(today.year, month, day)
    except ValueError:
        return None
    if candidate < today:
        try:
            candidate = date(today.year + 1, month, day)
        except ValueError:
            return None
    return candidate


def _parse_day(text: str, today: date) -> Optional[date]:
    if "day after tomorrow" in text:
        return today + timedelta(days=2)
    if "tomorrow" in text:
        return today + timedelta(days=1)
    if "today" in text or "tonight" in text or "this evening" in text:
        return today
    m = _IN_DAYS_RE.search(text)
    if m:
        return today + timedelta(days=int(m.group(1)))
    if "next week" in text:
        return today + timedelta(days=7)
    if "weekend" in text:
        return today + timedelta(days=(5 - today.weekday()) % 7 or 7)
    for i, name in enumerate(_WEEKDAYS):
        if re.search(rf"\b{name}\b", text):
            return today + timedelta(days=(i - today.weekday()) % 7 or 7)
    m = _ISO_DATE_RE.search(text)
    if m:
        try:
            return date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        except ValueError:
            pass
    m = _DAY_MONTH_RE.search(text)
    if m and m.group(2).lower() in _MONTHS:
        found = _month_date(int(m.group(1)), _MONTHS[m.group(2).lower()], today)
        if found:
            return found
    m = _MONTH_DAY_RE.search(text)
    if m and m.group(1).lower() in _MONTHS:
        found = _month_date(int(m.group(2)), _MONTHS[m.group(1).lower()], today)
        if found:
            return found
    return None


def parse_when(phrase: str, now: datetime) -> Optional[datetime]:
    """Resolve a spoken date phrase relative to now (keeps now's tzinfo).

    Returns None when no day can be recognised. A recognised day without a
    time is placed at 10:00; "tonight" at 19:00.
    """
    if not phrase:
        return None
    text = phrase.lower()
    day = _parse_day(text, now.date())
    if day is None:
        return None
    at = _parse_time(text)
    if at is None:
        at = time(19, 0) if "tonight" in text else time(DEFAULT_HOUR, 0)
    return datetime.combine(day, at, tzinfo=now.tzinfo)


def default_when(now: datetime) -> datetime:
    """Tomorrow at 10:00."""
    return datetime.combine(now.date() + timedelta(days=1), time(DEFAULT_HOUR, 0), tzinfo=now.tzinfo)


# --- misc ------------------------------------------------------------------

_PHONE_RE = re.compile(r"(?<!\d)(\+?\d[\d\s-]{8,14}\d)(?!\d)")

_PROPERTY_TYPES = {
    "apartment": ("apartment", "flat", "bhk", "condo"),
    "villa": ("villa", "bungalow"),
    "house": ("house", "independent house", "row house"),
    "plot": ("plot", "land"),
    "commercial": ("office", "shop", "commercial", "showroom", "warehouse"),
}


def extract_phone(text: str) -> Optional[str]:
    if not text:
        return None
    m = _PHONE_RE.search(text)
    if not m:
        return None
    phone = re.sub(r"[\s-]", "", m.group(1))
    return phone if len(re.sub(r"\D", "", phone)) >= 10 else None


def detect_property_type(text: str) -> Optional[str]:
    if not text:
        return None
    lowered = text.lower()
    for property_type, words in _PROPERTY_TYPES.items():
        if any(re.search(rf"\b{re.escape(w)}\b", lowered) for w in words):
            return property_type
    return None
