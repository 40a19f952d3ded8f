"""
Time-range extraction from free text.

Recognises, in priority order:
  - "between 2024-01-01 and 2024-03-31", "from 2024-01-01 to 2024-03-31"
  - "since 2024-01-01"
  - "last 30 days", "past 6 months", "last 2 years"
  - "this month", "last month", "this year", "last year", "ytd"
  - month names with an optional year ("march 2024", "in may")
  - a single ISO date ("on 2024-01-15")
  - a bare year ("in 2023")

All dates are inclusive.  ``today`` is injectable for tests.
"""
from __future__ import annotations

import calendar
import re
from datetime import date, timedelta

from src.nlq.intent import TimeRange

_ISO = r"(\d{4}-\d{2}-\d{2})"

_BETWEEN_RE = re.compile(rf"\b(?:between|from)\s+{_ISO}\s+(?:and|to|through|until)\s+{_ISO}", re.IGNORECASE)
_SINCE_RE = re.compile(rf"\b(?:since|after|starting)\s+{_ISO}", re.IGNORECASE)
_RELATIVE_RE = re.compile(r"\b(?:last|past|previous)\s+(\d{1,12})\s+(day|week|month|year)s?\b", re.IGNORECASE)
_ON_DATE_RE = re.compile(rf"\b{_ISO}\b")
_YEAR_RE = re.compile(r"\b(?:in|during|for)\s+(20\d{2}|19\d{2})\b", re.IGNORECASE)

_MONTHS = {
    "january": 1, "jan": 1, "february": 2, "feb": 2, "march": 3, "mar": 3,
    "april": 4, "apr": 4, "may": 5, "june": 6, "jun": 6, "july": 7, "jul": 7,
    "august": 8, "aug": 8, "september": 9, "sept": 9, "sep": 9,
    "october": 10, "oct": 10, "november": 11, "nov": 11, "december": 12, "dec": 12,
}
_MONTH_RE = re.compile(
    r"\b(january|february|march|april|june|july|august|september|october|november|december|"
    r"jan|feb|mar|apr|jun|jul|aug|sept|sep|oct|nov|dec)\b(?:\s+(\d{4}))?",
    re.IGNORECASE,
)
# "may" is usually a verb; accept it only with a year or a preposition
_MAY_RE = re.compile(r"(?:\b(?:in|during|for|of)\s+may\b(?:\s+(\d{4}))?|\bmay\s+(\d{4}))", re.IGNORECASE)


def shift_months(d: date, months: int) -> date:
    """Move *d* by whole calendar months, clamping the day."""
    month_index = d.year * 12 + (d.month - 1) + months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def month_bounds(year: int, month: int) -> tuple[date, date]:
    return date(year, month, 1), date(year, month, calendar.monthrange(year, month)[1])


def _parse_iso(text: str) -> date | None:
    try:
        return date.fromisoformat(text)
    except ValueError:
        return None


def _relative(n: int, unit: str, today: date) -> date:
    """Start of an n-unit window ending today, clamped to ``date.min``."""
    unit = unit.lower()
    try:
        if unit == "day":
            return today - timedelta(days=n)
        if unit == "week":
            return today - timedelta(weeks=n)
        if unit == "month":
            return shift_months(today, -n)
        return shift_months(today, -12 * n)
    except (OverflowError, ValueError):
        return date.min


def extract_time_range(text: str, today: date | None = None) -> TimeRange | None:
    """Return the first time window mentioned in *text*, or None."""
    today = today or date.today()
    q = text.lower()

    m = _BETWEEN_RE.search(q)
    if m:
        start, end = _parse_iso(m.group(1)), _parse_iso(m.group(2))
        if start and end:
            if end < start:
                start, end = end, start
            return TimeRange(type="absolute", value=m.group(0).strip(), start_date=start, end_date=end)

    m = _SINCE_RE.search(q)
    if m:
        start = _parse_iso(m.group(1))
        if start:
            return TimeRange(type="absolute", value=m.group(0).strip(), start_date=start, end_date=today)

    m = _RELATIVE_RE.search(q)
    if m:
        n, unit = int(m.group(1)), m.group(2)
        return TimeRange(
            type="relative",
            value=f"last {n} {unit.lower()}{'s' if n != 1 else ''}",
            start_date=_relative(n, unit, today),
            end_date=today,
        )

    if "this month" in q or "month to date" in q or "mtd" in q.split():
        return TimeRange(type="relative", value="this month", start_date=today.replace(day=1), end_date=today)

    if "last month" in q or "previous month" in q:
        prev = shift_months(today.replace(day=1), -1)
        start, end = month_bounds(prev.year, prev.month)
        return TimeRange(type="relative", value="last month", start_date=start, end_date=end)

    if "ytd" in q.split() or "year to date" in q or "this year" in q:
        return TimeRange(type="relative", value="this year", start_date=today.replace(month=1, day=1), end_date=today)

    if "last year" in q or "previous year" in q:
        y = today.year - 1
        return TimeRange(type="relative", value="last year", start_date=date(y, 1, 1), end_date=date(y, 12, 31))

    month_match = _month_match(q)
    if month_match:
        month, year, phrase = month_match
        if year is None:
            # a month still ahead this year means last year's
            year = today.year if month <= today.month else today.year - 1
        if year >= 1:
            start, end = month_bounds(year, month)
            return TimeRange(type="absolute", value=phrase, start_date=start, end_date=end)

    m = _ON_DATE_RE.search(q)
    if m:
        day = _parse_iso(m.group(1))
        if day:
            return TimeRange(type="absolute", value=m.group(1), start_date=day, end_date=day)

    m = _YEAR_RE.search(q)
    if m:
        y = int(m.group(1))
        return TimeRange(type="absolute", value=m.group(1), start_date=date(y, 1, 1), end_date=date(y, 12, 31))

    return None


def _month_match(q: str) -> tuple[int, int | None, str] | None:
    candidates = []
    m = _MONTH_RE.search(q)
    if m:
        year = int(m.group(2)) if m.group(2) else None
        candidates.append((m.start(), _MONTHS[m.group(1).lower()], year, m.group(0).strip()))
    m = _MAY_RE.search(q)
    if m:
        raw_year = m.group(1) or m.group(2)
        phrase = f"may {raw_year}" if raw_year else "may"
        candidates.append((m.start(), 5, int(raw_year) if raw_year else None, phrase))
    if not candidates:
        return None
    _, month, year, phrase = min(candidates)
    if year is None:
        y = _YEAR_RE.search(q) or re.search(r"\b(20\d{2})\b", q)
        year = int(y.group(1)) if y else None
    return month, year, phrase
