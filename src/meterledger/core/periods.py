"""Resolve free-text invoice periods to a (year, month) billing bucket."""

import re
from datetime import date

MONTHS = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)

_MONTH_ABBREVIATIONS = {name[:3].lower(): index for index, name in enumerate(MONTHS, 1)}

# Alternatives are tried left to right at each position, so every date in the
# string is found in reading order.
_DATE_PATTERN = re.compile(
    r"(?P<dmy_day>\d{1,2})[/-](?P<dmy_month>\d{1,2})[/-](?P<dmy_year>\d{4})"
    r"|(?P<iso_year>\d{4})-(?P<iso_month>\d{1,2})-(?P<iso_day>\d{1,2})"
    r"|(?P<txt_day>\d{1,2})\s+(?P<txt_month>[A-Za-z]{3,9})\.?\s+(?P<txt_year>\d{4})"
)


def month_index(month: str) -> int:
    """Zero-based position of an English month name; unknown names sort first."""
    try:
        return MONTHS.index(month)
    except ValueError:
        return 0


def _to_date(match: re.Match) -> date | None:
    if match.group("dmy_year"):
        day, month, year = (
            match.group("dmy_day"),
            match.group("dmy_month"),
            match.group("dmy_year"),
        )
    elif match.group("iso_year"):
        day, month, year = (
            match.group("iso_day"),
            match.group("iso_month"),
            match.group("iso_year"),
        )
    else:
        month_number = _MONTH_ABBREVIATIONS.get(match.group("txt_month")[:3].lower())
        if month_number is None:
            return None
        day, month, year = match.group("txt_day"), month_number, match.group("txt_year")

    try:
        return date(int(year), int(month), int(day))
    except ValueError:
        return None


def find_dates(text: str) -> list[date]:
    """Return every valid calendar date found in ``text``, in reading order."""
    dates = []
    for match in _DATE_PATTERN.finditer(text or ""):
        parsed = _to_date(match)
        if parsed is not None:
            dates.append(parsed)
    return dates


def resolve_period(period: str | None, today: date | None = None) -> tuple[int, str]:
    """Map an invoice period string to the (year, month name) it is billed in.

    Ranges such as ``"01/09/2024 to 30/09/2024"`` are attributed to the month
    of their closing date. When no date can be read the period falls back to
    ``today`` (the current date unless given).
    """
    dates = find_dates(period or "")
    anchor = dates[-1] if dates else (today or date.today())
    return anchor.year, MONTHS[anchor.month - 1]
