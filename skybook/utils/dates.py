import dateparser
from datetime import date, datetime, timedelta
from typing import Any, Optional
import pytz
import re

from skybook.config import settings

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def get_current_datetime(tz: Optional[str] = None) -> datetime:
    """Current time in the configured business timezone."""
    return datetime.now(pytz.timezone(tz or settings.TZ))


def today(tz: Optional[str] = None) -> date:
    return get_current_datetime(tz).date()


def parse_iso_date(value: Any) -> Optional[date]:
    """Strict parse used by validation: date/datetime objects or YYYY-MM-DD[THH:MM...] strings.

    Returns None when the value cannot be read as a calendar date.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if "T" in text:
        text = text.split("T", 1)[0]
    if not _ISO_DATE.match(text):
        return None
    try:
        return date.fromisoformat(text)
    except ValueError:
        return None


def to_iso_date(text: str, tz: Optional[str] = None) -> str:
    """Coerce a loosely formatted date ("tomorrow", "19 November", "2025-11-19") to ISO.

    Used on intent arguments produced by the dialogue collaborator before they
    reach validation. Returns the input unchanged if it cannot be understood, so
    the validator reports it as malformed.
    """
    if not text:
        return text
    strict = parse_iso_date(text)
    if strict:
        return strict.isoformat()

    base_date = get_current_datetime(tz)
    text_lower = text.lower().strip()
    if text_lower == "today":
        return base_date.date().isoformat()
    if text_lower == "tomorrow":
        return (base_date + timedelta(days=1)).date().isoformat()

    dt = dateparser.parse(
        text,
        settings={
            "RELATIVE_BASE": base_date.replace(tzinfo=None),
            "PREFER_DATES_FROM": "future",
        },
    )
    if dt:
        return dt.date().isoformat()
    return text


def add_months(d: date, months: int) -> date:
    """Calendar month arithmetic, clamping the day to the target month's length."""
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    for day in (d.day, 30, 29, 28):
        try:
            return date(year, month, min(d.day, day))
        except ValueError:
            continue
    return date(year, month, 28)


def age_on(dob: date, on: date) -> int:
    """Completed years between dob and ``on``."""
    years = on.year - dob.year
    if (on.month, on.day) < (dob.month, dob.day):
        years -= 1
    return years
