import math
import re
from datetime import date, datetime
from typing import Any, Mapping, Optional

_NON_NUMERIC = re.compile(r"[^0-9.]")

MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}


def safe_float(v) -> float:
    """Parse a number out of messy upstream text ("₹1,23,456.50" -> 123456.5).

    Every character other than digits and the decimal point is dropped
    first; anything still unparsable, or not finite (NaN, overflow), becomes 0.0.
    """
    if v is None:
        return 0.0
    numeric = isinstance(v, (int, float)) and not isinstance(v, bool)
    try:
        result = float(v) if numeric else float(_NON_NUMERIC.sub("", str(v)))
    except (ValueError, OverflowError):
        return 0.0
    return result if math.isfinite(result) else 0.0


def safe_int(v) -> int:
    return int(safe_float(v))


def pick(rec: Mapping[str, Any], *names: str) -> Any:
    """First non-empty value among alternative field names."""
    for name in names:
        value = rec.get(name)
        if value not in (None, ""):
            return value
    return None


def _month_number(value) -> Optional[int]:
    if value is None:
        return None
    text = str(value).strip()
    if text.isdigit():
        n = int(text)
        return n if 1 <= n <= 12 else None
    return MONTHS.get(text[:3].lower())


def _year_number(value) -> Optional[int]:
    digits = re.match(r"\s*(\d{4})", str(value)) if value is not None else None
    year = int(digits.group(1)) if digits else None
    return year if year else None


def first_of_month(d) -> date:
    return date(d.year, d.month, 1)


def parse_month(value: str) -> date:
    """Parse "YYYY-MM" or "YYYY-MM-DD" into the first of that month."""
    text = value.strip()
    for fmt in ("%Y-%m", "%Y-%m-%d"):
        try:
            return first_of_month(datetime.strptime(text, fmt))
        except ValueError:
            continue
    raise ValueError(f"Invalid month {value!r}, expected YYYY-MM")


def extract_year_month(rec: Mapping[str, Any], today: Optional[date] = None) -> date:
    """Work out which month a data.gov.in record describes.

    Tries, in order: ``year`` + ``month``; ``fin_year`` + ``month`` (the
    financial year runs April to March, so Jan-Mar belong to its second
    calendar year); a ``date`` field; ``year`` alone (January); and finally
    the current month.
    """
    month = _month_number(rec.get("month"))
    year = _year_number(rec.get("year"))
    if month and year:
        return date(year, month, 1)

    fin_year = rec.get("fin_year") or rec.get("financial_year")
    start_year = _year_number(fin_year)
    if month and start_year:
        return date(start_year + 1 if month <= 3 else start_year, month, 1)

    raw_date = rec.get("date")
    if raw_date:
        for fmt in ("%Y-%m-%d", "%Y-%m-%dT%H:%M:%S", "%d-%m-%Y", "%d/%m/%Y", "%Y-%m"):
            try:
                return first_of_month(datetime.strptime(str(raw_date)[:19], fmt))
            except ValueError:
                continue

    if year:
        return date(year, 1, 1)

    return first_of_month(today or date.today())

