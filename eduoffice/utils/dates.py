from datetime import date, datetime

from dateutil.relativedelta import relativedelta


def month_bounds(month_value):
    """``YYYY-MM`` -> (first day, last day)."""
    year, month = (int(part) for part in month_value.split("-", 1))
    first = date(year, month, 1)
    return first, first + relativedelta(months=1, days=-1)


def parse_date(value):
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.strptime(str(value)[:10], "%Y-%m-%d").date()


def iso(value):
    return value.isoformat() if value is not None else None
