# billing/aggregation.py
"""
Revenue aggregator for dashboards and financial reports.

Works on records the caller already fetched; never queries or writes.
Channel totals (insurance, cash, installments) are kept apart because
departments report them separately. Balances are recomputed from the
current field values, the persisted `balance` column is not trusted.
"""
from datetime import date, datetime, timedelta

from core.utils import get_local_date, get_local_today

from .exceptions import InvalidPatch
from .models import DEPARTMENT_CHOICES
from .utils import ZERO, stored_amount

TODAY = 'today'
WEEKLY = 'weekly'
MONTHLY = 'monthly'
QUARTERLY = 'quarterly'
ALL = 'all'

WINDOW_CHOICES = [
    (TODAY, 'Today'),
    (WEEKLY, 'Last 7 days'),
    (MONTHLY, 'Last 30 days'),
    (QUARTERLY, 'Last 90 days'),
    (ALL, 'All time'),
]

# Days reaching back from today, inclusive of both ends
WINDOW_DAYS = {
    TODAY: 0,
    WEEKLY: 7,
    MONTHLY: 30,
    QUARTERLY: 90,
}

WINDOWS = tuple(value for value, _ in WINDOW_CHOICES)


def parse_window(value, default=MONTHLY):
    if value in (None, ''):
        return default
    window = str(value).strip().lower()
    if window not in WINDOWS:
        raise InvalidPatch(
            f"Unknown window: {value}. Use one of: {', '.join(WINDOWS)}",
            field='window',
        )
    return window


def _as_local_date(value):
    if value is None:
        return get_local_today()
    if isinstance(value, datetime):
        return get_local_date(value)
    return value


def window_range(window, today=None):
    """(start_date, end_date) for a window, or (None, None) for 'all'"""
    today = _as_local_date(today)
    if window == ALL:
        return None, None
    return today - timedelta(days=WINDOW_DAYS[window]), today


def window_contains(created_at, window, today=None):
    """Does a record created at `created_at` fall inside the window?"""
    if window == ALL:
        return True
    if created_at is None:
        return False
    start_date, end_date = window_range(window, today)
    return start_date <= get_local_date(created_at) <= end_date


class RevenueSummary:
    """Totals over a set of billable records"""

    def __init__(self, insurance_total=ZERO, cash_total=ZERO, installment_total=ZERO,
                 balance_total=ZERO, count=0):
        self.insurance_total = insurance_total
        self.cash_total = cash_total
        self.installment_total = installment_total
        self.balance_total = balance_total
        self.count = count

    @property
    def paid_total(self):
        return self.insurance_total + self.cash_total + self.installment_total

    def add(self, record):
        self.insurance_total += stored_amount(record.insurance_amount)
        self.cash_total += stored_amount(record.cash_amount)
        self.installment_total += record.installments_total
        self.balance_total += record.computed_balance
        self.count += 1

    def as_dict(self):
        return {
            'insurance_total': str(self.insurance_total),
            'cash_total': str(self.cash_total),
            'installment_total': str(self.installment_total),
            'paid_total': str(self.paid_total),
            'balance_total': str(self.balance_total),
            'count': self.count,
        }

    def __eq__(self, other):
        if not isinstance(other, RevenueSummary):
            return NotImplemented
        return self.as_dict() == other.as_dict()

    def __repr__(self):
        return (
            f"RevenueSummary(count={self.count}, paid={self.paid_total}, "
            f"balance={self.balance_total})"
        )


def aggregate(records, window=ALL, now=None):
    """
    Sum the channel totals and balances of the records inside `window`.

    `now` pins "today" (datetime or date); defaults to the local date.
    """
    today = _as_local_date(now)
    summary = RevenueSummary()
    for record in records:
        if window_contains(record.created_at, window, today):
            summary.add(record)
    return summary


def aggregate_by_department(records, window=ALL, now=None):
    """{department: RevenueSummary}, one entry per known department"""
    today = _as_local_date(now)
    summaries = {department: RevenueSummary() for department, _ in DEPARTMENT_CHOICES}
    for record in records:
        if window_contains(record.created_at, window, today):
            summaries.setdefault(record.department, RevenueSummary()).add(record)
    return summaries


def month_start(day, months_back):
    """First day of the month `months_back` months before `day`"""
    year, month = day.year, day.month - months_back
    while month < 1:
        month += 12
        year -= 1
    return date(year, month, 1)


def monthly_revenue(records, months=6, now=None):
    """
    Month-over-month series for the last `months` calendar months,
    oldest first, current month included.
    """
    today = _as_local_date(now)
    months = max(1, int(months))
    buckets = []
    for offset in range(months - 1, -1, -1):
        start = month_start(today, offset)
        buckets.append((start.year, start.month, start, RevenueSummary()))

    index = {(year, month): summary for year, month, _, summary in buckets}
    for record in records:
        if record.created_at is None:
            continue
        created = get_local_date(record.created_at)
        summary = index.get((created.year, created.month))
        if summary is not None and created <= today:
            summary.add(record)

    series = []
    for year, month, start, summary in buckets:
        entry = {
            'month': f"{year:04d}-{month:02d}",
            'label': start.strftime('%b %Y'),
        }
        entry.update(summary.as_dict())
        series.append(entry)
    return series
