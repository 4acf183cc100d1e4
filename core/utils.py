"""
Timezone utility functions for consistent date handling across the application.

Records store created_at in UTC, but the clinic closes its books on local
calendar days. A payment taken at 01:30 in Nairobi is still 22:30 UTC on
the previous day, so "today" and the trailing report windows are computed
from dates in settings.TIME_ZONE. Otherwise late-evening and early-morning
records would land in the wrong day's revenue.
"""
from django.utils import timezone


def get_local_today():
    """
    Get today's date in the clinic's timezone.

    Windows are anchored on this date, and receipt references use it for
    their YYYYMMDD part, so both agree with the clinic's wall calendar.

    Returns:
        date: Today's date in settings.TIME_ZONE
    """
    return timezone.localtime(timezone.now()).date()


def get_local_date(dt):
    """
    Convert a datetime to the clinic's timezone and extract the date.

    Used to decide which local day a stored timestamp belongs to before
    comparing it with a window's start and end dates.

    Args:
        dt (datetime): A timezone-aware or naive datetime. Naive values are
            taken to be in settings.TIME_ZONE.

    Returns:
        date: The date in settings.TIME_ZONE, or None when dt is None
    """
    if dt is None:
        return None

    if timezone.is_naive(dt):
        dt = timezone.make_aware(dt)

    return timezone.localtime(dt).date()
