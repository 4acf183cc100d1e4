# reports/views.py
import logging
from datetime import datetime, time, timedelta

from django.http import JsonResponse
from django.utils import timezone
from django.views import View

from billing.aggregation import (
    ALL,
    WINDOW_CHOICES,
    aggregate,
    aggregate_by_department,
    month_start,
    monthly_revenue,
    parse_window,
    window_range,
)
from billing.exceptions import BillingError, InvalidPatch
from billing.models import DEPARTMENT_CHOICES, BillableRecord
from billing.views import error_response
from core.models import SystemSetting
from core.utils import get_local_today

logger = logging.getLogger(__name__)

MAX_MONTHS = 24


class RevenueReportView(View):
    """
    Revenue totals per payment channel over a window, overall and per
    department. Every figure comes from the revenue aggregator.

    Query params:
        window: today, weekly, monthly, quarterly or all
                (default: reports_default_window setting)
        department: optional, limits the report to one department
    """

    def get(self, request, *args, **kwargs):
        try:
            window = parse_window(
                request.GET.get('window'),
                default=SystemSetting.get_setting('reports_default_window', 'monthly'),
            )
            department = self._get_department(request.GET.get('department'))
        except BillingError as e:
            return error_response(e)

        today = get_local_today()
        start_date, end_date = window_range(window, today)
        records = self._get_records(start_date, department)

        summary = aggregate(records, window, now=today)
        by_department = aggregate_by_department(records, window, now=today)
        if department:
            by_department = {department: by_department[department]}

        logger.debug(f"Revenue report ({window}, {department or 'all departments'}): {summary!r}")

        return JsonResponse({
            'success': True,
            'clinic_name': SystemSetting.get_setting('clinic_name', ''),
            'window': window,
            'window_label': dict(WINDOW_CHOICES)[window],
            'start_date': start_date.isoformat() if start_date else None,
            'end_date': end_date.isoformat() if end_date else None,
            'department': department,
            'summary': summary.as_dict(),
            'departments': {name: item.as_dict() for name, item in by_department.items()},
        })

    def _get_department(self, value):
        if not value:
            return None
        if value not in dict(DEPARTMENT_CHOICES):
            raise InvalidPatch(f"Unknown department: {value}", field='department')
        return value

    def _get_records(self, start_date, department=None):
        """
        Fetch candidate records. The date filter is only a coarse cut with a
        day of slack; the aggregator decides what is inside the window.
        """
        queryset = BillableRecord.objects.all()
        if department:
            queryset = queryset.filter(department=department)
        if start_date is not None:
            since = timezone.make_aware(datetime.combine(start_date - timedelta(days=1), time.min))
            queryset = queryset.filter(created_at__gte=since)
        return list(queryset)


class MonthlyRevenueView(View):
    """Month-over-month series derived from real records"""

    def get(self, request, *args, **kwargs):
        default_months = SystemSetting.get_int_setting('reports_monthly_series_length', 6)
        raw_months = request.GET.get('months')

        try:
            months = int(raw_months) if raw_months else default_months
        except (ValueError, TypeError):
            return error_response(InvalidPatch("months must be a whole number", field='months'))

        months = min(max(months, 1), MAX_MONTHS)
        today = get_local_today()
        since = timezone.make_aware(datetime.combine(month_start(today, months - 1), time.min))
        records = BillableRecord.objects.filter(created_at__gte=since)
        series = monthly_revenue(records, months=months, now=today)

        return JsonResponse({
            'success': True,
            'months': months,
            'window': ALL,
            'series': series,
        })
