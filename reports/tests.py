# reports/tests.py
"""
Unit tests for the revenue report endpoints
"""
from io import StringIO
from datetime import datetime, time, timedelta
from unittest import mock

from django.core.management import call_command
from django.test import TestCase, Client
from django.urls import reverse
from django.utils import timezone

from billing.aggregation import monthly_revenue
from billing.ledger import apply_update
from billing.store import DjangoRecordStore
from core.models import SystemSetting
from core.utils import get_local_today


class RevenueReportViewTest(TestCase):
    """Test revenue summaries per window and department"""

    def setUp(self):
        self.client = Client()
        store = DjangoRecordStore()
        today = get_local_today()
        last_month = timezone.make_aware(datetime.combine(today - timedelta(days=20), time(12)))

        clinic = store.create('clinic', 'Peter Kamau', service_cost='4000')
        apply_update(clinic, {'cash_amount': 1500})

        sale = store.create('sale', 'Sale #7', service_cost='800')
        apply_update(sale, {'add_installment': {'amount': 800, 'method': 'mobile_money'}})

        old = store.create('optical', 'Grace Njeri', frame_cost='2500', lens_cost='3000', created_at=last_month)
        apply_update(old, {'insurance_amount': 5000})

    def test_today_window(self):
        response = self.client.get(reverse('reports:revenue'), {'window': 'today'})

        self.assertEqual(response.status_code, 200)
        summary = response.json()['summary']
        self.assertEqual(summary['count'], 2)
        self.assertEqual(summary['cash_total'], '1500.00')
        self.assertEqual(summary['installment_total'], '800.00')
        self.assertEqual(summary['insurance_total'], '0.00')
        self.assertEqual(summary['balance_total'], '2500.00')

    def test_default_window_from_settings(self):
        """Test the reports_default_window setting is used when no window is given"""
        SystemSetting.set_setting('reports_default_window', 'monthly')

        data = self.client.get(reverse('reports:revenue')).json()

        self.assertEqual(data['window'], 'monthly')
        self.assertEqual(data['summary']['count'], 3)
        self.assertEqual(data['summary']['paid_total'], '7300.00')
        self.assertEqual(data['departments']['optical']['insurance_total'], '5000.00')

    def test_department_filter(self):
        data = self.client.get(reverse('reports:revenue'), {'window': 'all', 'department': 'sale'}).json()

        self.assertEqual(data['summary']['count'], 1)
        self.assertEqual(list(data['departments']), ['sale'])

    def test_invalid_window(self):
        response = self.client.get(reverse('reports:revenue'), {'window': 'yearly'})

        self.assertEqual(response.status_code, 400)
        self.assertFalse(response.json()['success'])

    def test_invalid_department(self):
        response = self.client.get(reverse('reports:revenue'), {'department': 'pharmacy'})
        self.assertEqual(response.status_code, 400)


class MonthlyRevenueViewTest(TestCase):
    """Test the month-over-month series"""

    def setUp(self):
        self.client = Client()
        record = DjangoRecordStore().create('clinic', 'Ann Mwangi', service_cost='1000')
        apply_update(record, {'cash_amount': 1000})

    def test_series_length_from_settings(self):
        SystemSetting.set_setting('reports_monthly_series_length', '4')

        data = self.client.get(reverse('reports:monthly_revenue')).json()

        self.assertEqual(data['months'], 4)
        self.assertEqual(len(data['series']), 4)
        self.assertEqual(data['series'][-1]['cash_total'], '1000.00')
        self.assertEqual(data['series'][-1]['balance_total'], '0.00')

    def test_series_is_reproducible(self):
        """Test figures come from records, so two calls agree"""
        url = reverse('reports:monthly_revenue')
        self.assertEqual(self.client.get(url, {'months': 3}).json(), self.client.get(url, {'months': 3}).json())

    def test_only_series_months_are_loaded(self):
        """Test records older than the first month of the series are not fetched"""
        today = get_local_today()
        old = DjangoRecordStore().create(
            'clinic', 'Joseph Ouma', service_cost='700',
            created_at=timezone.make_aware(datetime.combine(today - timedelta(days=400), time(12))),
        )

        with mock.patch('reports.views.monthly_revenue', wraps=monthly_revenue) as series:
            response = self.client.get(reverse('reports:monthly_revenue'), {'months': 2})

        self.assertEqual(response.status_code, 200)
        loaded = list(series.call_args[0][0])
        self.assertEqual(len(loaded), 1)
        self.assertNotIn(old, loaded)
        self.assertEqual(loaded[0].reference, 'Ann Mwangi')

    def test_invalid_months(self):
        response = self.client.get(reverse('reports:monthly_revenue'), {'months': 'six'})
        self.assertEqual(response.status_code, 400)


class InitializeReportsCommandTest(TestCase):

    def test_seeds_report_settings(self):
        call_command('initialize_reports', stdout=StringIO())

        self.assertEqual(SystemSetting.get_setting('reports_default_window'), 'monthly')
        self.assertEqual(SystemSetting.get_int_setting('reports_monthly_series_length'), 6)
