# billing/tests.py
"""
Unit tests for the cost catalog, payment ledger, price lock and revenue aggregator
"""
import json
import os
import tempfile
from datetime import datetime, time, timedelta
from decimal import Decimal
from io import StringIO
from unittest import mock

from django.contrib.auth import get_user_model
from django.contrib.messages import get_messages
from django.core.management import CommandError, call_command
from django.test import TestCase, Client
from django.urls import reverse
from django.utils import timezone

from core.middleware import set_current_user
from core.models import AuditLog
from core.utils import get_local_today

from .aggregation import (
    aggregate,
    aggregate_by_department,
    monthly_revenue,
    parse_window,
    window_contains,
)
from .catalog import MAX_QUANTITY, CostCatalog
from .exceptions import (
    ConcurrentUpdate,
    InvalidAmount,
    InvalidPatch,
    RecordLocked,
    RecordNotFound,
    StoreWriteFailed,
    UnknownCostLine,
)
from .ledger import LOCKED, UNLOCKED, apply_update, check_patch_allowed, lock_state, should_lock
from .models import BillableRecord, CostLine
from .store import DjangoRecordStore
from .utils import MAX_AMOUNT, to_amount


def local_datetime(day, hour=12):
    """Aware datetime at `hour` o'clock local time on `day`"""
    return timezone.make_aware(datetime.combine(day, time(hour)))


CATALOG_ENTRIES = [
    {'catalog_id': 'filling', 'name': 'Filling', 'unit_price': 5000, 'supports_units': True},
    {'catalog_id': 'consultation', 'name': 'Consultation', 'unit_price': '1000.00'},
    {'catalog_id': 'mouth-guards', 'name': 'Mouth Guards', 'unit_price': 5000, 'supports_pair': True},
    {'catalog_id': 'emax', 'name': 'Porcelain Crown (EMAX)', 'unit_price': 8500, 'supports_units': True},
]


class CostCatalogTest(TestCase):
    """Test pricing of selected cost lines"""

    def setUp(self):
        self.catalog = CostCatalog.from_entries(CATALOG_ENTRIES)

    def test_quantity_multiplies_price(self):
        """Test two fillings cost twice the unit price"""
        total = self.catalog.compute_total([{'catalog_id': 'filling', 'qty': 2}])
        self.assertEqual(total, Decimal('10000.00'))

    def test_quantity_defaults_and_minimum(self):
        """Test missing or sub-1 quantities resolve to 1"""
        self.assertEqual(self.catalog.compute_total([{'catalog_id': 'filling'}]), Decimal('5000.00'))
        self.assertEqual(self.catalog.compute_total([{'catalog_id': 'filling', 'quantity': 0}]), Decimal('5000.00'))
        self.assertEqual(self.catalog.compute_total([{'catalog_id': 'filling', 'quantity': -3}]), Decimal('5000.00'))

    def test_quantity_ignored_without_unit_support(self):
        """Test quantity has no effect on lines that are not billed per unit"""
        total = self.catalog.compute_total([{'catalog_id': 'consultation', 'quantity': 4}])
        self.assertEqual(total, Decimal('1000.00'))

    def test_non_numeric_quantity_rejected(self):
        """Test a non-numeric quantity raises InvalidAmount"""
        with self.assertRaises(InvalidAmount):
            self.catalog.compute_total([{'catalog_id': 'filling', 'quantity': 'two'}])

    def test_oversized_quantity_rejected(self):
        """Test an absurd quantity raises InvalidAmount instead of a decimal error"""
        with self.assertRaises(InvalidAmount):
            self.catalog.compute_total([{'catalog_id': 'filling', 'quantity': 10 ** 30}])
        with self.assertRaises(InvalidAmount):
            self.catalog.compute_total([{'catalog_id': 'filling', 'quantity': MAX_QUANTITY + 1}])

    def test_line_amount_cannot_exceed_max_amount(self):
        """Test a line whose price times quantity no longer fits an amount column"""
        catalog = CostCatalog.from_entries([
            {'catalog_id': 'implant', 'unit_price': '9999999999.99', 'supports_units': True},
        ])

        self.assertEqual(catalog.compute_total([{'catalog_id': 'implant'}]), MAX_AMOUNT)
        with self.assertRaises(InvalidAmount):
            catalog.compute_total([{'catalog_id': 'implant', 'quantity': 2}])
        with self.assertRaises(InvalidAmount):
            catalog.compute_total([{'catalog_id': 'implant'}, {'catalog_id': 'implant'}])

    def test_pair_mode_doubles_price(self):
        """Test pair mode only doubles lines that support it"""
        self.assertEqual(
            self.catalog.compute_total([{'catalog_id': 'mouth-guards', 'pairing': 'pair'}]),
            Decimal('10000.00')
        )
        self.assertEqual(
            self.catalog.compute_total([{'catalog_id': 'consultation', 'pairing': 'pair'}]),
            Decimal('1000.00')
        )

    def test_multiple_lines_accumulate(self):
        """Test the total is the sum over all selected lines"""
        total = self.catalog.compute_total([
            {'catalog_id': 'emax', 'quantity': 3},
            {'catalog_id': 'consultation'},
            {'catalog_id': 'mouth-guards', 'pairing': 'single'},
        ])
        self.assertEqual(total, Decimal('31500.00'))

    def test_empty_selection_is_zero(self):
        """Test nothing selected costs nothing"""
        self.assertEqual(self.catalog.compute_total([]), Decimal('0.00'))

    def test_unknown_line_rejected(self):
        """Test an unknown catalog id raises UnknownCostLine"""
        with self.assertRaises(UnknownCostLine):
            self.catalog.compute_total([{'catalog_id': 'gold-crown'}])

    def test_description_does_not_change_amount(self):
        """Test tooth positions end up in the label but not the total"""
        selection = [{'catalog_id': 'emax', 'quantity': 2, 'description': ['11', '21']}]
        self.assertEqual(self.catalog.compute_total(selection), Decimal('17000.00'))
        self.assertEqual(self.catalog.describe(selection), ['Porcelain Crown (EMAX) x2 [11, 21]'])

    def test_from_database_skips_inactive_lines(self):
        """Test inactive cost lines are not part of the catalog"""
        CostLine.objects.create(catalog_id='filling', name='Filling', unit_price=Decimal('5000'), supports_units=True)
        CostLine.objects.create(catalog_id='old-line', name='Old', unit_price=Decimal('100'), is_active=False)

        catalog = CostCatalog.from_database()

        self.assertIn('filling', catalog)
        self.assertNotIn('old-line', catalog)
        with self.assertRaises(UnknownCostLine):
            catalog.get('old-line')


class RecordStoreTest(TestCase):
    """Test the Django record store"""

    def setUp(self):
        self.store = DjangoRecordStore()

    def test_create_starts_unlocked_with_zero_payments(self):
        """Test new records have no payments and no lock"""
        record = self.store.create('clinic', 'Jane Wanjiku', created_by='reception', service_cost='5000')

        self.assertFalse(record.price_locked)
        self.assertEqual(record.insurance_amount, Decimal('0'))
        self.assertEqual(record.cash_amount, Decimal('0'))
        self.assertEqual(record.installments, [])
        self.assertEqual(record.balance, Decimal('5000.00'))
        self.assertEqual(record.version, 1)

    def test_create_rejects_component_outside_department(self):
        """Test an optical cost cannot be set on a sale"""
        with self.assertRaises(InvalidPatch):
            self.store.create('sale', 'Sale #12', frame_cost='2000')

    def test_create_rejects_unknown_department(self):
        with self.assertRaises(InvalidPatch):
            self.store.create('pharmacy', 'Item')

    def test_get_missing_record(self):
        """Test unknown ids raise RecordNotFound"""
        with self.assertRaises(RecordNotFound):
            self.store.get(999)

    def test_update_bumps_version(self):
        """Test a successful write increments the version"""
        record = self.store.create('sale', 'Sale #1', service_cost='100')
        updated = self.store.update(record.pk, {'notes': 'paid later'}, expected_version=1)

        self.assertEqual(updated.version, 2)
        self.assertEqual(updated.notes, 'paid later')

    def test_update_with_stale_version(self):
        """Test a stale version is reported as ConcurrentUpdate"""
        record = self.store.create('sale', 'Sale #1', service_cost='100')
        self.store.update(record.pk, {'notes': 'first'}, expected_version=1)

        with self.assertRaises(ConcurrentUpdate):
            self.store.update(record.pk, {'notes': 'second'}, expected_version=1)

        self.assertEqual(self.store.get(record.pk).notes, 'first')

    def test_update_never_rewrites_id(self):
        record = self.store.create('sale', 'Sale #1')
        with self.assertRaises(InvalidPatch):
            self.store.update(record.pk, {'id': 42}, expected_version=1)


class PaymentLedgerTest(TestCase):
    """Test apply_update and the price lock"""

    def setUp(self):
        self.store = DjangoRecordStore()
        self.record = self.store.create('clinic', 'Jane Wanjiku', service_cost='5000')

    def lock_with_cash(self):
        return apply_update(self.record.pk, {'cash_amount': 2000}, user='cashier')

    def test_first_payment_locks_price(self):
        """Test a cash payment sets the balance and locks the price"""
        record = self.lock_with_cash()

        self.assertEqual(record.balance, Decimal('3000.00'))
        self.assertTrue(record.price_locked)
        self.assertIsNotNone(record.price_locked_at)
        self.assertEqual(record.price_locked_by, 'cashier')
        self.assertEqual(lock_state(record), LOCKED)

    def test_locked_cost_cannot_change(self):
        """Test cost changes on a locked record are rejected"""
        self.lock_with_cash()

        with self.assertRaises(RecordLocked):
            apply_update(self.record.pk, {'service_cost': 9000})

        record = self.store.get(self.record.pk)
        self.assertEqual(record.service_cost, Decimal('5000.00'))
        self.assertEqual(record.balance, Decimal('3000.00'))

    def test_locked_payment_fields_cannot_change(self):
        """Test insurance and cash amounts are frozen by the lock"""
        self.lock_with_cash()

        with self.assertRaises(RecordLocked):
            apply_update(self.record.pk, {'cash_amount': 0})
        with self.assertRaises(RecordLocked):
            apply_update(self.record.pk, {'insurance_amount': 500})

    def test_installment_accepted_after_lock(self):
        """Test installments can still be added to a locked record"""
        self.lock_with_cash()

        record = apply_update(self.record.pk, {'add_installment': {'amount': 1000, 'method': 'cash'}})

        self.assertEqual(record.balance, Decimal('2000.00'))
        self.assertEqual(len(record.installments), 1)
        entry = record.installments[0]
        self.assertTrue(entry['id'].startswith('INS-'))
        self.assertEqual(entry['amount'], '1000.00')
        self.assertEqual(entry['method'], 'cash')
        self.assertTrue(entry['receipt_reference'].startswith('RCP-'))
        self.assertTrue(entry['paid_at'])

    def test_negative_installment_rejected(self):
        """Test negative installments raise InvalidAmount and change nothing"""
        with self.assertRaises(InvalidAmount):
            apply_update(self.record.pk, {'add_installment': {'amount': -50, 'method': 'cash'}})

        record = self.store.get(self.record.pk)
        self.assertEqual(record.installments, [])
        self.assertFalse(record.price_locked)
        self.assertEqual(record.version, 1)

    def test_zero_installment_rejected(self):
        with self.assertRaises(InvalidAmount):
            apply_update(self.record.pk, {'add_installment': {'amount': 0, 'method': 'cash'}})

    def test_non_finite_amount_rejected(self):
        """Test NaN and infinity are not accepted as amounts"""
        with self.assertRaises(InvalidAmount):
            apply_update(self.record.pk, {'insurance_amount': 'NaN'})
        with self.assertRaises(InvalidAmount):
            apply_update(self.record.pk, {'service_cost': 'Infinity'})

    def test_oversized_amount_rejected(self):
        """Test amounts beyond the storable range raise InvalidAmount and change nothing"""
        with self.assertRaises(InvalidAmount):
            to_amount('1e30')
        with self.assertRaises(InvalidAmount):
            apply_update(self.record.pk, {'service_cost': '1e30'})
        with self.assertRaises(InvalidAmount):
            apply_update(self.record.pk, {'service_cost': MAX_AMOUNT, 'lab_cost': 1})

        record = self.store.get(self.record.pk)
        self.assertEqual(record.service_cost, Decimal('5000.00'))
        self.assertEqual(record.version, 1)

    def test_unknown_method_rejected(self):
        """Test payment methods outside the list raise InvalidPatch"""
        with self.assertRaises(InvalidPatch):
            apply_update(self.record.pk, {'add_installment': {'amount': 100, 'method': 'cheque'}})

    def test_method_is_normalized(self):
        record = apply_update(self.record.pk, {'add_installment': {'amount': 100, 'method': 'Mobile-Money'}})
        self.assertEqual(record.installments[0]['method'], 'mobile_money')

    def test_unknown_patch_key_rejected(self):
        """Test the ledger refuses keys it does not know, such as balance"""
        with self.assertRaises(InvalidPatch):
            apply_update(self.record.pk, {'balance': 0})
        with self.assertRaises(InvalidPatch):
            apply_update(self.record.pk, {'price_locked': False})

    def test_component_outside_department_rejected(self):
        """Test a clinic record cannot carry a lens cost"""
        with self.assertRaises(InvalidPatch):
            apply_update(self.record.pk, {'lens_cost': 1000})

    def test_overpayment_rejected(self):
        """Test payments above the total cost are refused"""
        with self.assertRaises(InvalidAmount):
            apply_update(self.record.pk, {'cash_amount': 6000})

        self.assertFalse(self.store.get(self.record.pk).price_locked)

    def test_cost_change_before_lock(self):
        """Test costs can be edited freely until the first payment"""
        record = apply_update(self.record.pk, {'service_cost': 7000, 'lab_cost': 1500})

        self.assertEqual(record.balance, Decimal('8500.00'))
        self.assertFalse(record.price_locked)
        self.assertEqual(lock_state(record), UNLOCKED)

    def test_cost_and_payment_in_one_update(self):
        """Test a screen can save its total and the first payment together"""
        record = apply_update(self.record.pk, {'service_cost': 8000, 'insurance_amount': 6000})

        self.assertEqual(record.service_cost, Decimal('8000.00'))
        self.assertEqual(record.balance, Decimal('2000.00'))
        self.assertTrue(record.price_locked)

    def test_lock_never_reverses(self):
        """Test no sequence of updates unlocks the record"""
        self.lock_with_cash()
        apply_update(self.record.pk, {'add_installment': {'amount': 500, 'method': 'card'}})
        locked_at = self.store.get(self.record.pk).price_locked_at

        record = apply_update(self.record.pk, {'add_installment': {'amount': 500, 'method': 'card'}})

        self.assertTrue(record.price_locked)
        self.assertEqual(record.price_locked_at, locked_at)
        self.assertEqual(record.price_locked_by, 'cashier')

    def test_installments_append_only_after_lock(self):
        """Test installments cannot be removed once the price is locked"""
        record = apply_update(self.record.pk, {'add_installment': {'amount': 1000, 'method': 'cash'}})
        installment_id = record.installments[0]['id']

        with self.assertRaises(RecordLocked):
            apply_update(self.record.pk, {'remove_installment': installment_id})

        record = apply_update(self.record.pk, {'add_installment': {'amount': 500, 'method': 'card'}})
        self.assertEqual([entry['id'] for entry in record.installments][0], installment_id)
        self.assertEqual(len(record.installments), 2)

    def test_remove_installment_on_unlocked_record(self):
        """Test removal by id before any lock exists"""
        check_patch_allowed(self.record, {'remove_installment': 'INS-X'})

        with self.assertRaises(InvalidPatch):
            apply_update(self.record.pk, {'remove_installment': 'INS-MISSING'})

    def test_balance_matches_cost_minus_payments(self):
        """Test balance always equals total cost minus everything paid"""
        apply_update(self.record.pk, {'lab_cost': 3000, 'insurance_amount': 2500})
        apply_update(self.record.pk, {'add_installment': {'amount': 1250, 'method': 'bank_transfer'}})
        record = apply_update(self.record.pk, {'add_installment': {'amount': '750.50', 'method': 'cash'}})

        paid = record.insurance_amount + record.cash_amount + sum(
            Decimal(entry['amount']) for entry in record.installments
        )
        self.assertEqual(record.balance, record.total_cost - paid)
        self.assertEqual(record.balance, Decimal('3499.50'))

    def test_caller_record_not_mutated(self):
        """Test the record passed in keeps the values it was loaded with"""
        record = self.store.get(self.record.pk)

        updated = apply_update(record, {'cash_amount': 1000})

        self.assertEqual(record.cash_amount, Decimal('0.00'))
        self.assertFalse(record.price_locked)
        self.assertEqual(record.version, 1)
        self.assertEqual(updated.version, 2)

    def test_concurrent_first_payments(self):
        """Test two sessions that both saw an unlocked record cannot both write"""
        first_view = self.store.get(self.record.pk)
        second_view = self.store.get(self.record.pk)

        apply_update(first_view, {'cash_amount': 1000}, user='front-desk')

        with self.assertRaises(ConcurrentUpdate):
            apply_update(second_view, {'cash_amount': 3000}, user='optical-desk')

        record = self.store.get(self.record.pk)
        self.assertEqual(record.cash_amount, Decimal('1000.00'))
        self.assertEqual(record.price_locked_by, 'front-desk')
        self.assertEqual(AuditLog.objects.filter(action='price_lock').count(), 1)

    def test_store_failure_applies_nothing(self):
        """Test nothing is returned or written when the store fails"""
        class FailingStore(DjangoRecordStore):
            def update(self, record_id, fields, expected_version):
                raise StoreWriteFailed("disk full")

        record = self.store.get(self.record.pk)
        with self.assertRaises(StoreWriteFailed):
            apply_update(record, {'cash_amount': 1000}, store=FailingStore())

        self.assertFalse(self.store.get(self.record.pk).price_locked)
        self.assertFalse(AuditLog.objects.exists())

    def test_missing_record(self):
        with self.assertRaises(RecordNotFound):
            apply_update(12345, {'cash_amount': 10})

    def test_identity_from_request_user(self):
        """Test the middleware user is stamped on the lock when no user is passed"""
        user = get_user_model().objects.create_user(username='reception', password='pass12345')
        set_current_user(user)
        try:
            record = apply_update(self.record.pk, {'insurance_amount': 1000})
        finally:
            set_current_user(None)

        self.assertEqual(record.price_locked_by, 'reception')
        self.assertEqual(AuditLog.objects.get(action='price_lock').user, user)

    def test_identity_defaults_to_system(self):
        record = apply_update(self.record.pk, {'cash_amount': 100})
        self.assertEqual(record.price_locked_by, 'system')

    def test_audit_trail(self):
        """Test lock and installment events are written to the audit log"""
        apply_update(self.record.pk, {'add_installment': {'amount': 400, 'method': 'card'}}, user='cashier')

        actions = set(AuditLog.objects.values_list('action', flat=True))
        self.assertEqual(actions, {'installment_add', 'price_lock'})
        self.assertTrue(all(entry.actor == 'cashier' for entry in AuditLog.objects.all()))

    def test_should_lock(self):
        self.assertTrue(should_lock(False, Decimal('0'), Decimal('1'), []))
        self.assertTrue(should_lock(False, Decimal('0'), Decimal('0'), [{'id': 'INS-1'}]))
        self.assertFalse(should_lock(False, Decimal('0'), Decimal('0'), []))
        self.assertFalse(should_lock(True, Decimal('10'), Decimal('0'), []))

    def test_receipt_snapshot(self):
        """Test the receipt snapshot carries computed figures"""
        self.lock_with_cash()
        record = apply_update(self.record.pk, {'add_installment': {'amount': 1000, 'method': 'cash'}})

        snapshot = record.receipt_snapshot()

        self.assertEqual(snapshot['total_cost'], '5000.00')
        self.assertEqual(snapshot['cash_amount'], '2000.00')
        self.assertEqual(snapshot['installments_total'], '1000.00')
        self.assertEqual(snapshot['paid_total'], '3000.00')
        self.assertEqual(snapshot['balance'], '2000.00')
        self.assertEqual(snapshot['payment_status'], 'partially_paid')
        self.assertTrue(snapshot['price_locked'])


class RevenueAggregatorTest(TestCase):
    """Test revenue totals over windows"""

    def setUp(self):
        self.store = DjangoRecordStore()
        self.today = get_local_today()
        yesterday = local_datetime(self.today - timedelta(days=1))

        for number in range(3):
            record = self.store.create('clinic', f'Old #{number}', service_cost='1000', created_at=yesterday)
            apply_update(record, {'cash_amount': 100})

        self.todays = self.store.create('optical', 'New', frame_cost='3000', lens_cost='2000',
                                        created_at=local_datetime(self.today))
        apply_update(self.todays, {'insurance_amount': 2500})
        apply_update(self.todays.pk, {'add_installment': {'amount': 500, 'method': 'mobile_money'}})

    def records(self):
        return list(BillableRecord.objects.all())

    def test_today_only_counts_todays_records(self):
        """Test only the record created today contributes"""
        summary = aggregate(self.records(), 'today', now=self.today)

        self.assertEqual(summary.count, 1)
        self.assertEqual(summary.insurance_total, Decimal('2500.00'))
        self.assertEqual(summary.cash_total, Decimal('0.00'))
        self.assertEqual(summary.installment_total, Decimal('500.00'))
        self.assertEqual(summary.paid_total, Decimal('3000.00'))
        self.assertEqual(summary.balance_total, Decimal('2000.00'))

    def test_weekly_includes_yesterday(self):
        summary = aggregate(self.records(), 'weekly', now=self.today)

        self.assertEqual(summary.count, 4)
        self.assertEqual(summary.cash_total, Decimal('300.00'))
        self.assertEqual(summary.balance_total, Decimal('4700.00'))

    def test_aggregation_is_idempotent(self):
        """Test repeated runs give identical totals and touch nothing"""
        records = self.records()
        versions = [record.version for record in records]

        first = aggregate(records, 'monthly', now=self.today)
        second = aggregate(records, 'monthly', now=self.today)

        self.assertEqual(first, second)
        self.assertEqual([record.version for record in records], versions)

    def test_balance_recomputed_not_trusted(self):
        """Test a stale persisted balance does not leak into the totals"""
        BillableRecord.objects.filter(pk=self.todays.pk).update(balance=Decimal('99999'))

        summary = aggregate(self.records(), 'today', now=self.today)

        self.assertEqual(summary.balance_total, Decimal('2000.00'))

    def test_window_boundaries(self):
        """Test trailing windows include both ends"""
        at = lambda days: local_datetime(self.today - timedelta(days=days))

        self.assertTrue(window_contains(at(7), 'weekly', self.today))
        self.assertFalse(window_contains(at(8), 'weekly', self.today))
        self.assertTrue(window_contains(at(30), 'monthly', self.today))
        self.assertFalse(window_contains(at(31), 'monthly', self.today))
        self.assertTrue(window_contains(at(90), 'quarterly', self.today))
        self.assertFalse(window_contains(at(91), 'quarterly', self.today))
        self.assertTrue(window_contains(at(4000), 'all', self.today))

    def test_parse_window(self):
        self.assertEqual(parse_window('Weekly'), 'weekly')
        self.assertEqual(parse_window(None), 'monthly')
        with self.assertRaises(InvalidPatch):
            parse_window('yearly')

    def test_department_split_adds_up(self):
        """Test department summaries add up to the overall summary"""
        records = self.records()
        overall = aggregate(records, 'all', now=self.today)
        by_department = aggregate_by_department(records, 'all', now=self.today)

        self.assertEqual(by_department['clinic'].count, 3)
        self.assertEqual(by_department['optical'].count, 1)
        self.assertEqual(by_department['sale'].count, 0)
        self.assertEqual(
            sum((item.paid_total for item in by_department.values()), Decimal('0')),
            overall.paid_total
        )

    def test_monthly_series(self):
        """Test the month-over-month series comes from real records"""
        series = monthly_revenue(self.records(), months=3, now=self.today)

        self.assertEqual(len(series), 3)
        self.assertEqual(series[-1]['month'], self.today.strftime('%Y-%m'))
        self.assertEqual(sum(entry['count'] for entry in series), 4)
        self.assertEqual(series[0]['count'], 0)


class LoadCostCatalogCommandTest(TestCase):
    """Test the load_cost_catalog management command"""

    def test_loads_default_catalog(self):
        out = StringIO()
        call_command('load_cost_catalog', stdout=out)

        filling = CostLine.objects.get(catalog_id='filling')
        self.assertEqual(filling.unit_price, Decimal('5000.00'))
        self.assertTrue(filling.supports_units)
        self.assertTrue(CostLine.objects.get(catalog_id='complete-denture').supports_pair)
        self.assertTrue(AuditLog.objects.filter(action='catalog_load').exists())
        self.assertIn('Cost catalog loaded', out.getvalue())

    def test_reload_is_idempotent(self):
        call_command('load_cost_catalog', stdout=StringIO())
        count = CostLine.objects.count()

        call_command('load_cost_catalog', stdout=StringIO())

        self.assertEqual(CostLine.objects.count(), count)

    def write_catalog(self, entries):
        handle = tempfile.NamedTemporaryFile('w', suffix='.json', delete=False, encoding='utf-8')
        with handle:
            json.dump(entries, handle)
        self.addCleanup(os.remove, handle.name)
        return handle.name

    def test_non_object_entry_rejected(self):
        """Test a list item that is not an object fails with CommandError"""
        path = self.write_catalog([
            {'catalog_id': 'filling', 'unit_price': 5000},
            'consultation',
        ])

        with self.assertRaisesMessage(CommandError, 'must be an object'):
            call_command('load_cost_catalog', path, stdout=StringIO())
        self.assertFalse(CostLine.objects.exists())

    def test_duplicate_catalog_id_rejected(self):
        """Test a catalog id listed twice fails instead of the last price winning"""
        path = self.write_catalog([
            {'catalog_id': 'filling', 'unit_price': 5000},
            {'catalog_id': 'filling', 'unit_price': 4500},
        ])

        with self.assertRaisesMessage(CommandError, "Duplicate catalog_id 'filling'"):
            call_command('load_cost_catalog', path, stdout=StringIO())
        self.assertFalse(CostLine.objects.exists())


class BillingViewsTest(TestCase):
    """Test the JSON endpoints used by department screens"""

    def setUp(self):
        self.client = Client()
        CostLine.objects.create(catalog_id='filling', name='Filling', unit_price=Decimal('5000'),
                                department='clinic', supports_units=True)

    def post_json(self, url, data):
        return self.client.post(url, data=json.dumps(data), content_type='application/json')

    def create_record(self):
        response = self.post_json(reverse('billing:create_record'), {
            'department': 'clinic',
            'reference': 'John Otieno',
            'service_cost': '5000',
        })
        self.assertEqual(response.status_code, 201)
        return response.json()['record']

    def test_catalog_total(self):
        response = self.post_json(reverse('billing:catalog_total'), {
            'department': 'clinic',
            'lines': [{'catalog_id': 'filling', 'qty': 2, 'description': '36, 46'}],
        })

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data['total'], '10000.00')
        self.assertEqual(data['lines'][0]['label'], 'Filling x2 [36, 46]')

    def test_catalog_total_unknown_line(self):
        response = self.post_json(reverse('billing:catalog_total'), {'lines': [{'catalog_id': 'nope'}]})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['code'], 'unknown_cost_line')

    def test_create_and_fetch_record(self):
        record = self.create_record()

        response = self.client.get(reverse('billing:record_detail', args=[record['id']]))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['record']['balance'], '5000.00')
        self.assertEqual(response.json()['record']['price_locked'], False)

    def test_update_locks_and_rejects_cost_change(self):
        """Test the lock flow over HTTP"""
        record = self.create_record()
        url = reverse('billing:update_record', args=[record['id']])

        response = self.post_json(url, {'patch': {'cash_amount': 2000}, 'version': record['version']})
        self.assertEqual(response.status_code, 200)
        locked = response.json()['record']
        self.assertTrue(locked['price_locked'])
        self.assertEqual(locked['balance'], '3000.00')

        response = self.post_json(url, {'patch': {'service_cost': 9000}})
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()['code'], 'record_locked')

    def test_stale_version_conflict(self):
        record = self.create_record()
        url = reverse('billing:update_record', args=[record['id']])
        self.post_json(url, {'patch': {'service_cost': 6000}, 'version': record['version']})
        response = self.post_json(url, {'patch': {'service_cost': 7000}, 'version': record['version']})

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()['code'], 'concurrent_update')

    def test_invalid_amount_is_bad_request(self):
        record = self.create_record()
        response = self.post_json(
            reverse('billing:update_record', args=[record['id']]),
            {'patch': {'add_installment': {'amount': -50, 'method': 'cash'}}}
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['code'], 'invalid_amount')

    def test_oversized_amount_is_bad_request(self):
        """Test an amount too large to store is a 400, not a server error"""
        record = self.create_record()
        response = self.post_json(
            reverse('billing:update_record', args=[record['id']]),
            {'patch': {'cash_amount': '1e30'}}
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['code'], 'invalid_amount')
        self.assertEqual(BillableRecord.objects.get(pk=record['id']).version, record['version'])

    def test_catalog_total_oversized_quantity(self):
        response = self.post_json(reverse('billing:catalog_total'), {
            'lines': [{'catalog_id': 'filling', 'qty': 10 ** 30}],
        })

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['code'], 'invalid_amount')

    def test_create_rejects_fields_screens_cannot_set(self):
        """Test created_by and other non-cost keys are refused when opening a record"""
        for extra in ({'created_by': 'someone-else'}, {'created_at': '2020-01-01T00:00:00Z'},
                      {'balance': '0'}, {'frame_cost': '100'}):
            data = {'department': 'clinic', 'reference': 'John Otieno', 'service_cost': '5000'}
            data.update(extra)

            response = self.post_json(reverse('billing:create_record'), data)

            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.json()['code'], 'invalid_patch')
        self.assertFalse(BillableRecord.objects.exists())

    def test_create_unknown_department(self):
        response = self.post_json(reverse('billing:create_record'), {
            'department': ['clinic'],
            'reference': 'John Otieno',
        })

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['code'], 'invalid_patch')

    def test_create_keeps_notes(self):
        response = self.post_json(reverse('billing:create_record'), {
            'department': 'optical',
            'reference': 'Grace Njeri',
            'frame_cost': '2500',
            'notes': 'Progressive lenses',
        })

        self.assertEqual(response.status_code, 201)
        record = BillableRecord.objects.get(pk=response.json()['record']['id'])
        self.assertEqual(record.notes, 'Progressive lenses')
        self.assertEqual(record.created_by, 'system')

    def test_missing_record_is_not_found(self):
        response = self.client.get(reverse('billing:record_detail', args=[404]))
        self.assertEqual(response.status_code, 404)

    def test_malformed_json(self):
        response = self.client.post(reverse('billing:create_record'), data='{not json',
                                    content_type='application/json')
        self.assertEqual(response.status_code, 400)


class BillableRecordAdminTest(TestCase):
    """Test the admin goes through the ledger"""

    def setUp(self):
        self.admin = get_user_model().objects.create_superuser('admin', 'admin@example.com', 'pass12345')
        self.client = Client()
        self.client.force_login(self.admin)
        self.record = DjangoRecordStore().create('clinic', 'Mary Achieng', service_cost='5000')

    def change_url(self):
        return reverse('admin:billing_billablerecord_change', args=[self.record.pk])

    def test_cost_edit_recomputes_balance(self):
        response = self.client.post(self.change_url(), {
            'reference': 'Mary Achieng',
            'notes': '',
            'service_cost': '6000.00',
            'lab_cost': '0.00',
            'insurance_amount': '0.00',
            'cash_amount': '0.00',
            '_save': 'Save',
        })

        self.assertEqual(response.status_code, 302)
        record = BillableRecord.objects.get(pk=self.record.pk)
        self.assertEqual(record.balance, Decimal('6000.00'))
        self.assertEqual(record.version, 2)

    def test_locked_fields_are_read_only(self):
        apply_update(self.record.pk, {'cash_amount': 1000})

        response = self.client.get(self.change_url())

        self.assertEqual(response.status_code, 200)
        self.assertNotIn('service_cost', response.context['adminform'].form.fields)
        self.assertNotIn('cash_amount', response.context['adminform'].form.fields)

    def test_failed_ledger_step_saves_nothing(self):
        """Test a store failure rolls back the reference edit and reports no success"""
        with mock.patch('billing.admin.apply_update', side_effect=StoreWriteFailed('Could not save record')):
            response = self.client.post(self.change_url(), {
                'reference': 'Mary A. Achieng',
                'notes': 'Changed together with the cost',
                'service_cost': '6000.00',
                'lab_cost': '0.00',
                'insurance_amount': '0.00',
                'cash_amount': '0.00',
                '_save': 'Save',
            }, follow=True)

        record = BillableRecord.objects.get(pk=self.record.pk)
        self.assertEqual(record.reference, 'Mary Achieng')
        self.assertEqual(record.notes, '')
        self.assertEqual(record.service_cost, Decimal('5000.00'))
        self.assertEqual(record.version, 1)

        notices = [str(message) for message in get_messages(response.wsgi_request)]
        self.assertTrue(any('Record was not saved' in notice for notice in notices))
        self.assertFalse(any('changed successfully' in notice for notice in notices))
        self.assertEqual(response.redirect_chain[-1][0], self.change_url())
