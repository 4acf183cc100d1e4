# billing/models.py
from decimal import Decimal

from django.core.validators import MinValueValidator
from django.db import models
from django.utils import timezone

from .utils import ZERO, stored_amount


CLINIC = 'clinic'
LABORATORY = 'laboratory'
OPTICAL = 'optical'
SALE = 'sale'

DEPARTMENT_CHOICES = [
    (CLINIC, 'Clinic'),
    (LABORATORY, 'Laboratory'),
    (OPTICAL, 'Optical'),
    (SALE, 'Sales'),
]

# Which cost components each department may set. Everything else stays zero.
COST_COMPONENTS = {
    CLINIC: ('service_cost', 'lab_cost'),
    LABORATORY: ('lab_cost', 'service_cost'),
    OPTICAL: ('frame_cost', 'lens_cost'),
    SALE: ('service_cost',),
}

ALL_COST_COMPONENTS = ('service_cost', 'lab_cost', 'frame_cost', 'lens_cost')

PAYMENT_FIELDS = ('insurance_amount', 'cash_amount')

INSTALLMENT_METHOD_CHOICES = [
    ('cash', 'Cash'),
    ('mobile_money', 'Mobile Money'),
    ('card', 'Card'),
    ('insurance', 'Insurance'),
    ('bank_transfer', 'Bank Transfer'),
]

INSTALLMENT_METHODS = tuple(value for value, _ in INSTALLMENT_METHOD_CHOICES)

money_validators = [MinValueValidator(Decimal('0.00'))]


def money_field(help_text=''):
    return models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal('0.00'),
        validators=money_validators,
        help_text=help_text,
    )


class CostLine(models.Model):
    """
    Catalog entry a department can bill for (procedure, frame, lens, item)
    Reference data: loaded per deployment, never edited by the billing core
    """
    catalog_id = models.SlugField(max_length=100, unique=True)
    name = models.CharField(max_length=200)
    category = models.CharField(max_length=100, blank=True)
    department = models.CharField(max_length=20, choices=DEPARTMENT_CHOICES, blank=True)
    unit_price = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        validators=money_validators,
        help_text="Price of a single unit"
    )
    supports_units = models.BooleanField(
        default=False,
        help_text="Quantity multiplies the price (e.g. crowns per tooth)"
    )
    supports_pair = models.BooleanField(
        default=False,
        help_text="Can be billed as a pair (doubles the price)"
    )
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['category', 'name']
        indexes = [
            models.Index(fields=['department'], name='costline_department_idx'),
        ]

    def __str__(self):
        return f"{self.name} - {self.unit_price:,.2f}"


class BillableRecord(models.Model):
    """
    One treatment episode, lab order, optical order or sale.

    Cost components and the insurance/cash amounts freeze the first time
    any payment is recorded; after that only new installments are accepted.
    All writes go through billing.ledger.apply_update.
    """
    department = models.CharField(max_length=20, choices=DEPARTMENT_CHOICES)
    reference = models.CharField(max_length=200, help_text="Patient name, order or sale number")
    notes = models.TextField(blank=True)

    # Cost components
    service_cost = money_field("Clinical service / sale items total")
    lab_cost = money_field("Laboratory work total")
    frame_cost = money_field("Optical frame price")
    lens_cost = money_field("Optical lens price")

    # Payment channels
    insurance_amount = money_field("Amount covered by insurance")
    cash_amount = money_field("Single cash payment")
    installments = models.JSONField(
        default=list,
        blank=True,
        help_text="Ordered installment entries (append-only once locked)"
    )

    # Derived, persisted for query convenience
    balance = money_field("Total cost minus everything paid")

    # Price lock
    price_locked = models.BooleanField(
        default=False,
        help_text="Cost is frozen after the first payment"
    )
    price_locked_at = models.DateTimeField(null=True, blank=True)
    price_locked_by = models.CharField(max_length=150, blank=True)

    # Concurrency token, bumped on every write
    version = models.PositiveIntegerField(default=1)

    created_by = models.CharField(max_length=150, blank=True)
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['department', 'created_at'], name='record_dept_created_idx'),
            models.Index(fields=['created_at'], name='record_created_idx'),
            models.Index(fields=['price_locked'], name='record_locked_idx'),
        ]

    def __str__(self):
        return f"{self.get_department_display()} #{self.pk} - {self.reference}"

    @property
    def cost_component_names(self):
        return COST_COMPONENTS.get(self.department, ())

    @property
    def cost_components(self):
        """{component_name: amount} for this record's department"""
        return {name: stored_amount(getattr(self, name)) for name in self.cost_component_names}

    @property
    def total_cost(self):
        return sum(self.cost_components.values(), ZERO)

    @property
    def installments_total(self):
        return sum((stored_amount(entry.get('amount')) for entry in self.installments or []), ZERO)

    @property
    def paid_total(self):
        """Everything paid across the three channels"""
        return (
            stored_amount(self.insurance_amount)
            + stored_amount(self.cash_amount)
            + self.installments_total
        )

    @property
    def computed_balance(self):
        """Balance from current field values (the persisted one can lag)"""
        return self.total_cost - self.paid_total

    @property
    def payment_status(self):
        if self.paid_total == 0:
            return 'pending'
        if self.computed_balance <= 0:
            return 'completed'
        return 'partially_paid'

    @property
    def lock_state(self):
        return 'LOCKED' if self.price_locked else 'UNLOCKED'

    def installment_ids(self):
        return [entry.get('id') for entry in self.installments or []]

    def receipt_snapshot(self):
        """
        Already-computed figures for receipts and invoices.
        Renderers read this; they never touch cost or payment fields.
        """
        return {
            'id': self.pk,
            'department': self.department,
            'reference': self.reference,
            'cost_components': {name: str(amount) for name, amount in self.cost_components.items()},
            'total_cost': str(self.total_cost),
            'insurance_amount': str(stored_amount(self.insurance_amount)),
            'cash_amount': str(stored_amount(self.cash_amount)),
            'installments_total': str(self.installments_total),
            'installments': [dict(entry) for entry in self.installments or []],
            'paid_total': str(self.paid_total),
            'balance': str(self.computed_balance),
            'payment_status': self.payment_status,
            'price_locked': self.price_locked,
            'price_locked_at': self.price_locked_at.isoformat() if self.price_locked_at else None,
            'price_locked_by': self.price_locked_by,
            'version': self.version,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
