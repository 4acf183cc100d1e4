# billing/admin.py
from django import forms
from django.contrib import admin, messages
from django.core.exceptions import ValidationError
from django.db import transaction
from django.http import HttpResponseRedirect
from django.utils import timezone
from django.utils.html import format_html_join

from .exceptions import BillingError
from .ledger import FROZEN_FIELDS, apply_update, merge_patch, validate_patch
from .models import ALL_COST_COMPONENTS, BillableRecord, CostLine
from .store import DjangoRecordStore
from .utils import format_amount

PLAIN_FIELDS = ('reference', 'notes')


@admin.register(CostLine)
class CostLineAdmin(admin.ModelAdmin):
    list_display = ['catalog_id', 'name', 'category', 'department', 'unit_price', 'supports_units', 'supports_pair', 'is_active']
    list_filter = ['department', 'category', 'is_active', 'supports_units', 'supports_pair']
    search_fields = ['catalog_id', 'name', 'category']
    readonly_fields = ['created_at', 'updated_at']


class BillableRecordForm(forms.ModelForm):
    """Runs the ledger's checks so a bad edit shows up as a form error"""

    class Meta:
        model = BillableRecord
        fields = ['reference', 'notes'] + list(FROZEN_FIELDS)

    def ledger_patch(self):
        return {
            name: self.cleaned_data[name]
            for name in self.changed_data
            if name in FROZEN_FIELDS and name in self.cleaned_data
        }

    def clean(self):
        cleaned_data = super().clean()
        patch = self.ledger_patch()
        if patch and self.instance.pk:
            current = BillableRecord.objects.get(pk=self.instance.pk)
            try:
                merge_patch(current, validate_patch(current, patch), 'admin', timezone.now())
            except BillingError as e:
                raise ValidationError(e.message)
        return cleaned_data


@admin.register(BillableRecord)
class BillableRecordAdmin(admin.ModelAdmin):
    form = BillableRecordForm
    list_display = ['id', 'reference', 'department', 'total_display', 'paid_display', 'balance_display', 'payment_status', 'price_locked', 'created_at']
    list_filter = ['department', 'price_locked', 'created_at']
    search_fields = ['reference', 'notes']
    date_hierarchy = 'created_at'

    readonly_fields = [
        'department', 'installments_display', 'balance', 'price_locked', 'price_locked_at',
        'price_locked_by', 'version', 'created_by', 'created_at', 'updated_at',
    ]

    fieldsets = (
        ('Record', {
            'fields': ('department', 'reference', 'notes')
        }),
        ('Costs', {
            'fields': ALL_COST_COMPONENTS
        }),
        ('Payments', {
            'fields': ('insurance_amount', 'cash_amount', 'installments_display', 'balance')
        }),
        ('Price Lock', {
            'fields': ('price_locked', 'price_locked_at', 'price_locked_by', 'version')
        }),
        ('Timestamps', {
            'fields': ('created_by', 'created_at', 'updated_at'),
            'classes': ['collapse']
        }),
    )

    def has_add_permission(self, request):
        # Records are opened by the department screens
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    def get_readonly_fields(self, request, obj=None):
        readonly = list(self.readonly_fields)
        if obj is None:
            return readonly
        if obj.price_locked:
            readonly += list(FROZEN_FIELDS)
        else:
            readonly += [name for name in ALL_COST_COMPONENTS if name not in obj.cost_component_names]
        return readonly

    def save_model(self, request, obj, form, change):
        """Write through the store and ledger instead of obj.save()"""
        store = DjangoRecordStore()
        current = store.get(obj.pk)

        plain = {name: form.cleaned_data[name] for name in form.changed_data if name in PLAIN_FIELDS}
        patch = form.ledger_patch()

        # Reference/notes and the ledger patch are saved together or not at all
        try:
            with transaction.atomic():
                if plain:
                    current = store.update(current.pk, plain, expected_version=current.version)
                if patch:
                    current = apply_update(current, patch, user=request.user, store=store, request=request)
        except BillingError as e:
            request.billing_save_error = e.message
            return

        obj.version = current.version
        obj.balance = current.balance

    def log_change(self, request, obj, message):
        if getattr(request, 'billing_save_error', None):
            return None
        return super().log_change(request, obj, message)

    def response_change(self, request, obj):
        error = getattr(request, 'billing_save_error', None)
        if error:
            messages.error(request, f"Record was not saved: {error}")
            return HttpResponseRedirect(request.path)
        return super().response_change(request, obj)

    def total_display(self, obj):
        return format_amount(obj.total_cost)
    total_display.short_description = 'Total'

    def paid_display(self, obj):
        return format_amount(obj.paid_total)
    paid_display.short_description = 'Paid'

    def balance_display(self, obj):
        return format_amount(obj.computed_balance)
    balance_display.short_description = 'Balance'

    def installments_display(self, obj):
        if not obj.installments:
            return '-'
        return format_html_join(
            '<br>', '{} - {} via {} ({})',
            (
                (entry.get('paid_at', '')[:10], format_amount(entry.get('amount')),
                 entry.get('method'), entry.get('receipt_reference') or entry.get('id'))
                for entry in obj.installments
            )
        )
    installments_display.short_description = 'Installments'
