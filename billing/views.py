# billing/views.py
"""
JSON endpoints used by the department screens (clinic, laboratory,
optical, sales). Screens price their selections through the catalog and
save costs and payments through the ledger; they never write balance,
lock fields or installment ids themselves.
"""
import json
import logging

from django.http import JsonResponse
from django.views.decorators.http import require_GET, require_POST

from core.middleware import get_current_identity

from .catalog import CostCatalog
from .exceptions import (
    BillingError,
    ConcurrentUpdate,
    InvalidAmount,
    InvalidPatch,
    RecordLocked,
    RecordNotFound,
    UnknownCostLine,
)
from .ledger import apply_update
from .models import COST_COMPONENTS
from .store import DjangoRecordStore
from .utils import ZERO, check_max_amount

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    InvalidAmount: 400,
    InvalidPatch: 400,
    UnknownCostLine: 400,
    RecordNotFound: 404,
    RecordLocked: 409,
    ConcurrentUpdate: 409,
}


def error_status(error):
    for error_class in type(error).__mro__:
        if error_class in ERROR_STATUS:
            return ERROR_STATUS[error_class]
    # StoreWriteFailed and anything else from the store
    return 503


def error_response(error):
    return JsonResponse({
        'success': False,
        'error': error.message,
        'code': error.code,
        'details': error.details,
    }, status=error_status(error))


def _load_json(request):
    try:
        data = json.loads(request.body or b'{}')
    except (ValueError, UnicodeDecodeError):
        raise InvalidPatch("Invalid data format")
    if not isinstance(data, dict):
        raise InvalidPatch("Invalid data format")
    return data


@require_POST
def catalog_total(request):
    """Price the selected cost lines: {'lines': [...], 'department': ...}"""
    try:
        data = _load_json(request)
        lines = data.get('lines', [])
        if not isinstance(lines, list) or not all(isinstance(line, dict) for line in lines):
            raise InvalidPatch("lines must be a list of objects")

        catalog = CostCatalog.from_database(department=data.get('department'))
        priced = catalog.price_lines(lines)
        total = check_max_amount(sum((line['amount'] for line in priced), ZERO), field='total')
    except BillingError as e:
        return error_response(e)

    return JsonResponse({
        'success': True,
        'total': str(total),
        'lines': [
            {
                'catalog_id': line['catalog_id'],
                'quantity': line['quantity'],
                'multiplier': line['multiplier'],
                'amount': str(line['amount']),
                'label': line['label'],
            }
            for line in priced
        ],
    })


@require_POST
def create_record(request):
    """Open a billable record for a department"""
    store = DjangoRecordStore()
    try:
        data = _load_json(request)
        department = data.pop('department', None)
        reference = str(data.pop('reference', '') or '').strip()
        if not reference:
            raise InvalidPatch("reference is required", field='reference')
        if not isinstance(department, str) or department not in COST_COMPONENTS:
            raise InvalidPatch(f"Unknown department: {department}", field='department')

        # Screens only choose costs and notes; identity and timestamps are ours
        allowed = set(COST_COMPONENTS[department]) | {'notes'}
        unexpected = sorted(set(data) - allowed)
        if unexpected:
            raise InvalidPatch(
                f"Cannot set {', '.join(unexpected)} when creating a {department} record",
                fields=unexpected,
            )
        fields = {name: data[name] for name in data if name in allowed}
        if 'notes' in fields:
            fields['notes'] = str(fields['notes'] or '')

        record = store.create(
            department=department,
            reference=reference,
            created_by=get_current_identity(),
            **fields
        )
    except BillingError as e:
        return error_response(e)

    return JsonResponse({'success': True, 'record': record.receipt_snapshot()}, status=201)


@require_GET
def record_detail(request, record_id):
    try:
        record = DjangoRecordStore().get(record_id)
    except BillingError as e:
        return error_response(e)

    return JsonResponse({'success': True, 'record': record.receipt_snapshot()})


@require_POST
def update_record(request, record_id):
    """
    Apply a patch through the ledger.

    Body: {'patch': {...}, 'version': <version the screen loaded>}.
    A stale version is reported as a 409 so the screen reloads.
    """
    store = DjangoRecordStore()
    try:
        data = _load_json(request)
        patch = data.get('patch', {})
        record = store.get(record_id)

        version = data.get('version')
        if version is not None and str(version) != str(record.version):
            raise ConcurrentUpdate(
                "Record was changed by someone else. Reload and try again.",
                record_id=record.pk,
                expected_version=version,
            )

        updated = apply_update(record, patch, store=store, request=request)
    except BillingError as e:
        return error_response(e)
    except Exception as e:
        logger.exception(f"Unexpected error updating record #{record_id}: {e}")
        return JsonResponse({'success': False, 'error': 'Unexpected error'}, status=500)

    return JsonResponse({'success': True, 'record': updated.receipt_snapshot()})
