# billing/ledger.py
"""
Payment ledger and price-lock guard.

Every department (clinic, laboratory, optical, sale) goes through
apply_update to change costs or record payments; departments only differ
in which cost components they may set (see models.COST_COMPONENTS).

The first payment on a record (insurance, cash or an installment) freezes
its cost components and the insurance/cash amounts. After that only new
installments are accepted. The lock never reverses.
"""
import logging
import uuid

from django.db import DatabaseError, transaction
from django.utils import timezone

from core.middleware import get_current_identity, get_current_user
from core.models import AuditLog
from core.utils import get_local_today

from .exceptions import (
    BillingError,
    InvalidPatch,
    InvalidAmount,
    RecordLocked,
    StoreWriteFailed,
)
from .models import (
    ALL_COST_COMPONENTS,
    PAYMENT_FIELDS,
    INSTALLMENT_METHODS,
    BillableRecord,
)
from .store import DjangoRecordStore
from .utils import (
    ZERO,
    check_max_amount,
    format_amount,
    stored_amount,
    to_amount,
    to_positive_amount,
)

logger = logging.getLogger(__name__)

UNLOCKED = 'UNLOCKED'
LOCKED = 'LOCKED'

# Frozen by the price lock
FROZEN_FIELDS = ALL_COST_COMPONENTS + PAYMENT_FIELDS

ADD_INSTALLMENT = 'add_installment'
REMOVE_INSTALLMENT = 'remove_installment'

PATCH_KEYS = FROZEN_FIELDS + (ADD_INSTALLMENT, REMOVE_INSTALLMENT)


# ---------------------------------------------------------------------------
# Price-lock guard
# ---------------------------------------------------------------------------

def lock_state(record):
    return LOCKED if record.price_locked else UNLOCKED


def check_patch_allowed(record, patch):
    """Raise RecordLocked if the patch touches anything the lock froze"""
    if not record.price_locked:
        return

    frozen = [key for key in patch if key in FROZEN_FIELDS]
    if frozen:
        raise RecordLocked(
            f"Price is locked; {', '.join(frozen)} can no longer be changed",
            fields=frozen,
            locked_at=record.price_locked_at.isoformat() if record.price_locked_at else None,
        )

    if REMOVE_INSTALLMENT in patch:
        raise RecordLocked(
            "Installments cannot be removed once the price is locked",
            fields=[REMOVE_INSTALLMENT],
        )


def should_lock(was_locked, insurance_amount, cash_amount, installments):
    """True when this write records the record's first payment"""
    if was_locked:
        return False
    return insurance_amount > 0 or cash_amount > 0 or bool(installments)


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------

def resolve_identity(user=None):
    """
    Who is acting: the explicit user (object or username), else the
    request user captured by AuditMiddleware, else 'system'.
    """
    if user is None:
        return get_current_identity()
    if isinstance(user, str):
        return user or 'system'
    return user.get_username() or 'system'


def _audit_user(user):
    if user is not None and not isinstance(user, str):
        return user
    return get_current_user()


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def normalize_method(method):
    """'Mobile-Money' -> 'mobile_money'; unknown methods raise InvalidPatch"""
    if not isinstance(method, str) or not method.strip():
        raise InvalidPatch("Installment method is required", field='method')

    normalized = method.strip().lower().replace('-', '_').replace(' ', '_')
    if normalized not in INSTALLMENT_METHODS:
        raise InvalidPatch(
            f"Unknown payment method: {method}. "
            f"Use one of: {', '.join(INSTALLMENT_METHODS)}",
            field='method',
        )
    return normalized


def _clean_installment(raw):
    if not isinstance(raw, dict):
        raise InvalidPatch("add_installment must be an object with amount and method")

    unexpected = sorted(set(raw) - {'amount', 'method', 'receipt_reference', 'note'})
    if unexpected:
        raise InvalidPatch(f"Unknown installment fields: {', '.join(unexpected)}", fields=unexpected)

    return {
        'amount': to_positive_amount(raw.get('amount'), field='installment amount'),
        'method': normalize_method(raw.get('method')),
        'receipt_reference': str(raw.get('receipt_reference') or '').strip(),
        'note': str(raw.get('note') or '').strip(),
    }


def validate_patch(record, patch):
    """
    Check every key and value of the patch against the record.
    Returns the cleaned values; nothing is merged here.
    """
    if not isinstance(patch, dict):
        raise InvalidPatch("Patch must be an object")

    if not patch:
        raise InvalidPatch("Nothing to update")

    unknown = sorted(key for key in patch if key not in PATCH_KEYS)
    if unknown:
        raise InvalidPatch(f"Unknown fields: {', '.join(unknown)}", fields=unknown)

    check_patch_allowed(record, patch)

    cleaned = {}
    for key, value in patch.items():
        if key in ALL_COST_COMPONENTS:
            if key not in record.cost_component_names:
                raise InvalidPatch(
                    f"{key} is not a cost component of {record.department} records",
                    field=key,
                )
            cleaned[key] = to_amount(value, field=key)

        elif key in PAYMENT_FIELDS:
            cleaned[key] = to_amount(value, field=key)

        elif key == ADD_INSTALLMENT:
            cleaned[key] = _clean_installment(value)

        elif key == REMOVE_INSTALLMENT:
            if value not in record.installment_ids():
                raise InvalidPatch(f"Installment {value} not found on this record", installment_id=value)
            cleaned[key] = value

    return cleaned


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

def _new_installment_id(existing_ids):
    while True:
        installment_id = f"INS-{uuid.uuid4().hex[:12].upper()}"
        if installment_id not in existing_ids:
            return installment_id


def _default_receipt_reference(record, installments):
    # RCP-YYYYMMDD-<record>-<seq>
    existing = {entry.get('receipt_reference') for entry in installments}
    sequence = len(installments) + 1
    while True:
        reference = f"RCP-{get_local_today():%Y%m%d}-{record.pk}-{sequence:02d}"
        if reference not in existing:
            return reference
        sequence += 1


def _build_installment(record, installments, data, identity, now):
    return {
        'id': _new_installment_id({entry.get('id') for entry in installments}),
        'amount': str(data['amount']),
        'paid_at': now.isoformat(),
        'method': data['method'],
        'receipt_reference': data['receipt_reference'] or _default_receipt_reference(record, installments),
        'note': data['note'],
        'recorded_by': identity,
    }


def merge_patch(record, cleaned, identity, now):
    """
    Build the field values to write, starting from a copy of the record.

    Returns (fields, summary) where `summary` describes what changed for
    logging and the audit trail.
    """
    working = {name: stored_amount(getattr(record, name)) for name in FROZEN_FIELDS}
    installments = [dict(entry) for entry in record.installments or []]
    summary = {'changes': {}, 'added': None, 'removed': None, 'locked': False}

    for name in FROZEN_FIELDS:
        if name in cleaned and cleaned[name] != working[name]:
            summary['changes'][name] = {'old': str(working[name]), 'new': str(cleaned[name])}
            working[name] = cleaned[name]

    if REMOVE_INSTALLMENT in cleaned:
        removed_id = cleaned[REMOVE_INSTALLMENT]
        summary['removed'] = next(entry for entry in installments if entry.get('id') == removed_id)
        installments = [entry for entry in installments if entry.get('id') != removed_id]

    if ADD_INSTALLMENT in cleaned:
        entry = _build_installment(record, installments, cleaned[ADD_INSTALLMENT], identity, now)
        installments.append(entry)
        summary['added'] = entry

    total_cost = sum((working[name] for name in record.cost_component_names), ZERO)
    check_max_amount(total_cost, field='total cost')
    paid = (
        working['insurance_amount']
        + working['cash_amount']
        + sum((stored_amount(entry['amount']) for entry in installments), ZERO)
    )
    balance = total_cost - paid
    if balance < 0:
        raise InvalidAmount(
            f"Payments exceed the total cost of {format_amount(total_cost)} "
            f"by {format_amount(-balance)}",
            field='balance',
        )

    fields = {name: working[name] for name in summary['changes']}
    fields['installments'] = installments
    fields['balance'] = balance

    if should_lock(record.price_locked, working['insurance_amount'], working['cash_amount'], installments):
        fields['price_locked'] = True
        fields['price_locked_at'] = now
        fields['price_locked_by'] = identity
        summary['locked'] = True

    return fields, summary


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def apply_update(record, patch, user=None, store=None, request=None):
    """
    Validate `patch`, merge it into a copy of the record and persist it.

    Args:
        record: BillableRecord instance or its id
        patch: dict of cost components, insurance_amount, cash_amount,
            add_installment and/or remove_installment
        user: acting user (object or username); defaults to the request user
        store: RecordStore, DjangoRecordStore by default
        request: HttpRequest, only used for the audit trail

    Returns the stored record. The `record` argument is never modified.
    Raises a BillingError subclass on any failure; nothing is written then.
    """
    store = store or DjangoRecordStore()
    if not isinstance(record, BillableRecord):
        record = store.get(record)

    identity = resolve_identity(user)
    now = timezone.now()

    try:
        cleaned = validate_patch(record, patch)
        fields, summary = merge_patch(record, cleaned, identity, now)
    except BillingError as e:
        logger.warning(f"Rejected update on record #{record.pk} by {identity}: {e}")
        raise

    try:
        with transaction.atomic():
            updated = store.update(record.pk, fields, expected_version=record.version)
            _write_audit(updated, summary, identity, _audit_user(user), request)
    except DatabaseError as e:
        logger.error(f"Audit write failed for record #{record.pk}: {e}")
        raise StoreWriteFailed(f"Could not save record: {e}", record_id=record.pk)

    if summary['locked']:
        logger.info(f"Price locked on record #{updated.pk} by {identity}")
    logger.info(
        f"Updated record #{updated.pk} (v{updated.version}) by {identity}: "
        f"balance {format_amount(updated.balance)}"
    )
    return updated


def _write_audit(record, summary, identity, user, request):
    if summary['changes']:
        AuditLog.log_action(
            actor=identity,
            action='update',
            model_instance=record,
            changes=summary['changes'],
            request=request,
            description=f"Updated {', '.join(summary['changes'])}",
            user=user,
        )

    if summary['removed']:
        removed = summary['removed']
        AuditLog.log_action(
            actor=identity,
            action='installment_remove',
            model_instance=record,
            changes={'installment': removed},
            request=request,
            description=f"Removed installment {removed['id']} of {format_amount(removed['amount'])}",
            user=user,
        )

    if summary['added']:
        added = summary['added']
        AuditLog.log_action(
            actor=identity,
            action='installment_add',
            model_instance=record,
            changes={'installment': added},
            request=request,
            description=(
                f"Installment of {format_amount(added['amount'])} via {added['method']} "
                f"({added['receipt_reference']})"
            ),
            user=user,
        )

    if summary['locked']:
        AuditLog.log_action(
            actor=identity,
            action='price_lock',
            model_instance=record,
            changes={
                'price_locked': {'old': False, 'new': True},
                'total_cost': str(record.total_cost),
            },
            request=request,
            description=f"Price locked at {format_amount(record.total_cost)} after first payment",
            user=user,
        )
