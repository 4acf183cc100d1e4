# billing/store.py
"""
Record store boundary used by the payment ledger.

DjangoRecordStore keeps billable records in the ORM. Updates are
conditional on the version the caller read, so two sessions that both
saw an unlocked record cannot both write.
"""
import logging

from django.db import DatabaseError, transaction
from django.db.models import F
from django.utils import timezone

from .exceptions import (
    ConcurrentUpdate,
    InvalidPatch,
    RecordNotFound,
    StoreWriteFailed,
)
from .models import (
    ALL_COST_COMPONENTS,
    COST_COMPONENTS,
    BillableRecord,
)
from .utils import ZERO, check_max_amount, to_amount

logger = logging.getLogger(__name__)

# Fields that are never written through update()
PROTECTED_FIELDS = ('id', 'pk', 'version', 'created_at', 'created_by', 'department')


class RecordStore:
    """Interface the ledger talks to"""

    def get(self, record_id):
        raise NotImplementedError

    def list(self, **filters):
        raise NotImplementedError

    def create(self, department, reference, created_by='', **fields):
        raise NotImplementedError

    def update(self, record_id, fields, expected_version):
        raise NotImplementedError


class DjangoRecordStore(RecordStore):

    model = BillableRecord

    def get(self, record_id):
        try:
            return self.model.objects.get(pk=record_id)
        except (self.model.DoesNotExist, ValueError, TypeError):
            raise RecordNotFound(f"Billable record {record_id} not found", record_id=record_id)

    def list(self, **filters):
        return list(self.model.objects.filter(**filters))

    def create(self, department, reference, created_by='', **fields):
        """
        Create a record with zero payments and no lock.

        Only the department's cost components, `notes` and `created_at`
        may be passed in.
        """
        if department not in COST_COMPONENTS:
            raise InvalidPatch(f"Unknown department: {department}", department=department)

        allowed = set(COST_COMPONENTS[department]) | {'notes', 'created_at'}
        unexpected = sorted(set(fields) - allowed)
        if unexpected:
            raise InvalidPatch(
                f"Cannot set {', '.join(unexpected)} when creating a {department} record",
                fields=unexpected,
            )

        values = {name: ZERO for name in ALL_COST_COMPONENTS}
        for name in COST_COMPONENTS[department]:
            if name in fields:
                values[name] = to_amount(fields[name], field=name)

        total = sum((values[name] for name in COST_COMPONENTS[department]), ZERO)
        check_max_amount(total, field='total cost')
        now = timezone.now()

        try:
            record = self.model.objects.create(
                department=department,
                reference=reference,
                notes=fields.get('notes', ''),
                insurance_amount=ZERO,
                cash_amount=ZERO,
                installments=[],
                balance=total,
                price_locked=False,
                created_by=created_by,
                created_at=fields.get('created_at') or now,
                updated_at=now,
                **values
            )
        except DatabaseError as e:
            logger.error(f"Failed to create {department} record '{reference}': {e}")
            raise StoreWriteFailed(f"Could not create record: {e}")

        logger.info(f"Created {department} record #{record.pk} ({reference}) by {created_by or 'system'}")
        return record

    def update(self, record_id, fields, expected_version):
        """
        Write `fields` only if the row still carries `expected_version`.

        Bumps the version on success and returns the freshly read record.
        Raises ConcurrentUpdate when another writer got there first.
        """
        protected = [name for name in fields if name in PROTECTED_FIELDS]
        if protected:
            raise InvalidPatch(f"Cannot rewrite {', '.join(protected)}", fields=protected)

        try:
            with transaction.atomic():
                updated = self.model.objects.filter(
                    pk=record_id,
                    version=expected_version,
                ).update(
                    version=F('version') + 1,
                    updated_at=timezone.now(),
                    **fields
                )

                if updated == 0:
                    if not self.model.objects.filter(pk=record_id).exists():
                        raise RecordNotFound(
                            f"Billable record {record_id} not found",
                            record_id=record_id,
                        )
                    logger.warning(
                        f"Concurrent update on record #{record_id}: "
                        f"expected version {expected_version}"
                    )
                    raise ConcurrentUpdate(
                        "Record was changed by someone else. Reload and try again.",
                        record_id=record_id,
                        expected_version=expected_version,
                    )

                return self.model.objects.get(pk=record_id)
        except DatabaseError as e:
            logger.error(f"Failed to update record #{record_id}: {e}")
            raise StoreWriteFailed(f"Could not save record: {e}", record_id=record_id)
