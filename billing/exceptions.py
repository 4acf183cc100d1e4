# billing/exceptions.py
"""
Typed errors raised by the billing core.

Every error is per-call and recoverable: the caller fixes the input (or
reloads the record) and tries again. Views turn them into JSON responses.
"""


class BillingError(Exception):
    """Base class for every billing error"""
    code = 'billing_error'

    def __init__(self, message='', **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self):
        return self.message


class UnknownCostLine(BillingError):
    """A selected cost line is not in the catalog"""
    code = 'unknown_cost_line'


class InvalidAmount(BillingError):
    """Negative, non-finite or otherwise unusable monetary value"""
    code = 'invalid_amount'


class InvalidPatch(BillingError):
    """Patch key, payment method or installment id the ledger cannot apply"""
    code = 'invalid_patch'


class RecordLocked(BillingError):
    """Attempt to change a field frozen by the price lock"""
    code = 'record_locked'


class RecordNotFound(BillingError):
    """The record store has no record with that id"""
    code = 'record_not_found'


class StoreWriteFailed(BillingError):
    """The record store rejected or failed the write; nothing was applied"""
    code = 'store_write_failed'


class ConcurrentUpdate(StoreWriteFailed):
    """Someone else wrote the record between our read and our write"""
    code = 'concurrent_update'
