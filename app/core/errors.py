"""
Billing error taxonomy.

Every error carries a stable ``reason`` code (returned to API callers) and the
HTTP status the request handlers map it to. Gateway declines and timeouts are
not errors: they are recorded as FAILED payments and drive the retry policy.
"""
from typing import Optional


class BillingError(Exception):
    status_code = 400
    reason = "billing_error"

    def __init__(self, message: Optional[str] = None, reason: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if reason:
            self.reason = reason


# Validation: rejected before any money moves

class ValidationFailure(BillingError):
    status_code = 422
    reason = "validation_failed"


class InvalidDiscountCode(ValidationFailure):
    reason = "invalid_discount_code"


class InvalidAmount(ValidationFailure):
    reason = "invalid_amount"


class ExceedsAmount(ValidationFailure):
    reason = "exceeds_amount"


# State conflicts: the request is well-formed but the current state forbids it

class StateConflict(BillingError):
    status_code = 409
    reason = "state_conflict"


class AlreadySubscribed(StateConflict):
    reason = "already_subscribed"


class AlreadyRefunded(StateConflict):
    reason = "already_refunded"


class AlreadyCanceled(StateConflict):
    reason = "already_canceled"


class InvalidTransition(StateConflict):
    reason = "invalid_transition"


class ConcurrentModification(StateConflict):
    reason = "concurrent_modification"


# Configuration: fatal for one charge attempt, never for a scheduler pass

class ConfigurationFailure(BillingError):
    status_code = 422
    reason = "configuration_failure"


class NoPaymentMethod(ConfigurationFailure):
    reason = "no_payment_method"


class NotFound(BillingError):
    status_code = 404
    reason = "not_found"
