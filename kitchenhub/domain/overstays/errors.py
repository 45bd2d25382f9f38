"""Overstay domain errors

Every error carries a user-visible message; the HTTP layer returns it verbatim.
"""


class OverstayError(Exception):
    """Base class for overstay engine errors"""

    status_code = 400
    error_type = "overstay_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class OverstayValidationError(OverstayError):
    """Input rejected before any state change"""

    error_type = "validation_error"


class OverstayNotFoundError(OverstayError):
    status_code = 404
    error_type = "not_found"


class OverstayPermissionError(OverstayError):
    status_code = 403
    error_type = "forbidden"


class InvalidTransitionError(OverstayError):
    """Action is not legal from the record's current status"""

    status_code = 409
    error_type = "invalid_transition"

    def __init__(self, current_status, target_status, action: str = None):
        current = getattr(current_status, "value", current_status)
        target = getattr(target_status, "value", target_status)
        if action:
            message = f"Cannot {action} an overstay in status '{current}'"
        else:
            message = f"Invalid overstay transition: {current} → {target}"
        super().__init__(message)
        self.current_status = current
        self.target_status = target


class ConcurrencyConflictError(OverstayError):
    """Another actor modified the record first; retry against fresh state"""

    status_code = 409
    error_type = "concurrency_conflict"


class AuditLogImmutableError(OverstayError):
    """Raised when code tries to rewrite or delete financial audit rows"""

    status_code = 500
    error_type = "audit_log_immutable"


class GatewayError(OverstayError):
    """Payment gateway failure; never surfaced raw to callers"""

    error_type = "gateway_error"
    retryable = False

    def __init__(self, message: str, outcome_unknown: bool = False):
        super().__init__(message)
        self.outcome_unknown = outcome_unknown


class GatewayTransientError(GatewayError):
    """Network, timeout or rate limit; safe to retry with the same idempotency key"""

    retryable = True


class GatewayTerminalError(GatewayError):
    """Card declined or no usable payment method; counts toward escalation"""

    retryable = False
