"""
Domain errors raised by the escrow lifecycle services.

Every error maps to one HTTP status and a stable machine-readable code so the
API layer can render it without inspecting the message.
"""


class EscrowError(Exception):
    """Base class for all lifecycle errors."""
    status_code = 400
    code = "escrow_error"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(EscrowError):
    """Malformed input, rejected before any state change."""
    status_code = 400
    code = "validation_error"


class NotFoundError(EscrowError):
    status_code = 404
    code = "not_found"


class Unauthorized(EscrowError):
    """Actor is not a party or admin allowed to perform the action."""
    status_code = 403
    code = "unauthorized"


class InvalidTransition(EscrowError):
    """Action is not legal from the current state."""
    status_code = 409
    code = "invalid_transition"


class AlreadySettled(EscrowError):
    """Milestone funds were already released or refunded."""
    status_code = 409
    code = "already_settled"


class ConcurrencyConflict(EscrowError):
    """Version check failed; re-read and retry the whole operation."""
    status_code = 409
    code = "concurrency_conflict"
    retryable = True


class LedgerError(EscrowError):
    """Fund operation failed; the transition was rolled back."""
    status_code = 502
    code = "ledger_error"
    retryable = True

    def __init__(self, message: str, escalate: bool = False, transient: bool = True):
        super().__init__(message)
        self.escalate = escalate
        # Permanent rejections (bad request, overdrawn hold) are not retried
        self.transient = transient
        self.retryable = transient


class LedgerTimeout(LedgerError):
    code = "ledger_timeout"
