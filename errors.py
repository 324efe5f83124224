"""
Typed errors raised by the job lifecycle, ledger and collaboration services.

Every error carries an HTTP status so route blueprints can translate it
without knowing which service raised it. ConflictError is the only
retryable one; everything else is terminal for the request.
"""


class EscrowError(Exception):
    """Base class for all domain errors."""
    status_code = 400
    code = "error"

    def __init__(self, message=None, **details):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__
        self.details = details

    def to_dict(self):
        data = {"error": self.message, "code": self.code}
        if self.details:
            data["details"] = self.details
        return data


class NotFoundError(EscrowError):
    """Requested record does not exist."""
    status_code = 404
    code = "not_found"


class ValidationError(EscrowError):
    """Input failed validation."""
    status_code = 400
    code = "validation_error"


class PermissionDeniedError(EscrowError):
    """Actor is not allowed to perform this operation."""
    status_code = 403
    code = "permission_denied"


class ConflictError(EscrowError):
    """Record changed since it was read; re-read and retry."""
    status_code = 409
    code = "conflict"


class IllegalTransitionError(EscrowError):
    """Requested status change is not a legal edge."""
    status_code = 409
    code = "illegal_transition"

    def __init__(self, from_status, to_status, message=None):
        super().__init__(
            message or "Cannot transition from {} to {}".format(from_status, to_status),
            from_status=from_status,
            to_status=to_status,
        )
        self.from_status = from_status
        self.to_status = to_status


class InsufficientBalanceError(EscrowError):
    """Operation would overdraw the paying account."""
    status_code = 402
    code = "insufficient_balance"


class AmountMismatchError(EscrowError):
    """Collaboration task amounts do not sum to the job amount."""
    status_code = 422
    code = "amount_mismatch"


class CollaborationLockedError(EscrowError):
    """Collaboration can no longer be changed or cancelled."""
    status_code = 409
    code = "collaboration_locked"


class DisputeWindowClosedError(EscrowError):
    """Dispute window for this job has closed."""
    status_code = 409
    code = "dispute_window_closed"
