"""Domain exceptions for session lifecycle and billing.

Each error carries the HTTP status and machine-readable code that the API
envelope reports, so routers and the app-level handler never have to map
them by hand.
"""


class SessionBillingError(Exception):
    """Base exception for session lifecycle and billing errors."""

    status_code: int = 400
    error_code: str = "SESSION_ERROR"

    def __init__(self, message: str, *, error_code: str | None = None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code


class SessionNotFoundError(SessionBillingError):
    """Session (or appointment) not found."""

    status_code = 404
    error_code = "NOT_FOUND"


class InvalidTransitionError(SessionBillingError):
    """Requested status change would move a session backward or sideways."""

    status_code = 409
    error_code = "INVALID_TRANSITION"


class ConnectedAtOverwriteError(SessionBillingError):
    """connected_at is write-once."""

    status_code = 409
    error_code = "CONNECTED_AT_IMMUTABLE"


class SessionConflictError(SessionBillingError):
    """An open session already exists, or the session is not in a usable state."""

    status_code = 409
    error_code = "SESSION_CONFLICT"


class InsufficientQuotaError(SessionBillingError):
    """Patient has no remaining quota for the requested modality."""

    status_code = 402
    error_code = "INSUFFICIENT_QUOTA"


class NotParticipantError(SessionBillingError):
    """Actor is neither the patient nor the doctor of the session."""

    status_code = 403
    error_code = "NOT_PARTICIPANT"


class SessionBillingRequiredError(SessionBillingError):
    """Legacy appointment billing refused: a session owns this consultation."""

    status_code = 409
    error_code = "SESSION_BILLING_REQUIRED"
