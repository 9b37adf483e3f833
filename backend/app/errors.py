"""Error taxonomy for submission intake and analytics."""


class IntakeError(Exception):
    """Base error carrying a stable code and the HTTP status it maps to."""
    code = "intake_error"
    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFound(IntakeError):
    """Referenced form does not exist. Never retried."""
    code = "not_found"
    status_code = 404


class QuotaExceeded(IntakeError):
    """Completed-submission cap reached for the form."""
    code = "quota_exceeded"
    status_code = 409

    def __init__(self, form_id: str, limit: int):
        self.form_id = form_id
        self.limit = limit
        super().__init__(
            f"Form {form_id!r} has reached its limit of {limit} completed responses"
        )


class ValidationFailed(IntakeError):
    """Malformed payload, rejected before any storage write."""
    code = "validation_failed"
    status_code = 422


class StorageUnavailable(IntakeError):
    """Transient persistence failure."""
    code = "storage_unavailable"
    status_code = 503


class AdminKeyRejected(IntakeError):
    """Missing or wrong X-ADMIN-KEY on a privileged endpoint."""
    code = "forbidden"
    status_code = 403


class AccessDenied(IntakeError):
    """AccessGate refused the request."""

    def __init__(self, verdict):
        self.verdict = verdict
        self.code = verdict.value
        self.status_code = 401 if verdict.value == "unauthorized" else 403
        super().__init__(_ACCESS_MESSAGES.get(verdict.value, "Access denied"))


_ACCESS_MESSAGES = {
    "unauthorized": "Missing or invalid access token",
    "forbidden": "You do not own this form",
    "subscription_inactive": "Subscription inactive. Renew your plan to continue.",
}
