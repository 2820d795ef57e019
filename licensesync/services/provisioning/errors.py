"""Error taxonomy shared by provisioning, intake and the HTTP layer.

Every error carries a stable `code` and the HTTP status it maps to. Only
`TransientError` (and its subclasses) is retried by `RetryPolicy`.
"""


class ProvisioningError(Exception):
    """Base class for domain errors surfaced to callers."""

    code = "provisioning_error"
    http_status = 500
    retryable = False

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_body(self) -> dict:
        return {"error": {"code": self.code, "message": self.message}}


class TransientError(ProvisioningError):
    """Network timeout, 5xx or rate limit; safe to retry."""

    code = "transient_failure"
    http_status = 503
    retryable = True


class PermanentError(ProvisioningError):
    """Validation failure or missing resource; never retried."""

    code = "permanent_failure"
    http_status = 422


class OperationInFlight(ProvisioningError):
    """Another execution holds the idempotency record for this key."""

    code = "operation_in_flight"
    http_status = 409


class LicenseNotFound(PermanentError):
    code = "license_not_found"
    http_status = 404


class LicenseStateConflict(PermanentError):
    code = "license_state_conflict"
    http_status = 409


class CompensatedFailure(ProvisioningError):
    """A forward step failed and earlier steps were rolled back."""

    code = "operation_rolled_back"
    http_status = 502

    def __init__(self, message: str, rolled_back: bool = True) -> None:
        super().__init__(message)
        self.rolled_back = rolled_back

    def to_body(self) -> dict:
        body = super().to_body()
        body["error"]["rolled_back"] = self.rolled_back
        return body


class InvalidSignature(ProvisioningError):
    code = "invalid_signature"
    http_status = 400


class MalformedEvent(ProvisioningError):
    code = "malformed_event"
    http_status = 400


class UnsupportedEvent(PermanentError):
    """Verified notification of a type this service does not act on.

    Intake acknowledges these with an `ignored` result instead of an error.
    """

    code = "unsupported_event"
