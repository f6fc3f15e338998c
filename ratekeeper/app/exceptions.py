"""Custom exceptions for the rate limiter service."""


class RateKeeperException(Exception):
    """Base class for service exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(self, message: str = "Rate limiter error"):
        self.message = message
        super().__init__(message)


class InvalidRateConfigError(RateKeeperException):
    """Raised when limit, burst or identity are malformed or out of range.

    Raised before any store access and never retried.
    Maps to HTTP 400 Bad Request.
    """
    status_code = 400
    error_code = "invalid_request"

    def __init__(self, field: str, detail: str):
        self.field = field
        super().__init__(f"{field}: {detail}")


class StoreUnavailableError(RateKeeperException):
    """Raised when the bucket state store cannot be reached or the atomic
    update fails or times out.

    Admission state is unknown in this case; the caller decides whether to
    fail open or closed. Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503
    error_code = "store_unavailable"

    def __init__(self, reason: str = "error", detail: str | None = None):
        self.reason = reason
        super().__init__(detail or f"Bucket state store unavailable ({reason})")
