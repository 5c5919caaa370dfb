"""Gateway error taxonomy.

Every error raised on the request path carries a stable ``code`` (the outcome
family) and ``reason`` so callers can drive their own retry/backoff logic.
"""


class GatewayError(Exception):
    """Base class for request-path denials."""

    status_code = 400
    code = "error"
    retry_after: int | None = None

    def __init__(self, reason: str, message: str | None = None):
        super().__init__(message or reason)
        self.reason = reason

    def to_dict(self) -> dict:
        return {"outcome": self.code, "reason": self.reason}


class AuthenticationError(GatewayError):
    """Unknown API key or secret mismatch. Not retried by the gateway."""

    status_code = 401
    code = "unauthorized"


class PolicyViolation(GatewayError):
    """Status, IP, endpoint or HTTPS rule failure. Consumes no quota."""

    status_code = 403
    code = "forbidden"


class TemporarilyBlocked(PolicyViolation):
    """The client IP failed authentication too often and is blocked for a while."""

    def __init__(self, retry_after: int):
        super().__init__("temporarily_blocked")
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        return {
            "outcome": self.code,
            "reason": self.reason,
            "retry_after_seconds": self.retry_after,
        }


class RateLimitExceeded(GatewayError):
    """A window cap was breached; retry after the window resets."""

    status_code = 429
    code = "too_many_requests"

    def __init__(self, granularity: str, limit: int, retry_after: int, reason: str = "rate_limited"):
        super().__init__(reason, f"{granularity} limit of {limit} exceeded")
        self.granularity = granularity
        self.limit = limit
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        return {
            "outcome": self.code,
            "reason": self.reason,
            "granularity": self.granularity,
            "limit": self.limit,
            "retry_after_seconds": self.retry_after,
        }


class EscalatedSuspension(RateLimitExceeded):
    """Repeated violations suspended the tenant until an operator reinstates it."""

    status_code = 403
    code = "forbidden"

    def __init__(self, granularity: str, limit: int, retry_after: int):
        super().__init__(granularity, limit, retry_after, reason="escalated_suspension")

    def to_dict(self) -> dict:
        return {
            "outcome": self.code,
            "reason": self.reason,
            "granularity": self.granularity,
            "limit": self.limit,
        }


class VerificationFailure(Exception):
    """Domain-ownership proof could not be attempted or did not pass."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class WebhookDeliveryFailure(Exception):
    """Outbound webhook was rejected or could not be sent."""


class TenantNotFound(Exception):
    pass


class DuplicateTenant(Exception):
    pass
