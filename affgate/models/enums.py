"""Closed value sets shared by models and services."""

import enum

from sqlalchemy import Enum


class TenantStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    INACTIVE = "inactive"


class VerificationStatus(str, enum.Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"


class VerificationMethod(str, enum.Enum):
    DNS = "dns"
    FILE = "file"
    META = "meta"
    API = "api"


class SecurityLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    STRICT = "strict"


class IdentifierType(str, enum.Enum):
    IP = "ip"
    API_KEY = "api_key"
    USER_ID = "user_id"
    DOMAIN = "domain"


class Granularity(str, enum.Enum):
    """Rate-limit window sizes, declared finest first."""

    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    MONTH = "month"


class WindowStatus(str, enum.Enum):
    ACTIVE = "active"
    EXCEEDED = "exceeded"
    BLOCKED = "blocked"
    SUSPENDED = "suspended"


class RateLimitEventType(str, enum.Enum):
    REQUEST = "request"
    BLOCK = "block"
    RESET = "reset"
    VIOLATION = "violation"
    ESCALATION = "escalation"


def enum_column(enum_cls: type[enum.Enum]) -> Enum:
    """VARCHAR-backed enum column storing member values."""
    return Enum(
        enum_cls,
        native_enum=False,
        length=20,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )
