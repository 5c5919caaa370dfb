"""Database models."""

from affgate.models.tenant import Tenant
from affgate.models.rate_limit import RateLimitEvent, RateLimitWindow
from affgate.models.usage import UsageEvent

__all__ = ["Tenant", "RateLimitWindow", "RateLimitEvent", "UsageEvent"]
