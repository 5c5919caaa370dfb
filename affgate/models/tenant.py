"""Tenant model."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from affgate.database import Base, JSONType, PKType
from affgate.models.enums import (
    SecurityLevel,
    TenantStatus,
    VerificationMethod,
    VerificationStatus,
    enum_column,
)


class Tenant(Base):
    """Authorized client domain - one per API key."""

    __tablename__ = "tenants"

    id: Mapped[int] = mapped_column(PKType, primary_key=True, autoincrement=True)
    domain_url: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    domain_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    api_key: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    api_secret_hash: Mapped[str] = mapped_column(String(255), nullable=False)

    status: Mapped[TenantStatus] = mapped_column(
        enum_column(TenantStatus), nullable=False, default=TenantStatus.PENDING, index=True
    )

    verification_status: Mapped[VerificationStatus] = mapped_column(
        enum_column(VerificationStatus), nullable=False, default=VerificationStatus.PENDING
    )
    verification_method: Mapped[VerificationMethod] = mapped_column(
        enum_column(VerificationMethod), nullable=False, default=VerificationMethod.API
    )
    verification_token: Mapped[str | None] = mapped_column(String(128), nullable=True)
    verification_requested_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    verification_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_verification_attempt: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_successful_verification: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True
    )

    security_level: Mapped[SecurityLevel] = mapped_column(
        enum_column(SecurityLevel), nullable=False, default=SecurityLevel.MEDIUM
    )
    require_https: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    allowed_endpoints: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    blocked_endpoints: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    allowed_ips: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    blocked_ips: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    # NULL = unlimited for that granularity
    rate_limit_per_minute: Mapped[int | None] = mapped_column(Integer, nullable=True, default=100)
    rate_limit_per_hour: Mapped[int | None] = mapped_column(Integer, nullable=True, default=1000)
    max_daily_requests: Mapped[int | None] = mapped_column(Integer, nullable=True, default=10000)
    max_monthly_requests: Mapped[int | None] = mapped_column(Integer, nullable=True)

    webhook_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    webhook_secret: Mapped[str | None] = mapped_column(String(128), nullable=True)
    webhook_events: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    webhook_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    webhook_last_sent: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    suspended_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    suspended_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    suspended_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    last_error_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    @property
    def is_verified(self) -> bool:
        return self.verification_status == VerificationStatus.VERIFIED

    @property
    def https_required(self) -> bool:
        return bool(self.require_https) or self.security_level == SecurityLevel.STRICT
