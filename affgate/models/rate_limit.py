"""Rate-limit window and audit event models."""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from affgate.database import Base, JSONType, PKType
from affgate.models.enums import (
    Granularity,
    IdentifierType,
    RateLimitEventType,
    WindowStatus,
    enum_column,
)


class RateLimitWindow(Base):
    """Counter for one identifier, endpoint and granularity over [window_start, reset_at)."""

    __tablename__ = "rate_limit_windows"

    id: Mapped[int] = mapped_column(PKType, primary_key=True, autoincrement=True)
    identifier: Mapped[str] = mapped_column(String(255), nullable=False)
    identifier_type: Mapped[IdentifierType] = mapped_column(
        enum_column(IdentifierType), nullable=False
    )
    endpoint: Mapped[str] = mapped_column(String(255), nullable=False)
    time_window: Mapped[Granularity] = mapped_column(enum_column(Granularity), nullable=False)

    window_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    reset_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    request_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    limit_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    blocked_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[WindowStatus] = mapped_column(
        enum_column(WindowStatus), nullable=False, default=WindowStatus.ACTIVE
    )
    violation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    first_request_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_request_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_blocked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "identifier",
            "identifier_type",
            "endpoint",
            "time_window",
            name="uq_rate_limit_windows_key",
        ),
        Index("ix_rate_limit_windows_reset_at", "reset_at"),
    )


class RateLimitEvent(Base):
    """Append-only rate-limit audit trail."""

    __tablename__ = "rate_limit_events"

    id: Mapped[int] = mapped_column(PKType, primary_key=True, autoincrement=True)
    rate_limit_id: Mapped[int | None] = mapped_column(
        PKType, ForeignKey("rate_limit_windows.id", ondelete="SET NULL"), nullable=True
    )
    event_type: Mapped[RateLimitEventType] = mapped_column(
        enum_column(RateLimitEventType), nullable=False
    )
    identifier: Mapped[str] = mapped_column(String(255), nullable=False)
    endpoint: Mapped[str] = mapped_column(String(255), nullable=False)
    details: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_rate_limit_events_lookup", "identifier", "event_type", "created_at"),
    )
