"""Usage event model."""

from datetime import datetime

from sqlalchemy import DateTime, Float, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from affgate.database import Base, JSONType, PKType


class UsageEvent(Base):
    """Usage records for allowed requests - append-only."""

    __tablename__ = "usage_events"

    id: Mapped[int] = mapped_column(PKType, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(PKType, nullable=False)
    endpoint: Mapped[str] = mapped_column(String(255), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False)
    latency_ms: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    metadata_json: Mapped[dict] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )

    __table_args__ = (Index("ix_usage_events_tenant_ts", "tenant_id", "timestamp"),)
