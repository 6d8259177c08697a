from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Index
from carevault.core.base import Base, TimestampedMixin, UTCDateTime, utcnow

class AuditEvent(Base, TimestampedMixin):
    # who
    actor_id: Mapped[str] = mapped_column(String(64))     # UUID as string, or "anonymous"
    actor_role: Mapped[str] = mapped_column(String(16))
    # what happened
    action: Mapped[str] = mapped_column(String(24))  # read | resolve | deny
    resource_type: Mapped[str] = mapped_column(String(48))  # patient | capability
    resource_id: Mapped[str] = mapped_column(String(64))     # subject id as string, or "-"
    purpose: Mapped[str | None] = mapped_column(String(64), nullable=True)
    success: Mapped[bool] = mapped_column(default=True)
    client_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(256), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    __table_args__ = (
        Index("ix_auditevent_resource", "resource_type", "resource_id"),
    )
