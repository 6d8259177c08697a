import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Text, Integer, Index, UniqueConstraint
from carevault.core.base import Base, TimestampedMixin, UTCDateTime

ACTIVE = "active"
EXPIRED = "expired"

class CapabilityToken(Base, TimestampedMixin):
    __tablename__ = "capability_token"

    subject_id: Mapped[uuid.UUID] = mapped_column()  # patient
    token: Mapped[str] = mapped_column(Text)
    jti: Mapped[str] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(String(16), default=ACTIVE)  # active | expired
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime())

    # subject_id while active, NULL once expired: one live token per subject
    live_subject_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)

    resolve_count: Mapped[int] = mapped_column(Integer, default=0)
    last_resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        UniqueConstraint("jti", name="uq_capability_token_jti"),
        UniqueConstraint("live_subject_id", name="uq_capability_token_live_subject"),
        Index("ix_capability_token_token", "token"),
        Index("ix_capability_token_subject_status", "subject_id", "status"),
    )
