import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Index, UniqueConstraint
from carevault.core.base import Base, TimestampedMixin, UTCDateTime

PENDING = "pending"
ACCEPTED = "accepted"
DECLINED = "declined"
LIVE_STATUSES = (PENDING, ACCEPTED)

def active_key_for(requester_id: uuid.UUID | None, subject_id: uuid.UUID) -> str | None:
    # anonymous requesters have no stable identity to deduplicate on
    if requester_id is None:
        return None
    return f"{requester_id}:{subject_id}"

class ConsentSession(Base, TimestampedMixin):
    __tablename__ = "consent_session"

    requester_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)  # doctor; NULL for anonymous
    subject_id: Mapped[uuid.UUID] = mapped_column()                        # patient
    status: Mapped[str] = mapped_column(String(16), default=PENDING)       # pending | accepted | declined
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime())
    request_label: Mapped[str] = mapped_column(String(500), default="")
    responded_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # "{requester_id}:{subject_id}" while pending/accepted, NULL otherwise.
    active_key: Mapped[str | None] = mapped_column(String(80), nullable=True)

    __table_args__ = (
        UniqueConstraint("active_key", name="uq_consent_session_active_key"),
        Index("ix_consent_session_subject_status", "subject_id", "status"),
        Index("ix_consent_session_requester_status", "requester_id", "status"),
        Index("ix_consent_session_expires_at", "expires_at"),
    )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def is_active(self, now: datetime) -> bool:
        return self.status == ACCEPTED and not self.is_expired(now)
