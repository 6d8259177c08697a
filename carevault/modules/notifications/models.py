import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Text, JSON, Boolean, Integer, Index
from carevault.core.base import Base, TimestampedMixin, UTCDateTime

KINDS = (
    "general", "session_request", "session_accepted", "session_declined",
    "document", "reminder", "qr_scan", "system",
)

PUSH_PENDING = "pending"
PUSH_SENT = "sent"
PUSH_SKIPPED = "skipped"  # recipient has no registered device
PUSH_FAILED = "failed"    # gave up after max attempts

class Notification(Base, TimestampedMixin):
    recipient_id: Mapped[uuid.UUID] = mapped_column()
    recipient_role: Mapped[str] = mapped_column(String(16))  # patient | doctor
    sender_id: Mapped[str] = mapped_column(String(64))       # UUID as string, or "system" / "anonymous"
    sender_role: Mapped[str] = mapped_column(String(16))     # patient | doctor | anonymous | system
    kind: Mapped[str] = mapped_column(String(32), default="general")
    title: Mapped[str] = mapped_column(String(200))
    body: Mapped[str] = mapped_column(Text)
    payload: Mapped[dict] = mapped_column(JSON, default=dict)

    read: Mapped[bool] = mapped_column(Boolean, default=False)
    read_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # out-of-band delivery bookkeeping; never affects whether the record is valid
    push_status: Mapped[str] = mapped_column(String(16), default=PUSH_PENDING)
    push_attempts: Mapped[int] = mapped_column(Integer, default=0)
    push_next_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    push_message_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    push_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_notification_recipient_read", "recipient_id", "read", "created_at"),
        Index("ix_notification_push_due", "push_status", "push_next_attempt_at"),
    )
