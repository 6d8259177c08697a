import uuid
from datetime import datetime, timezone
from sqlalchemy.orm import DeclarativeBase, declared_attr, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator
from sqlalchemy import text, TIMESTAMP

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class UTCDateTime(TypeDecorator):
    """Timestamp column that always hands back aware UTC datetimes.

    SQLite has no timezone storage and returns naive values; every comparison
    in the services is against an aware ``now``, so normalize at the boundary.
    """
    impl = TIMESTAMP(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

class Base(DeclarativeBase):
    pass

class TimestampedMixin:
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, server_default=text("CURRENT_TIMESTAMP"), onupdate=utcnow
    )

    @declared_attr.directive
    def __tablename__(cls) -> str:
        return cls.__name__.lower()
