from datetime import date
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Boolean, Date
from carevault.core.base import Base, TimestampedMixin

class Patient(Base, TimestampedMixin):
    name: Mapped[str] = mapped_column(String(200))
    email: Mapped[str] = mapped_column(String(320), unique=True, index=True)
    gender: Mapped[str | None] = mapped_column(String(16), nullable=True)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    blood_type: Mapped[str | None] = mapped_column(String(8), nullable=True)
    push_token: Mapped[str | None] = mapped_column(String(512), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True)

class Doctor(Base, TimestampedMixin):
    name: Mapped[str] = mapped_column(String(160), index=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, index=True)
    specialization: Mapped[str | None] = mapped_column(String(120), nullable=True)
    push_token: Mapped[str | None] = mapped_column(String(512), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
