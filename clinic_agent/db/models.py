"""SQLAlchemy ORM models for the booking core."""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, date, datetime
from typing import Optional

from sqlalchemy import Date, DateTime, Index, String, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class AppointmentStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Appointment(Base):
    """A booked slot at one clinic location.

    At most one non-cancelled row may hold a given
    ``(resource_id, appointment_date, appointment_time)``; the partial unique
    index below enforces it, so concurrent bookers are arbitrated by the
    database rather than by the pre-check in the booking service.
    """

    __tablename__ = "appointments"
    __table_args__ = (
        Index(
            "uq_appointments_active_slot",
            "resource_id",
            "appointment_date",
            "appointment_time",
            unique=True,
            sqlite_where=text("status != 'cancelled'"),
            postgresql_where=text("status != 'cancelled'"),
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4()),
    )
    confirmation_token: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True, index=True,
    )

    resource_id: Mapped[str] = mapped_column(String(64), nullable=False)
    service_id: Mapped[str] = mapped_column(String(64), nullable=False)
    appointment_date: Mapped[date] = mapped_column(Date, nullable=False)
    appointment_time: Mapped[str] = mapped_column(String(5), nullable=False)  # "HH:MM"

    patient_name: Mapped[str] = mapped_column(String(200), nullable=False)
    patient_phone: Mapped[str] = mapped_column(String(50), nullable=False)
    patient_email: Mapped[str] = mapped_column(String(254), nullable=False)

    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=AppointmentStatus.PENDING.value,
    )
    # Written by the reminder batch job, read-only here
    reminder_sent: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    def __repr__(self) -> str:
        return (
            f"<Appointment {self.id} {self.resource_id} "
            f"{self.appointment_date} {self.appointment_time} {self.status}>"
        )
