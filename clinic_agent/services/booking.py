"""Booking transaction: validate a requested slot and reserve it atomically.

Validation runs in a fixed order and stops at the first failure, raising a
``BookingError`` subclass; nothing is written unless every check passes.
The final insert is arbitrated by the unique index on
``(resource_id, appointment_date, appointment_time)`` among non-cancelled
rows, so two requests that both pass the free-slot check cannot both win:
the loser's ``IntegrityError`` is reported as ``SlotUnavailable``.
"""

from __future__ import annotations

import logging
import re
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date

from sqlalchemy.exc import IntegrityError

from clinic_agent.config import CLOSED_WEEKDAY, LOCATIONS, SERVICES
from clinic_agent.db.models import Appointment, AppointmentStatus
from clinic_agent.db.session import SessionFactory
from clinic_agent.services import calendar
from clinic_agent.services.metrics import metrics

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32

# RFC 5322-ish pattern — covers the vast majority of real-world emails
# without requiring an external dependency.
_EMAIL_RE = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)


# ── Errors ───────────────────────────────────────────────────────────


class BookingError(Exception):
    """Base class for recoverable booking rejections."""

    code = "booking_error"


class InvalidReference(BookingError):
    code = "invalid_reference"

    def __init__(self, field: str, value: str):
        self.field = field
        self.value = value
        super().__init__(f"Unknown {field}: {value!r}")


class PastDate(BookingError):
    code = "past_date"

    def __init__(self, requested: date, today: date):
        self.requested = requested
        self.today = today
        super().__init__(f"{requested.isoformat()} is before today ({today.isoformat()})")


class ClosedDay(BookingError):
    code = "closed_day"

    def __init__(self, requested: date):
        self.requested = requested
        super().__init__(f"The clinic is closed on {requested.strftime('%A')}s")


class SlotUnavailable(BookingError):
    """The slot is taken (or is not a slot at all).

    ``free_slots`` carries the currently free times for the same location and
    date so the caller can retry straight away.
    """

    code = "slot_unavailable"

    def __init__(self, requested_time: str, free_slots: list[str]):
        self.requested_time = requested_time
        self.free_slots = free_slots
        super().__init__(f"{requested_time} is not available")


class InvalidContact(BookingError):
    code = "invalid_contact"

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(message)


# ── Types ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PatientContact:
    name: str
    phone: str
    email: str


def generate_token() -> str:
    """Return a fresh, URL-safe, unguessable confirmation token."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def validate_contact(contact: PatientContact) -> None:
    """Raise ``InvalidContact`` for empty fields or a malformed e-mail."""
    if not contact.name or not contact.name.strip():
        raise InvalidContact("patient_name", "The patient's name is missing.")
    if not contact.phone or not contact.phone.strip():
        raise InvalidContact("patient_phone", "The patient's phone number is missing.")
    if not contact.email or not contact.email.strip():
        raise InvalidContact("patient_email", "The patient's email address is missing.")
    if not _EMAIL_RE.match(contact.email.strip()):
        raise InvalidContact(
            "patient_email",
            f'"{contact.email.strip()}" does not look like a valid email address.',
        )


# ── Service ──────────────────────────────────────────────────────────


class BookingService:
    """Slot lookups and the reserve-or-reject write.

    Args:
        session_factory: Produces SQLAlchemy sessions bound to the store.
        notifier: Optional object with ``send_booking_confirmation(appointment)``;
            called after a successful booking, never allowed to fail it.
        today: Clock returning the clinic's current date (injectable for tests).
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        notifier=None,
        today: Callable[[], date] | None = None,
    ):
        self._session_factory = session_factory
        self._notifier = notifier
        self._today = today or calendar.clinic_today

    def today(self) -> date:
        return self._today()

    def free_slots(self, resource_id: str, day: date) -> list[str]:
        with self._session_factory() as session:
            return calendar.free_slots(session, resource_id, day)

    def book(
        self,
        resource_id: str,
        service_id: str,
        day: date,
        time: str,
        contact: PatientContact,
    ) -> Appointment:
        """Reserve *time* on *day* at *resource_id*, or raise a ``BookingError``."""
        try:
            appointment = self._book(resource_id, service_id, day, time, contact)
        except BookingError as exc:
            metrics.record_event("Booking/Outcome", exc.code)
            logger.info(
                "Booking rejected (%s): %s %s %s — %s",
                exc.code, resource_id, day, time, exc,
            )
            raise

        metrics.record_event("Booking/Outcome", "booked")
        logger.info(
            "Booked appointment %s: %s %s %s",
            appointment.id, resource_id, day, appointment.appointment_time,
        )
        self._notify(appointment)
        return appointment

    def _book(
        self,
        resource_id: str,
        service_id: str,
        day: date,
        time: str,
        contact: PatientContact,
    ) -> Appointment:
        if resource_id not in LOCATIONS:
            raise InvalidReference("resource_id", resource_id)
        if service_id not in SERVICES:
            raise InvalidReference("service_id", service_id)

        today = self._today()
        if day < today:
            raise PastDate(day, today)
        if day.weekday() == CLOSED_WEEKDAY:
            raise ClosedDay(day)

        try:
            slot = calendar.normalize_time(time)
        except ValueError:
            slot = time

        with self._session_factory() as session:
            available = calendar.free_slots(session, resource_id, day)
            if slot not in available:
                raise SlotUnavailable(slot, available)

            validate_contact(contact)

            appointment = Appointment(
                confirmation_token=generate_token(),
                resource_id=resource_id,
                service_id=service_id,
                appointment_date=day,
                appointment_time=slot,
                patient_name=contact.name.strip(),
                patient_phone=contact.phone.strip(),
                patient_email=contact.email.strip(),
                status=AppointmentStatus.PENDING.value,
            )
            session.add(appointment)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.warning(
                    "Lost booking race for %s %s %s", resource_id, day, slot,
                )
                metrics.record_event("Booking/Outcome", "race_lost")
                raise SlotUnavailable(
                    slot, calendar.free_slots(session, resource_id, day),
                ) from None
            return appointment

    def _notify(self, appointment: Appointment) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.send_booking_confirmation(appointment)
        except Exception:
            logger.exception(
                "Could not queue confirmation e-mail for appointment %s", appointment.id,
            )
