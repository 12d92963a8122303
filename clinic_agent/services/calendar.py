"""The clinic's daily slot calendar.

The bookable day is a fixed, ordered list of time points
(``config.TIME_SLOTS``).  A slot is free for a location on a date when no
non-cancelled appointment holds it.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from clinic_agent.config import CLINIC_TIMEZONE, CLOSED_WEEKDAY, TIME_SLOTS
from clinic_agent.db.models import Appointment, AppointmentStatus

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::\d{2})?$")


def free_slots(session: Session, resource_id: str, day: date) -> list[str]:
    """Return the slots of *day* not held by a live appointment at *resource_id*."""
    occupied = set(
        session.scalars(
            select(Appointment.appointment_time).where(
                Appointment.resource_id == resource_id,
                Appointment.appointment_date == day,
                Appointment.status != AppointmentStatus.CANCELLED.value,
            )
        )
    )
    return [slot for slot in TIME_SLOTS if slot not in occupied]


def is_business_day(day: date) -> bool:
    return day.weekday() != CLOSED_WEEKDAY


def clinic_today() -> date:
    """Today's date in the clinic's time zone."""
    return datetime.now(ZoneInfo(CLINIC_TIMEZONE)).date()


def parse_date(value: str) -> date:
    """Parse a ``YYYY-MM-DD`` string.  Raises ``ValueError`` on anything else."""
    return date.fromisoformat(value.strip())


def normalize_time(value: str) -> str:
    """Normalize ``"9:00"``, ``"09:00"`` or ``"09:00:00"`` to ``"09:00"``.

    Raises ``ValueError`` for text that is not a time of day.
    """
    match = _TIME_RE.match(value.strip())
    if not match:
        raise ValueError(f"not a time of day: {value!r}")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"not a time of day: {value!r}")
    return f"{hour:02d}:{minute:02d}"
