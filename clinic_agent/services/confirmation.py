"""Token-keyed confirm / cancel transitions for an existing appointment.

The confirmation token is the only credential on the public action link, so
every lookup goes through it and only the matching appointment's own data
is ever returned.

Transitions::

    pending   ──confirm──▶ confirmed
    pending   ──cancel───▶ cancelled
    confirmed ──cancel───▶ cancelled

``cancelled`` and ``completed`` are terminal, and confirming an already
confirmed appointment is a no-op: those clicks return an informational
outcome and change nothing, so repeated clicks on the same link are
harmless.
"""

from __future__ import annotations

import enum
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime

from sqlalchemy import select, update

from clinic_agent.db.models import Appointment, AppointmentStatus
from clinic_agent.db.session import SessionFactory
from clinic_agent.services.metrics import metrics

logger = logging.getLogger(__name__)

# token_urlsafe output; anything else is rejected without touching the store
_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]{16,128}$")


class ConfirmationAction(str, enum.Enum):
    CONFIRM = "confirm"
    CANCEL = "cancel"


class ActionOutcome(str, enum.Enum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    ALREADY_CONFIRMED = "already_confirmed"
    ALREADY_CANCELLED = "already_cancelled"
    ALREADY_COMPLETED = "already_completed"

    @property
    def changed(self) -> bool:
        return self in (ActionOutcome.CONFIRMED, ActionOutcome.CANCELLED)


_INFORMATIONAL_OUTCOMES = {
    AppointmentStatus.CONFIRMED.value: ActionOutcome.ALREADY_CONFIRMED,
    AppointmentStatus.CANCELLED.value: ActionOutcome.ALREADY_CANCELLED,
    AppointmentStatus.COMPLETED.value: ActionOutcome.ALREADY_COMPLETED,
}

# Statuses each action may move an appointment out of
_MOVABLE_FROM = {
    ConfirmationAction.CONFIRM: (AppointmentStatus.PENDING.value,),
    ConfirmationAction.CANCEL: (
        AppointmentStatus.PENDING.value,
        AppointmentStatus.CONFIRMED.value,
    ),
}


class ActionError(Exception):
    """Base class for rejected confirmation-link requests."""


class AppointmentNotFound(ActionError):
    """No appointment carries this token (or the token is malformed)."""


class InvalidAction(ActionError):
    def __init__(self, action: str | None):
        self.action = action
        super().__init__(f"Unsupported action: {action!r}")


@dataclass(frozen=True)
class ActionResult:
    outcome: ActionOutcome
    appointment_id: str
    resource_id: str
    service_id: str
    appointment_date: date
    appointment_time: str


def _result(outcome: ActionOutcome, appointment: Appointment) -> ActionResult:
    return ActionResult(
        outcome=outcome,
        appointment_id=appointment.id,
        resource_id=appointment.resource_id,
        service_id=appointment.service_id,
        appointment_date=appointment.appointment_date,
        appointment_time=appointment.appointment_time,
    )


def parse_action(action: str | None) -> ConfirmationAction:
    try:
        return ConfirmationAction((action or "").strip().lower())
    except ValueError:
        raise InvalidAction(action) from None


class ConfirmationService:
    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        clock: Callable[[], datetime] | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or (lambda: datetime.now(UTC))

    def act(self, token: str | None, action: str | None) -> ActionResult:
        """Apply *action* to the appointment holding *token*.

        Raises:
            InvalidAction: *action* is not ``confirm`` or ``cancel``.
            AppointmentNotFound: the token is malformed or unknown.
        """
        parsed = parse_action(action)
        if not token or not _TOKEN_RE.match(token):
            raise AppointmentNotFound()

        with self._session_factory() as session:
            appointment = session.scalar(
                select(Appointment).where(Appointment.confirmation_token == token)
            )
            if appointment is None:
                raise AppointmentNotFound()

            movable = _MOVABLE_FROM[parsed]
            if appointment.status not in movable:
                outcome = _INFORMATIONAL_OUTCOMES.get(
                    appointment.status, ActionOutcome.ALREADY_CANCELLED,
                )
                return self._finish(_result(outcome, appointment))

            if parsed is ConfirmationAction.CONFIRM:
                target = AppointmentStatus.CONFIRMED
                values = {"status": target.value, "confirmed_at": self._clock()}
            else:
                target = AppointmentStatus.CANCELLED
                values = {"status": target.value}

            # Conditional write: only a row still in a movable status changes.
            # A concurrent request that committed first leaves rowcount == 0.
            applied = session.execute(
                update(Appointment)
                .where(
                    Appointment.id == appointment.id,
                    Appointment.status.in_(movable),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            ).rowcount
            session.commit()

            if not applied:
                current = session.scalar(
                    select(Appointment.status).where(Appointment.id == appointment.id)
                )
                logger.info(
                    "Appointment %s changed concurrently (now %s)", appointment.id, current,
                )
                outcome = _INFORMATIONAL_OUTCOMES.get(current, ActionOutcome.ALREADY_CANCELLED)
                return self._finish(_result(outcome, appointment))

            outcome = (
                ActionOutcome.CONFIRMED
                if target is AppointmentStatus.CONFIRMED
                else ActionOutcome.CANCELLED
            )
            return self._finish(_result(outcome, appointment))

    @staticmethod
    def _finish(result: ActionResult) -> ActionResult:
        metrics.record_event("Confirmation/Outcome", result.outcome.value)
        logger.info("Appointment %s: %s", result.appointment_id, result.outcome.value)
        return result
