"""Best-effort appointment e-mails through the Resend HTTP API.

Delivery runs on a small background pool so a booking never waits on the
mail provider.  Every failure is logged and counted; nothing is raised back
to the booking caller.
"""

from __future__ import annotations

import html
import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any
from urllib.parse import urlencode

import httpx

from clinic_agent.config import (
    CLINIC_NAME,
    EMAIL_FROM,
    LOCATIONS,
    PUBLIC_BASE_URL,
    RESEND_API_KEY,
    RESEND_BASE_URL,
    SERVICES,
)
from clinic_agent.db.models import Appointment
from clinic_agent.services.metrics import metrics

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 10.0


def action_url(base_url: str, token: str, action: str) -> str:
    """Public confirm/cancel link for *token*."""
    query = urlencode({"token": token, "action": action})
    return f"{base_url}/api/appointment-action?{query}"


def build_confirmation_email(appointment: Appointment, base_url: str) -> dict[str, str]:
    """Return ``subject``, ``html`` and ``text`` bodies for a new booking."""
    location = LOCATIONS.get(appointment.resource_id, appointment.resource_id)
    service = SERVICES.get(appointment.service_id, appointment.service_id)
    day = appointment.appointment_date.strftime("%A %d %B %Y")
    confirm = action_url(base_url, appointment.confirmation_token, "confirm")
    cancel = action_url(base_url, appointment.confirmation_token, "cancel")

    text = (
        f"Hello {appointment.patient_name},\n\n"
        f"Your appointment has been registered.\n\n"
        f"  Location: {location}\n"
        f"  Service:  {service}\n"
        f"  Date:     {day}\n"
        f"  Time:     {appointment.appointment_time}\n\n"
        f"Confirm your attendance: {confirm}\n"
        f"Cancel the appointment:  {cancel}\n\n"
        f"Please arrive 10 minutes early.\n{CLINIC_NAME}"
    )

    e = html.escape
    body = f"""<!DOCTYPE html>
<html><head><meta charset="utf-8"></head>
<body style="font-family: sans-serif; background: #f8fafc; padding: 20px;">
  <div style="max-width: 600px; margin: 0 auto; background: white; border-radius: 16px; padding: 32px;">
    <h1 style="color: #0284c7;">{e(CLINIC_NAME)}</h1>
    <p>Hello <strong>{e(appointment.patient_name)}</strong>, your appointment has been registered.</p>
    <ul>
      <li><strong>Location:</strong> {e(location)}</li>
      <li><strong>Service:</strong> {e(service)}</li>
      <li><strong>Date:</strong> {e(day)}</li>
      <li><strong>Time:</strong> {e(appointment.appointment_time)}</li>
    </ul>
    <p>
      <a href="{e(confirm)}" style="background: #16a34a; color: white; padding: 12px 24px; border-radius: 24px; text-decoration: none;">Confirm attendance</a>
      <a href="{e(cancel)}" style="color: #64748b; padding: 12px 24px;">Cancel appointment</a>
    </p>
    <p style="color: #92400e;">Please arrive 10 minutes early.</p>
  </div>
</body></html>"""

    return {
        "subject": f"Appointment confirmation - {CLINIC_NAME}",
        "html": body,
        "text": text,
    }


class EmailNotifier:
    """Sends booking confirmations via Resend on a background thread pool."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        sender: str = EMAIL_FROM,
        public_base_url: str = PUBLIC_BASE_URL,
        base_url: str = RESEND_BASE_URL,
        http_client: httpx.Client | None = None,
        max_workers: int = 2,
    ):
        self._api_key = api_key if api_key is not None else RESEND_API_KEY
        self._sender = sender
        self._public_base_url = public_base_url.rstrip("/")
        self._client = http_client or httpx.Client(
            base_url=base_url, timeout=REQUEST_TIMEOUT_SECONDS,
        )
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="email",
        )

    @property
    def enabled(self) -> bool:
        return bool(self._api_key)

    def send_booking_confirmation(self, appointment: Appointment) -> Future:
        """Queue the confirmation e-mail for *appointment* and return at once."""
        message = build_confirmation_email(appointment, self._public_base_url)
        return self._executor.submit(
            self._deliver, appointment.patient_email, message, appointment.id,
        )

    def _deliver(self, to: str, message: dict[str, str], appointment_id: str) -> bool:
        if not self.enabled:
            logger.info(
                "E-mail delivery disabled (no RESEND_API_KEY); skipping appointment %s",
                appointment_id,
            )
            return False

        payload: dict[str, Any] = {
            "from": self._sender,
            "to": [to],
            "subject": message["subject"],
            "html": message["html"],
            "text": message["text"],
        }
        t0 = time.perf_counter()
        try:
            response = self._client.post(
                "/emails",
                json=payload,
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "resend", "send_email", error_type=type(exc).__name__, latency_ms=elapsed,
            )
            logger.error(
                "Confirmation e-mail for appointment %s failed: %s", appointment_id, exc,
            )
            return False

        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_success("resend", "send_email", latency_ms=elapsed)
        logger.info("Confirmation e-mail sent for appointment %s", appointment_id)
        return True

    def close(self) -> None:
        self._executor.shutdown(wait=False)
        self._client.close()
