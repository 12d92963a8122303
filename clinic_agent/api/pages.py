"""Self-contained HTML pages for the public confirmation link."""

from __future__ import annotations

import html
from datetime import UTC, datetime
from typing import Literal

from clinic_agent.config import CLINIC_NAME, LOCATIONS, SERVICES
from clinic_agent.services.confirmation import ActionOutcome, ActionResult

PageKind = Literal["success", "cancelled", "error", "info"]

_STYLES = {
    "success": ("#dcfce7", "&#9989;"),
    "cancelled": ("#fef3c7", "&#128197;"),
    "error": ("#fee2e2", "&#10060;"),
    "info": ("#dbeafe", "&#8505;&#65039;"),
}

INVALID_LINK_TITLE = "Invalid link"
INVALID_LINK_MESSAGE = "This link is invalid or has expired."

_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <meta name="robots" content="noindex">
  <title>{title} - {clinic}</title>
  <style>
    body {{ font-family: 'Segoe UI', Tahoma, sans-serif; background: #f1f5f9;
           min-height: 100vh; display: flex; align-items: center;
           justify-content: center; margin: 0; padding: 20px; }}
    .card {{ background: white; border-radius: 24px; max-width: 480px; width: 100%;
            box-shadow: 0 25px 50px -12px rgba(0, 0, 0, 0.15); overflow: hidden; }}
    .header {{ background: #0284c7; color: white; padding: 24px; text-align: center; }}
    .content {{ padding: 32px; text-align: center; }}
    .icon {{ width: 96px; height: 96px; border-radius: 50%; background: {bg};
            margin: 0 auto 24px; font-size: 44px; line-height: 96px; }}
    .message {{ color: #475569; line-height: 1.6; }}
    .footer {{ background: #f8fafc; color: #94a3b8; font-size: 13px;
              padding: 16px; text-align: center; }}
  </style>
</head>
<body>
  <div class="card">
    <div class="header"><h1>{clinic}</h1></div>
    <div class="content">
      <div class="icon">{icon}</div>
      <h2>{title}</h2>
      <p class="message">{message}</p>
    </div>
    <div class="footer">&copy; {year} {clinic}</div>
  </div>
</body>
</html>
"""


def render_page(kind: PageKind, title: str, message: str) -> str:
    """Render a standalone page.  *title* and *message* are escaped."""
    bg, icon = _STYLES[kind]
    return _PAGE.format(
        title=html.escape(title),
        message=html.escape(message),
        clinic=html.escape(CLINIC_NAME),
        bg=bg,
        icon=icon,
        year=datetime.now(UTC).year,
    )


def render_invalid_link() -> str:
    return render_page("error", INVALID_LINK_TITLE, INVALID_LINK_MESSAGE)


def render_action_page(result: ActionResult) -> str:
    day = result.appointment_date.strftime("%A %d %B %Y")
    when = f"{day} at {result.appointment_time}"
    location = LOCATIONS.get(result.resource_id, result.resource_id)
    service = SERVICES.get(result.service_id, result.service_id)

    if result.outcome is ActionOutcome.CONFIRMED:
        return render_page(
            "success",
            "Appointment confirmed",
            f"Your {service} appointment on {when} at {location} is confirmed. See you soon!",
        )
    if result.outcome is ActionOutcome.CANCELLED:
        return render_page(
            "cancelled",
            "Appointment cancelled",
            f"Your appointment on {when} has been cancelled. "
            "You can book a new one on our website at any time.",
        )
    if result.outcome is ActionOutcome.ALREADY_CONFIRMED:
        return render_page("info", "Already confirmed", "This appointment was already confirmed.")
    if result.outcome is ActionOutcome.ALREADY_CANCELLED:
        return render_page("info", "Already cancelled", "This appointment was already cancelled.")
    return render_page("info", "Appointment completed", "This appointment has already taken place.")
