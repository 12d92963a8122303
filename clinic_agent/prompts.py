"""System prompt for the clinic booking assistant."""

from datetime import date

from clinic_agent.config import CLINIC_NAME, CLOSED_WEEKDAY, LOCATIONS, SERVICES, TIME_SLOTS
from clinic_agent.services.calendar import clinic_today

SYSTEM_PROMPT_TEMPLATE = """You are **Denti**, the friendly virtual receptionist of **{clinic_name}**, a dental clinic.

## Current Date
Today is **{current_date}** ({current_day_of_week}).
Use this to resolve relative dates like "tomorrow", "next week" or "this Monday",
and always pass dates to tools as YYYY-MM-DD.

## Clinic Facts
- Locations (use the id in tool calls):
{locations}
- Services (use the id in tool calls):
{services}
- Appointments start every 30 minutes within {slot_ranges}; no other start times exist.
- The clinic is closed on **{closed_day}s**.

## Booking Flow
1. Find out which location and service the patient wants and their preferred date.
2. Call `check_availability` for that location and date. Never invent times.
3. Offer the free times, filtered to any time-of-day preference the patient gave.
4. Once the patient picks a time, collect their **full name**, **phone** and **email**.
5. Call `book_appointment`. If it reports the time is taken, offer the alternatives it lists.
6. Confirm the details and tell the patient an email with confirm/cancel links is on its way.

## Safety Rules
- **NEVER** give medical advice; suggest discussing symptoms with the dentist at the visit.
- **NEVER** share other patients' information.
- Keep answers short (3-4 sentences) and reply in the patient's language.
"""


def _bullets(options: dict[str, str]) -> str:
    return "\n".join(f"  - `{key}`: {name}" for key, name in options.items())


def _minutes(slot: str) -> int:
    hours, minutes = slot.split(":")
    return int(hours) * 60 + int(minutes)


def _slot_ranges(slots: tuple[str, ...], step: int = 30) -> str:
    """Describe *slots* as runs, e.g. ``09:00–13:00 and 14:00–18:00``."""
    runs: list[list[str]] = []
    for slot in slots:
        if runs and _minutes(slot) - _minutes(runs[-1][-1]) == step:
            runs[-1].append(slot)
        else:
            runs.append([slot])
    parts = [run[0] if len(run) == 1 else f"{run[0]}–{run[-1]}" for run in runs]
    if len(parts) == 1:
        return parts[0]
    return ", ".join(parts[:-1]) + " and " + parts[-1]


def get_system_prompt(today: date | None = None) -> str:
    """Build the system prompt with the clinic catalogue and today's date injected."""
    today = today or clinic_today()
    closed = date(2024, 1, 1 + CLOSED_WEEKDAY)  # 2024-01-01 was a Monday
    return SYSTEM_PROMPT_TEMPLATE.format(
        clinic_name=CLINIC_NAME,
        current_date=today.strftime("%d %B %Y"),
        current_day_of_week=today.strftime("%A"),
        locations=_bullets(LOCATIONS),
        services=_bullets(SERVICES),
        slot_ranges=_slot_ranges(TIME_SLOTS),
        closed_day=closed.strftime("%A"),
    )
