"""LangChain tools for the booking assistant, and the dispatcher that runs them.

Each tool wraps a ``BookingService`` call and returns a small dict with a
human-readable ``summary``; the dispatcher serializes it into a ``tool``
turn.  Booking rejections are turned into retry hints (with concrete
alternatives) rather than errors, because the reader of the result is the
language model, which then explains them to the patient.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Literal

from langchain_core.tools import BaseTool, tool
from langchain_core.utils.function_calling import convert_to_openai_tool
from pydantic import BaseModel, Field, ValidationError

from clinic_agent.config import CLOSED_WEEKDAY, LOCATIONS, SERVICES
from clinic_agent.services import calendar
from clinic_agent.services.booking import (
    BookingError,
    BookingService,
    ClosedDay,
    InvalidContact,
    InvalidReference,
    PastDate,
    PatientContact,
    SlotUnavailable,
)
from clinic_agent.services.completion_client import ToolCall

logger = logging.getLogger(__name__)

# Alternatives offered after a rejected slot
MAX_ALTERNATIVES = 8

ResourceId = Literal[tuple(LOCATIONS)]  # type: ignore[valid-type]
ServiceId = Literal[tuple(SERVICES)]  # type: ignore[valid-type]


# ── Argument schemas ─────────────────────────────────────────────────


class CheckAvailabilityArgs(BaseModel):
    resource_id: ResourceId = Field(description="Clinic location id.")
    date: str = Field(description='Date in YYYY-MM-DD format (e.g. "2026-10-20").')


class BookAppointmentArgs(BaseModel):
    resource_id: ResourceId = Field(description="Clinic location id.")
    service_id: ServiceId = Field(description="Dental service id.")
    date: str = Field(description="Appointment date in YYYY-MM-DD format.")
    time: str = Field(
        description='Start time as HH:MM (e.g. "10:30"); one of the free slots '
        "returned by check_availability.",
    )
    patient_name: str = Field(description="The patient's full name.")
    patient_phone: str = Field(description="The patient's phone number.")
    patient_email: str = Field(description="The patient's email address.")


# ── Rendering helpers ────────────────────────────────────────────────


def _format_day(day) -> str:
    return day.strftime("%A %d %B %Y")


def _location_name(resource_id: str) -> str:
    return LOCATIONS.get(resource_id, resource_id)


def _next_business_day(day):
    candidate = day + timedelta(days=1)
    while candidate.weekday() == CLOSED_WEEKDAY:
        candidate += timedelta(days=1)
    return candidate


def describe_booking_error(error: BookingError) -> str:
    """Turn a booking rejection into guidance the model can act on."""
    if isinstance(error, InvalidReference):
        options = LOCATIONS if error.field == "resource_id" else SERVICES
        listing = ", ".join(f"{key} ({name})" for key, name in options.items())
        kind = "location" if error.field == "resource_id" else "service"
        return f'"{error.value}" is not a known {kind}. Valid {kind}s: {listing}.'
    if isinstance(error, PastDate):
        return (
            f"{_format_day(error.requested)} is in the past (today is "
            f"{_format_day(error.today)}). Ask the patient for a future date."
        )
    if isinstance(error, ClosedDay):
        return (
            f"The clinic is closed on {error.requested.strftime('%A')}s. "
            f"Suggest another day, for example {_format_day(_next_business_day(error.requested))}."
        )
    if isinstance(error, SlotUnavailable):
        if not error.free_slots:
            return (
                f"{error.requested_time} is not available and there are no free times "
                "left that day. Suggest a different date."
            )
        alternatives = ", ".join(error.free_slots[:MAX_ALTERNATIVES])
        return (
            f"{error.requested_time} is not available. Free times that day: "
            f"{alternatives}. Offer the patient one of these."
        )
    if isinstance(error, InvalidContact):
        return f"{error} Ask the patient to provide it before booking."
    return str(error)


# ── Tools ────────────────────────────────────────────────────────────


def build_booking_tools(service: BookingService) -> list[BaseTool]:
    """Create the ``check_availability`` and ``book_appointment`` tools bound to *service*."""

    @tool("check_availability", args_schema=CheckAvailabilityArgs)
    def check_availability(resource_id: str, date: str) -> dict[str, Any]:
        """Check which appointment times are still free at a clinic location on a date."""
        try:
            day = calendar.parse_date(date)
        except ValueError:
            return {
                "ok": False,
                "free_slots": [],
                "summary": f'"{date}" is not a date in YYYY-MM-DD format. '
                f"Today is {service.today().isoformat()}.",
            }

        location = _location_name(resource_id)
        today = service.today()
        if day < today:
            return {
                "ok": False,
                "free_slots": [],
                "summary": f"{_format_day(day)} is in the past (today is {_format_day(today)}).",
            }
        if not calendar.is_business_day(day):
            return {
                "ok": False,
                "free_slots": [],
                "summary": f"{location} is closed on {day.strftime('%A')}s. "
                f"The next open day is {_format_day(_next_business_day(day))}.",
            }

        slots = service.free_slots(resource_id, day)
        if not slots:
            summary = f"{location} is fully booked on {_format_day(day)}. Suggest another date."
        else:
            summary = (
                f"Free times at {location} on {_format_day(day)}: {', '.join(slots)}."
            )
        return {
            "ok": True,
            "resource_id": resource_id,
            "date": day.isoformat(),
            "free_slots": slots,
            "summary": summary,
        }

    @tool("book_appointment", args_schema=BookAppointmentArgs)
    def book_appointment(
        resource_id: str,
        service_id: str,
        date: str,
        time: str,
        patient_name: str,
        patient_phone: str,
        patient_email: str,
    ) -> dict[str, Any]:
        """Book an appointment once the patient has chosen a location, service, date,
        free time and given their name, phone and email."""
        try:
            day = calendar.parse_date(date)
        except ValueError:
            return {
                "ok": False,
                "error": "invalid_date",
                "summary": f'"{date}" is not a date in YYYY-MM-DD format.',
            }

        contact = PatientContact(name=patient_name, phone=patient_phone, email=patient_email)
        try:
            appointment = service.book(resource_id, service_id, day, time, contact)
        except BookingError as exc:
            result: dict[str, Any] = {
                "ok": False,
                "error": exc.code,
                "summary": describe_booking_error(exc),
            }
            if isinstance(exc, SlotUnavailable):
                result["free_slots"] = exc.free_slots
            return result

        return {
            "ok": True,
            "appointment_id": appointment.id,
            "status": appointment.status,
            "summary": (
                f"Appointment booked for {appointment.patient_name}: "
                f"{SERVICES.get(service_id, service_id)} at {_location_name(resource_id)} on "
                f"{_format_day(appointment.appointment_date)} at {appointment.appointment_time}. "
                f"Status: {appointment.status}. A confirmation email with confirm and "
                f"cancel links is on its way to {appointment.patient_email}."
            ),
        }

    return [check_availability, book_appointment]


def tool_schemas(tools: list[BaseTool]) -> list[dict[str, Any]]:
    """Render *tools* in OpenAI function-calling format."""
    return [convert_to_openai_tool(t) for t in tools]


# ── Dispatcher ───────────────────────────────────────────────────────


@dataclass
class ToolResult:
    tool_call_id: str
    name: str
    content: str
    ok: bool
    fault: bool = False

    def to_message(self) -> dict[str, Any]:
        return {"role": "tool", "tool_call_id": self.tool_call_id, "content": self.content}


def _validation_summary(exc: ValidationError) -> str:
    problems = []
    for err in exc.errors():
        where = ".".join(str(p) for p in err.get("loc", ())) or "arguments"
        problems.append(f"{where}: {err.get('msg', 'invalid')}")
    return "Invalid arguments — " + "; ".join(problems) + ". Fix them and call the tool again."


class ToolDispatcher:
    """Static dispatch table from tool name to tool."""

    def __init__(self, tools: list[BaseTool]):
        self._tools = {t.name: t for t in tools}
        self._schemas = tool_schemas(tools)

    @property
    def schemas(self) -> list[dict[str, Any]]:
        return self._schemas

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def _reply(self, call: ToolCall, payload: dict[str, Any], *, fault: bool = False) -> ToolResult:
        return ToolResult(
            tool_call_id=call.id,
            name=call.name,
            content=json.dumps(payload, ensure_ascii=False, default=str),
            ok=bool(payload.get("ok")),
            fault=fault,
        )

    def dispatch(self, call: ToolCall) -> ToolResult:
        """Run one tool call.  Problems with the call itself become text."""
        target = self._tools.get(call.name)
        if target is None:
            logger.warning("Model requested unknown tool %r", call.name)
            return self._reply(call, {
                "ok": False,
                "error": "unknown_tool",
                "summary": f'There is no tool named "{call.name}". '
                f"Available tools: {', '.join(self._tools)}.",
            })

        try:
            arguments = json.loads(call.arguments or "{}")
        except json.JSONDecodeError:
            arguments = None
        if not isinstance(arguments, dict):
            logger.warning("Undecodable arguments for %s: %r", call.name, call.arguments)
            return self._reply(call, {
                "ok": False,
                "error": "invalid_arguments",
                "summary": "The tool arguments were not a valid JSON object. Call the tool again.",
            })

        try:
            payload = target.invoke(arguments)
        except ValidationError as exc:
            logger.info("Rejected %s arguments: %s", call.name, exc.errors())
            return self._reply(call, {
                "ok": False,
                "error": "invalid_arguments",
                "summary": _validation_summary(exc),
            })
        except Exception:
            logger.exception("Tool %s failed", call.name)
            return self._reply(call, {
                "ok": False,
                "error": "internal_error",
                "summary": "The booking system had an internal problem.",
            }, fault=True)

        logger.debug("Tool %s -> ok=%s", call.name, payload.get("ok"))
        return self._reply(call, payload)

    def dispatch_all(self, calls: list[ToolCall]) -> list[ToolResult]:
        """Run every call in order; one failing call never stops the others.

        A call that hit an internal fault comes back as an ``internal_error``
        tool turn alongside the other results, since an earlier call in the
        batch may already have booked an appointment.
        """
        results = [self.dispatch(call) for call in calls]
        faulted = [r.name for r in results if r.fault]
        if faulted:
            logger.warning(
                "%d of %d tool call(s) hit an internal fault: %s",
                len(faulted), len(results), ", ".join(faulted),
            )
        return results
