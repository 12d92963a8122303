"""Tests for the booking tools and the tool dispatcher."""

from __future__ import annotations

import json
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from langchain_core.tools import tool

from clinic_agent.config import LOCATIONS, SERVICES, TIME_SLOTS
from clinic_agent.services.booking import ClosedDay, InvalidReference, SlotUnavailable
from clinic_agent.services.completion_client import ToolCall
from clinic_agent.tools.booking import (
    MAX_ALTERNATIVES,
    ToolDispatcher,
    build_booking_tools,
    describe_booking_error,
)

# ── Helpers ──────────────────────────────────────────────────────────


@pytest.fixture
def dispatcher(booking_service):
    return ToolDispatcher(build_booking_tools(booking_service))


def _call(name: str, call_id: str = "call_1", **arguments) -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=json.dumps(arguments))


def _booking_args(day, time="10:00", **overrides) -> dict:
    args = {
        "resource_id": "tepic",
        "service_id": "general",
        "date": day.isoformat(),
        "time": time,
        "patient_name": "Ana López",
        "patient_phone": "+52 311 555 0101",
        "patient_email": "ana@example.com",
    }
    args.update(overrides)
    return args


def _payload(result) -> dict:
    return json.loads(result.content)


# ── Tests: schemas ───────────────────────────────────────────────────


class TestToolSchemas:
    def test_exposes_both_tools(self, dispatcher):
        assert dispatcher.names == ["check_availability", "book_appointment"]
        assert [s["function"]["name"] for s in dispatcher.schemas] == dispatcher.names

    def test_schemas_are_function_tools(self, dispatcher):
        for schema in dispatcher.schemas:
            assert schema["type"] == "function"
            assert schema["function"]["description"]

    def test_ids_are_enumerated(self, dispatcher):
        book = next(s for s in dispatcher.schemas if s["function"]["name"] == "book_appointment")
        props = book["function"]["parameters"]["properties"]
        assert set(props["resource_id"]["enum"]) == set(LOCATIONS)
        assert set(props["service_id"]["enum"]) == set(SERVICES)

    def test_booking_requires_every_field(self, dispatcher):
        book = next(s for s in dispatcher.schemas if s["function"]["name"] == "book_appointment")
        assert set(book["function"]["parameters"]["required"]) == {
            "resource_id", "service_id", "date", "time",
            "patient_name", "patient_phone", "patient_email",
        }


# ── Tests: check_availability ────────────────────────────────────────


class TestCheckAvailability:
    def test_lists_free_slots(self, dispatcher, today):
        result = dispatcher.dispatch(
            _call("check_availability", resource_id="tepic", date=today.isoformat())
        )
        payload = _payload(result)
        assert result.ok
        assert payload["free_slots"] == list(TIME_SLOTS)
        assert "09:00" in payload["summary"]

    def test_excludes_booked_slot(self, dispatcher, booking_service, contact, today):
        booking_service.book("tepic", "general", today, "10:00", contact)
        payload = _payload(dispatcher.dispatch(
            _call("check_availability", resource_id="tepic", date=today.isoformat())
        ))
        assert "10:00" not in payload["free_slots"]

    def test_closed_day_points_to_next_open_day(self, dispatcher, today):
        sunday = today + timedelta(days=6)
        payload = _payload(dispatcher.dispatch(
            _call("check_availability", resource_id="tepic", date=sunday.isoformat())
        ))
        assert payload["ok"] is False
        assert "Monday 26 October 2026" in payload["summary"]

    def test_past_date(self, dispatcher, today):
        payload = _payload(dispatcher.dispatch(
            _call("check_availability", resource_id="tepic",
                  date=(today - timedelta(days=1)).isoformat())
        ))
        assert payload["ok"] is False
        assert "in the past" in payload["summary"]

    def test_unparsable_date_is_explained(self, dispatcher):
        payload = _payload(dispatcher.dispatch(
            _call("check_availability", resource_id="tepic", date="next tuesday")
        ))
        assert payload["ok"] is False
        assert "YYYY-MM-DD" in payload["summary"]


# ── Tests: book_appointment ──────────────────────────────────────────


class TestBookAppointment:
    def test_books(self, dispatcher, booking_service, today):
        result = dispatcher.dispatch(_call("book_appointment", **_booking_args(today)))
        payload = _payload(result)
        assert result.ok
        assert payload["status"] == "pending"
        assert payload["appointment_id"]
        assert "confirmation_token" not in payload
        assert "10:00" not in booking_service.free_slots("tepic", today)

    def test_taken_slot_lists_alternatives(self, dispatcher, booking_service, contact, today):
        booking_service.book("tepic", "general", today, "10:00", contact)
        result = dispatcher.dispatch(_call("book_appointment", **_booking_args(today)))
        payload = _payload(result)
        assert not result.ok
        assert payload["error"] == "slot_unavailable"
        assert "10:00" not in payload["free_slots"]
        assert "09:30" in payload["summary"]

    def test_closed_day(self, dispatcher, today):
        payload = _payload(dispatcher.dispatch(
            _call("book_appointment", **_booking_args(today + timedelta(days=6)))
        ))
        assert payload["error"] == "closed_day"

    def test_invalid_email(self, dispatcher, today):
        payload = _payload(dispatcher.dispatch(
            _call("book_appointment", **_booking_args(today, patient_email="nope"))
        ))
        assert payload["error"] == "invalid_contact"
        assert "Ask the patient" in payload["summary"]

    def test_unparsable_date(self, dispatcher, today):
        args = _booking_args(today)
        args["date"] = "soon"
        payload = _payload(dispatcher.dispatch(_call("book_appointment", **args)))
        assert payload["error"] == "invalid_date"


# ── Tests: dispatcher ────────────────────────────────────────────────


class TestDispatcher:
    def test_results_follow_call_order(self, dispatcher, today):
        calls = [
            _call("check_availability", "a", resource_id="tepic", date=today.isoformat()),
            _call("book_appointment", "b", **_booking_args(today, time="09:00")),
            _call("check_availability", "c", resource_id="tepic", date=today.isoformat()),
        ]
        results = dispatcher.dispatch_all(calls)

        assert [r.tool_call_id for r in results] == ["a", "b", "c"]
        assert "09:00" in _payload(results[0])["free_slots"]
        assert "09:00" not in _payload(results[2])["free_slots"]

    def test_failed_call_does_not_stop_the_others(self, dispatcher, today):
        calls = [
            _call("book_appointment", "a", **_booking_args(today, time="13:30")),
            _call("book_appointment", "b", **_booking_args(today, time="14:00")),
        ]
        first, second = dispatcher.dispatch_all(calls)
        assert not first.ok
        assert second.ok

    def test_unknown_tool(self, dispatcher):
        result = dispatcher.dispatch(_call("cancel_everything"))
        payload = _payload(result)
        assert payload["error"] == "unknown_tool"
        assert "check_availability" in payload["summary"]
        assert not result.fault

    @pytest.mark.parametrize("raw", ["{not json", "[1, 2]", '"text"'])
    def test_undecodable_arguments(self, dispatcher, raw):
        result = dispatcher.dispatch(ToolCall(id="x", name="check_availability", arguments=raw))
        assert _payload(result)["error"] == "invalid_arguments"
        assert not result.fault

    def test_unknown_location_id_is_a_validation_error(self, dispatcher, today):
        result = dispatcher.dispatch(
            _call("check_availability", resource_id="atlantis", date=today.isoformat())
        )
        payload = _payload(result)
        assert payload["error"] == "invalid_arguments"
        assert "resource_id" in payload["summary"]

    def test_missing_argument(self, dispatcher, today):
        args = _booking_args(today)
        del args["patient_phone"]
        payload = _payload(dispatcher.dispatch(_call("book_appointment", **args)))
        assert payload["error"] == "invalid_arguments"
        assert "patient_phone" in payload["summary"]

    def test_tool_message_shape(self, dispatcher, today):
        result = dispatcher.dispatch(
            _call("check_availability", "call_9", resource_id="tepic", date=today.isoformat())
        )
        message = result.to_message()
        assert message["role"] == "tool"
        assert message["tool_call_id"] == "call_9"
        assert json.loads(message["content"])["ok"] is True

    def test_internal_fault_is_reported_after_all_calls(self, today):
        service = MagicMock()
        service.today.return_value = today
        service.free_slots.return_value = ["09:00"]
        service.book.side_effect = RuntimeError("database is on fire")
        dispatcher = ToolDispatcher(build_booking_tools(service))

        calls = [
            _call("book_appointment", "a", **_booking_args(today)),
            _call("check_availability", "b", resource_id="tepic", date=today.isoformat()),
        ]
        results = dispatcher.dispatch_all(calls)

        assert [r.fault for r in results] == [True, False]
        assert _payload(results[0])["error"] == "internal_error"
        assert results[1].ok
        assert "database is on fire" not in results[0].content
        service.free_slots.assert_called_once()

    def test_booking_survives_a_later_fault(self, booking_service, today):
        @tool
        def send_reminder(appointment_id: str) -> dict:
            """Send a reminder for an appointment."""
            raise RuntimeError("mail relay down")

        dispatcher = ToolDispatcher(build_booking_tools(booking_service) + [send_reminder])
        calls = [
            _call("book_appointment", "a", **_booking_args(today)),
            _call("send_reminder", "b", appointment_id="x"),
        ]
        results = dispatcher.dispatch_all(calls)

        assert [r.tool_call_id for r in results] == ["a", "b"]
        assert results[0].ok and not results[0].fault
        assert results[1].fault
        assert _payload(results[1])["error"] == "internal_error"
        assert "10:00" not in booking_service.free_slots("tepic", today)


# ── Tests: error descriptions ────────────────────────────────────────


class TestDescribeBookingError:
    def test_slot_unavailable_caps_alternatives(self):
        text = describe_booking_error(SlotUnavailable("10:00", list(TIME_SLOTS)))
        for slot in TIME_SLOTS[:MAX_ALTERNATIVES]:
            assert slot in text
        assert TIME_SLOTS[-1] not in text

    def test_fully_booked_day(self):
        text = describe_booking_error(SlotUnavailable("10:00", []))
        assert "different date" in text

    def test_closed_day_suggests_monday(self, today):
        text = describe_booking_error(ClosedDay(today + timedelta(days=6)))
        assert "Sundays" in text
        assert "Monday 26 October 2026" in text

    def test_invalid_reference_lists_valid_ids(self):
        text = describe_booking_error(InvalidReference("service_id", "tattoo"))
        for service_id in SERVICES:
            assert service_id in text
