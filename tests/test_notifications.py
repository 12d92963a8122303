"""Tests for the confirmation e-mail notifier."""

from __future__ import annotations

import json
from datetime import date

import httpx
import pytest

from clinic_agent.db.models import Appointment
from clinic_agent.services.notifications import (
    EmailNotifier,
    action_url,
    build_confirmation_email,
)

# ── Helpers ──────────────────────────────────────────────────────────


@pytest.fixture
def appointment():
    return Appointment(
        id="appt-1",
        confirmation_token="tok_abcdefghijklmnop",
        resource_id="tepic",
        service_id="blanqueamiento",
        appointment_date=date(2026, 10, 20),
        appointment_time="10:00",
        patient_name="Ana <b>López</b>",
        patient_phone="555",
        patient_email="ana@example.com",
        status="pending",
    )


def _notifier(handler, api_key: str | None = "re_test_key") -> EmailNotifier:
    http = httpx.Client(base_url="https://resend.test", transport=httpx.MockTransport(handler))
    return EmailNotifier(
        api_key, sender="Clinic <no-reply@clinic.test>",
        public_base_url="https://clinic.test/", http_client=http,
    )


# ── Tests: message building ──────────────────────────────────────────


class TestActionUrl:
    def test_builds_query(self):
        url = action_url("https://clinic.test", "tok_123", "cancel")
        assert url == "https://clinic.test/api/appointment-action?token=tok_123&action=cancel"


class TestBuildConfirmationEmail:
    def test_contains_details_and_both_links(self, appointment):
        message = build_confirmation_email(appointment, "https://clinic.test")
        assert "Blanqueamiento" in message["text"]
        assert "Matriz Tepic" in message["text"]
        assert "10:00" in message["text"]
        for action in ("confirm", "cancel"):
            link = action_url("https://clinic.test", appointment.confirmation_token, action)
            assert link in message["text"]

    def test_html_escapes_patient_data(self, appointment):
        message = build_confirmation_email(appointment, "https://clinic.test")
        assert "<b>López</b>" not in message["html"]
        assert "&lt;b&gt;" in message["html"]


# ── Tests: delivery ──────────────────────────────────────────────────


class TestEmailNotifier:
    def test_posts_to_resend(self, appointment):
        requests: list[httpx.Request] = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"id": "email_1"})

        notifier = _notifier(handler)
        assert notifier.send_booking_confirmation(appointment).result(timeout=5) is True
        notifier.close()

        request = requests[0]
        assert request.url.path == "/emails"
        assert request.headers["Authorization"] == "Bearer re_test_key"
        body = json.loads(request.content)
        assert body["to"] == ["ana@example.com"]
        assert body["from"] == "Clinic <no-reply@clinic.test>"
        assert "https://clinic.test/api/appointment-action?" in body["text"]

    def test_provider_error_is_swallowed(self, appointment):
        notifier = _notifier(lambda request: httpx.Response(500, json={"message": "oops"}))
        assert notifier.send_booking_confirmation(appointment).result(timeout=5) is False
        notifier.close()

    def test_connection_error_is_swallowed(self, appointment):
        def handler(request):
            raise httpx.ConnectError("no route to host")

        notifier = _notifier(handler)
        assert notifier.send_booking_confirmation(appointment).result(timeout=5) is False
        notifier.close()

    def test_disabled_without_api_key(self, appointment):
        calls = []
        notifier = _notifier(lambda request: calls.append(request), api_key="")

        assert not notifier.enabled
        assert notifier.send_booking_confirmation(appointment).result(timeout=5) is False
        assert calls == []
        notifier.close()
