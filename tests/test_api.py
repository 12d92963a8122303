"""Tests for the FastAPI endpoints."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from clinic_agent.agent import RelayStream
from clinic_agent.api.pages import INVALID_LINK_MESSAGE
from clinic_agent.server import app
from clinic_agent.services.completion_errors import (
    QuotaExceededError,
    RateLimitedError,
    ServiceUnavailableError,
)
from clinic_agent.services.confirmation import ConfirmationService
from clinic_agent.services.rate_limit import SlidingWindowLimiter

# ── Fakes ────────────────────────────────────────────────────────────


class FakeUpstream:
    def __init__(self, texts: list[str]):
        self._texts = texts
        self.closed = False

    async def frames(self):
        for text in self._texts:
            yield {"choices": [{"delta": {"content": text}}]}

    async def aclose(self):
        self.closed = True


def _events(body: str) -> list[str]:
    return [block[len("data: "):] for block in body.split("\n\n") if block]


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture
def mock_agent():
    """Create a mock agent and attach it to app state (mirrors the lifespan)."""
    agent = MagicMock()
    agent.prepare = AsyncMock(
        side_effect=lambda messages: RelayStream(FakeUpstream(["¡Hola! ", "Soy Denti."]))
    )
    app.state.agent = agent
    yield agent
    app.state.agent = None


@pytest.fixture
def confirmation(session_factory):
    app.state.confirmation_service = ConfirmationService(session_factory)
    app.state.action_limiter = SlidingWindowLimiter(limit=5, window_seconds=60)
    yield app.state.confirmation_service
    app.state.confirmation_service = None
    app.state.action_limiter = None


@pytest.fixture
def client(mock_agent, confirmation):
    """FastAPI test client with the mock components wired up."""
    return TestClient(app)


@pytest.fixture
def appointment(booking_service, contact, today):
    return booking_service.book("tepic", "general", today, "10:00", contact)


# ── Tests: health / root ─────────────────────────────────────────────


class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["service"] == "clinic-booking-agent"

    def test_root_lists_docs(self, client):
        data = client.get("/").json()
        assert data["health"] == "/api/health"


# ── Tests: chat ──────────────────────────────────────────────────────


class TestChatEndpoint:
    def test_streams_server_sent_events(self, client, mock_agent):
        response = client.post(
            "/api/chat",
            json={"messages": [{"role": "user", "content": "Hola"}]},
        )
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")

        events = _events(response.text)
        assert events[-1] == "[DONE]"
        texts = [json.loads(e)["choices"][0]["delta"]["content"] for e in events[:-1]]
        assert "".join(texts) == "¡Hola! Soy Denti."

    def test_passes_full_history(self, client, mock_agent):
        messages = [
            {"role": "user", "content": "Hola"},
            {"role": "assistant", "content": "¿En qué puedo ayudarte?"},
            {"role": "user", "content": "Quiero una cita"},
        ]
        client.post("/api/chat", json={"messages": messages})
        assert mock_agent.prepare.await_args.args[0] == messages

    @pytest.mark.parametrize(
        ("error", "status"),
        [
            (RateLimitedError("429 from gateway"), 429),
            (QuotaExceededError("402 from gateway"), 402),
            (ServiceUnavailableError("gateway timed out"), 503),
        ],
    )
    def test_gateway_errors_map_to_status(self, client, mock_agent, error, status):
        mock_agent.prepare.side_effect = error
        response = client.post("/api/chat", json={"messages": [{"role": "user", "content": "Hi"}]})
        assert response.status_code == status
        assert response.json() == {"error": error.public_message}

    def test_internal_error_does_not_leak(self, client, mock_agent):
        mock_agent.prepare.side_effect = RuntimeError("LLM exploded")
        response = client.post("/api/chat", json={"messages": [{"role": "user", "content": "Hi"}]})
        assert response.status_code == 500
        assert "LLM exploded" not in response.text
        assert "error" in response.json()

    def test_rejects_empty_conversation(self, client):
        response = client.post("/api/chat", json={"messages": []})
        assert response.status_code == 422

    def test_rejects_unknown_role(self, client):
        response = client.post(
            "/api/chat", json={"messages": [{"role": "tool", "content": "{}"}]},
        )
        assert response.status_code == 422

    def test_rejects_oversized_turn(self, client):
        response = client.post(
            "/api/chat", json={"messages": [{"role": "user", "content": "x" * 4001}]},
        )
        assert response.status_code == 422

    def test_request_id_is_echoed(self, client):
        response = client.post(
            "/api/chat",
            json={"messages": [{"role": "user", "content": "Hola"}]},
            headers={"X-Request-ID": "req-123"},
        )
        assert response.headers["X-Request-ID"] == "req-123"

    def test_request_id_is_generated(self, client):
        response = client.get("/api/health")
        assert response.headers["X-Request-ID"]

    def test_not_ready_returns_503(self, client):
        app.state.agent = None
        response = client.post("/api/chat", json={"messages": [{"role": "user", "content": "Hi"}]})
        assert response.status_code == 503


# ── Tests: appointment action ────────────────────────────────────────


class TestAppointmentAction:
    def test_confirm(self, client, appointment):
        response = client.get(
            "/api/appointment-action",
            params={"token": appointment.confirmation_token, "action": "confirm"},
        )
        assert response.status_code == 200
        assert "Appointment confirmed" in response.text
        assert response.headers["Cache-Control"] == "no-store"
        assert response.headers["content-type"].startswith("text/html")

    def test_repeat_click_is_informational(self, client, appointment):
        params = {"token": appointment.confirmation_token, "action": "cancel"}
        client.get("/api/appointment-action", params=params)
        response = client.get("/api/appointment-action", params=params)
        assert response.status_code == 200
        assert "Already cancelled" in response.text

    def test_cancel_link_works_after_confirming(self, client, appointment):
        token = appointment.confirmation_token
        client.get("/api/appointment-action", params={"token": token, "action": "confirm"})
        response = client.get("/api/appointment-action", params={"token": token, "action": "cancel"})
        assert response.status_code == 200
        assert "Appointment cancelled" in response.text

    def test_unknown_token(self, client, appointment):
        response = client.get(
            "/api/appointment-action", params={"token": "z" * 43, "action": "confirm"},
        )
        assert response.status_code == 404
        assert INVALID_LINK_MESSAGE in response.text

    def test_malformed_token_looks_the_same_as_unknown(self, client):
        response = client.get(
            "/api/appointment-action", params={"token": "<script>", "action": "confirm"},
        )
        assert response.status_code == 404
        assert INVALID_LINK_MESSAGE in response.text
        assert "<script>" not in response.text

    def test_unsupported_action(self, client, appointment):
        response = client.get(
            "/api/appointment-action",
            params={"token": appointment.confirmation_token, "action": "delete"},
        )
        assert response.status_code == 400
        assert INVALID_LINK_MESSAGE in response.text

    def test_missing_parameters(self, client):
        response = client.get("/api/appointment-action")
        assert response.status_code == 400
        assert INVALID_LINK_MESSAGE in response.text

    def test_rate_limited(self, client):
        responses = [
            client.get("/api/appointment-action", params={"token": "z" * 43, "action": "confirm"})
            for _ in range(6)
        ]
        assert [r.status_code for r in responses] == [404] * 5 + [429]

    def test_unexpected_failure_shows_error_page(self, client):
        app.state.confirmation_service = MagicMock()
        app.state.confirmation_service.act.side_effect = RuntimeError("db gone")
        response = client.get(
            "/api/appointment-action", params={"token": "z" * 43, "action": "confirm"},
        )
        assert response.status_code == 500
        assert "db gone" not in response.text
