"""FastAPI route definitions for the clinic booking agent API."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from clinic_agent.api.pages import render_action_page, render_invalid_link, render_page
from clinic_agent.api.schemas import ChatRequest, ErrorResponse, HealthResponse
from clinic_agent.services.completion_errors import CompletionServiceError
from clinic_agent.services.confirmation import AppointmentNotFound, InvalidAction

logger = logging.getLogger(__name__)

router = APIRouter()

INTERNAL_ERROR_MESSAGE = "An internal error occurred. Please try again."

# The token travels in the URL: keep it out of caches and referrers
_PAGE_HEADERS = {
    "Cache-Control": "no-store",
    "Referrer-Policy": "no-referrer",
}


def _get_state(request: Request, name: str):
    """Retrieve a component built by the FastAPI lifespan (see ``server.py``)."""
    component = getattr(request.app.state, name, None)
    if component is None:
        raise HTTPException(
            status_code=503,
            detail="The service is still starting up. Please try again in a moment.",
        )
    return component


def _page(body: str, status_code: int) -> HTMLResponse:
    return HTMLResponse(body, status_code=status_code, headers=_PAGE_HEADERS)


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.post(
    "/chat",
    response_class=StreamingResponse,
    responses={
        402: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def chat(request: ChatRequest, http_request: Request):
    """Stream the assistant's answer to the conversation as Server-Sent Events.

    The dispatch phase and any tool calls run before the response starts, so
    gateway failures there are answered with a plain JSON error and a status
    the client can act on (429 back off, 402 quota, 503 unavailable).
    """
    agent = _get_state(http_request, "agent")
    request_id = getattr(http_request.state, "request_id", "?")
    messages = [m.model_dump() for m in request.messages]

    try:
        relay = await agent.prepare(messages)
    except CompletionServiceError as exc:
        logger.warning(
            "[%s] Completion service error (%d): %s", request_id, exc.status_code, exc,
        )
        return JSONResponse(status_code=exc.status_code, content={"error": exc.public_message})
    except Exception:
        # Full traceback server-side only; never leak internals to the client.
        logger.exception("[%s] Error processing chat request", request_id)
        return JSONResponse(status_code=500, content={"error": INTERNAL_ERROR_MESSAGE})

    if relay.tool_results:
        logger.info(
            "[%s] Ran tools: %s", request_id,
            ", ".join(f"{r.name}(ok={r.ok})" for r in relay.tool_results),
        )

    return StreamingResponse(
        relay,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        background=BackgroundTask(relay.aclose),
    )


@router.get("/appointment-action", response_class=HTMLResponse)
async def appointment_action(
    http_request: Request,
    token: str | None = None,
    action: str | None = None,
):
    """Confirm or cancel an appointment from the link in the confirmation e-mail.

    Unknown tokens, malformed tokens and unsupported actions all get the
    same "invalid or expired link" page, so the page never reveals whether
    a token exists.
    """
    service = _get_state(http_request, "confirmation_service")
    limiter = _get_state(http_request, "action_limiter")
    request_id = getattr(http_request.state, "request_id", "?")

    client_key = http_request.client.host if http_request.client else "unknown"
    if not limiter.allow(client_key):
        logger.warning("[%s] Rate limited appointment action from %s", request_id, client_key)
        return _page(
            render_page("error", "Too many requests", "Please wait a minute and try again."),
            429,
        )

    if not token or not action:
        return _page(render_invalid_link(), 400)

    try:
        result = await asyncio.to_thread(service.act, token, action)
    except InvalidAction:
        logger.info("[%s] Unsupported appointment action %r", request_id, action)
        return _page(render_invalid_link(), 400)
    except AppointmentNotFound:
        logger.info("[%s] Appointment action with unknown token", request_id)
        return _page(render_invalid_link(), 404)
    except Exception:
        logger.exception("[%s] Error processing appointment action", request_id)
        return _page(
            render_page(
                "error", "Something went wrong",
                "We could not update your appointment. Please contact the clinic.",
            ),
            500,
        )

    return _page(render_action_page(result), 200)
