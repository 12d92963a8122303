"""FastAPI server for the clinic booking agent.

Run with:
    uv run uvicorn clinic_agent.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from clinic_agent.agent import create_booking_agent
from clinic_agent.api.routes import router
from clinic_agent.config import (
    ACTION_RATE_LIMIT,
    ACTION_RATE_WINDOW_SECONDS,
    CORS_ORIGINS,
    SERVER_HOST,
    SERVER_PORT,
)
from clinic_agent.db.session import create_db_engine, create_session_factory, init_db
from clinic_agent.services.confirmation import ConfirmationService
from clinic_agent.services.notifications import EmailNotifier
from clinic_agent.services.rate_limit import SlidingWindowLimiter

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Start-up: open the store and build the agent once, kept in app state.

    The appointment store is the only state shared between requests; the
    agent itself holds no per-conversation data.
    """
    logger.info("Opening appointment store…")
    engine = create_db_engine()
    init_db(engine)
    session_factory = create_session_factory(engine)

    notifier = EmailNotifier()
    if not notifier.enabled:
        logger.warning("RESEND_API_KEY not set: confirmation e-mails will not be sent")

    agent = create_booking_agent(session_factory, notifier=notifier)
    application.state.agent = agent
    application.state.confirmation_service = ConfirmationService(session_factory)
    application.state.action_limiter = SlidingWindowLimiter(
        ACTION_RATE_LIMIT, ACTION_RATE_WINDOW_SECONDS,
    )
    logger.info("Agent ready.")
    yield

    await agent.aclose()
    notifier.close()
    engine.dispose()
    logger.info("Shut down cleanly.")


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Clinic Booking Agent",
    description=(
        "Conversational appointment booking with availability checks, "
        "race-safe reservations and e-mail confirm/cancel links."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a unique request ID to every request for log correlation.

    The ID is echoed in the ``X-Request-ID`` response header so the client
    can reference it in support tickets.
    """
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    # The action link carries a secret token: log the path only
    logger.info("[%s] %s %s", request_id, request.method, request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Clinic Booking Agent",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


if __name__ == "__main__":
    logger.info("Starting clinic booking API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "clinic_agent.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
