"""Clinic booking agent — conversational appointment booking for a dental clinic.

Architecture Overview
=====================

A chat endpoint backed by an OpenAI-compatible completion gateway that can
call two tools against a shared appointment table:

1. **check_availability** — the day's fixed slots minus the ones held by
   non-cancelled appointments at a location.
2. **book_appointment** — validates the request (known ids, not in the past,
   not on the closed weekday, slot still free) and inserts it; a partial
   unique index on the slot makes the database the arbiter of races.

Each chat request runs a buffered dispatch call (the model may answer with
tool calls), executes any tool calls, then streams the final answer to the
caller frame by frame.  A public link in the confirmation e-mail lets the
patient confirm or cancel with nothing but the appointment's token.

Key Design Decisions
--------------------
- **Stateless server**: the caller resubmits the conversation each turn;
  the appointment store is the only shared state.
- **Errors as dialogue**: booking rejections reach the model as text with
  concrete alternatives; only gateway and internal faults become HTTP
  errors.
- **Best-effort e-mail**: confirmations go out through Resend on a
  background pool and never fail a booking.

Package Structure
-----------------
- ``clinic_agent/agent.py`` — dispatch → tools → stream orchestrator
- ``clinic_agent/config.py`` — configuration from the environment / SSM
- ``clinic_agent/prompts.py`` — system prompt
- ``clinic_agent/server.py`` — FastAPI application
- ``clinic_agent/main.py`` — CLI chat interface
- ``clinic_agent/db/`` — SQLAlchemy model and engine helpers
- ``clinic_agent/services/`` — slot calendar, booking, confirmation,
  completion client, SSE decoding, e-mail, metrics, rate limiting
- ``clinic_agent/tools/`` — LangChain tools and the tool dispatcher
- ``clinic_agent/api/`` — FastAPI routes, schemas and HTML pages
"""
