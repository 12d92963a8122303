"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class ChatMessage(BaseModel):
    """One turn of the conversation as the chat widget keeps it."""

    role: Literal["system", "user", "assistant"]
    content: str = Field(..., max_length=4000, description="The turn's text")


class ChatRequest(BaseModel):
    """The full conversation so far; the server keeps no dialogue state."""

    messages: list[ChatMessage] = Field(
        ...,
        min_length=1,
        max_length=50,
        description="Prior turns in order, ending with the user's latest message",
    )


class ErrorResponse(BaseModel):
    error: str = Field(..., description="Short human-readable message")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "clinic-booking-agent"
