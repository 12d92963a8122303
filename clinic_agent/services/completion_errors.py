"""Errors raised while talking to the completion gateway.

Each carries the HTTP status the chat endpoint answers with, so callers can
tell "back off" (429), "out of credit" (402) and "unreachable" (503) apart
from validation problems, which never surface as exceptions.
"""

from __future__ import annotations


class CompletionServiceError(Exception):
    """Raised when the completion gateway fails or misbehaves."""

    status_code = 500
    public_message = "The assistant is unavailable right now. Please try again."

    def __init__(self, message: str, upstream_status: int | None = None):
        self.upstream_status = upstream_status
        super().__init__(message)


class RateLimitedError(CompletionServiceError):
    status_code = 429
    public_message = "Too many requests. Please wait a moment and try again."


class QuotaExceededError(CompletionServiceError):
    status_code = 402
    public_message = "The assistant is temporarily unavailable."


class ServiceUnavailableError(CompletionServiceError):
    status_code = 503
    public_message = "The assistant took too long to answer. Please try again."


class StreamTruncatedError(CompletionServiceError):
    public_message = "The assistant's reply was cut off. Please try again."
