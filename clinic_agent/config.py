"""Centralized configuration for the clinic booking agent.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/clinic-agent/<VARIABLE_NAME>``.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415 — lazy import to avoid boto3 dep in tests

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/clinic-agent/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /clinic-agent/{name} (AWS)."
    )


def _optional_secret(name: str) -> str | None:
    """Like ``_require_env`` but returns ``None`` instead of raising."""
    try:
        return _require_env(name)
    except OSError:
        return None


# ── Completion service (OpenAI-compatible chat completions) ─────────
COMPLETION_API_KEY: str = _require_env("COMPLETION_API_KEY")
COMPLETION_BASE_URL: str = os.getenv(
    "COMPLETION_BASE_URL", "https://ai.gateway.lovable.dev/v1",
)
MODEL_NAME: str = os.getenv("MODEL_NAME", "google/gemini-3-flash-preview")
COMPLETION_MAX_TOKENS: int = int(os.getenv("COMPLETION_MAX_TOKENS", "1024"))

# Wall-clock budget for each of the two completion calls in a request
COMPLETION_TIMEOUT_SECONDS: float = float(os.getenv("COMPLETION_TIMEOUT_SECONDS", "60"))
STREAM_READ_TIMEOUT_SECONDS: float = float(os.getenv("STREAM_READ_TIMEOUT_SECONDS", "20"))

# ── Storage ─────────────────────────────────────────────────────────
DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./clinic.db")
DB_ECHO: bool = os.getenv("DB_ECHO", "false").lower() == "true"

# ── Outbound e-mail (Resend) ────────────────────────────────────────
RESEND_API_KEY: str | None = _optional_secret("RESEND_API_KEY")
RESEND_BASE_URL: str = "https://api.resend.com"
EMAIL_FROM: str = os.getenv("EMAIL_FROM", "NovellDent <onboarding@resend.dev>")
PUBLIC_BASE_URL: str = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")

# ── Clinic ──────────────────────────────────────────────────────────
CLINIC_NAME: str = os.getenv("CLINIC_NAME", "NovellDent")
CLINIC_TIMEZONE: str = os.getenv("CLINIC_TIMEZONE", "America/Mexico_City")

# Python weekday numbering (Monday=0 … Sunday=6); the clinic is closed Sundays
CLOSED_WEEKDAY: int = int(os.getenv("CLOSED_WEEKDAY", "6"))

# Daily bookable slots, in order.  No 13:30 slot (lunch).
TIME_SLOTS: tuple[str, ...] = (
    "09:00", "09:30", "10:00", "10:30", "11:00", "11:30",
    "12:00", "12:30", "13:00", "14:00", "14:30", "15:00",
    "15:30", "16:00", "16:30", "17:00", "17:30", "18:00",
)

LOCATIONS: dict[str, str] = {
    "tepic": "Matriz Tepic",
    "marina": "Marina Nuevo Nayarit",
    "centro-empresarial": "Centro Empresarial Nuevo Nayarit",
    "puerto-magico": "Puerto Mágico Puerto Vallarta",
}

SERVICES: dict[str, str] = {
    "general": "Odontología General",
    "ortodoncia": "Ortodoncia",
    "implantes": "Implantes Dentales",
    "estetica": "Estética Dental",
    "blanqueamiento": "Blanqueamiento",
    "endodoncia": "Endodoncia",
    "periodoncia": "Periodoncia",
    "infantil": "Odontopediatría",
}

# ── Public confirmation endpoint ────────────────────────────────────
ACTION_RATE_LIMIT: int = int(os.getenv("ACTION_RATE_LIMIT", "20"))
ACTION_RATE_WINDOW_SECONDS: float = float(os.getenv("ACTION_RATE_WINDOW_SECONDS", "60"))

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
