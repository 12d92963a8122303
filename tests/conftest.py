"""Shared test fixtures for the clinic booking agent test suite."""

from __future__ import annotations

import os
from datetime import date

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("COMPLETION_API_KEY", "test-completion-key-123")
    os.environ.setdefault("DATABASE_URL", "sqlite://")
    os.environ.setdefault("METRICS_ENABLED", "false")
    os.environ["RESEND_API_KEY"] = ""


# 2026-10-19 is a Monday; the clinic is closed on Sundays
TODAY = date(2026, 10, 19)


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
def session_factory():
    """Fresh in-memory appointment store per test."""
    from clinic_agent.db.session import create_db_engine, create_session_factory, init_db

    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def file_session_factory(tmp_path):
    """File-backed store for tests that book from several threads at once."""
    from clinic_agent.db.session import create_db_engine, create_session_factory, init_db

    engine = create_db_engine(f"sqlite:///{tmp_path / 'clinic.db'}")
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def booking_service(session_factory):
    from clinic_agent.services.booking import BookingService

    return BookingService(session_factory, today=lambda: TODAY)


@pytest.fixture
def contact():
    from clinic_agent.services.booking import PatientContact

    return PatientContact(name="Ana López", phone="+52 311 555 0101", email="ana@example.com")
