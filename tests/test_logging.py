"""Logging helper tests."""

from __future__ import annotations

import structlog

from decisionos.logging import (
    bind_request_context,
    clear_logging_context,
    configure_logging,
    drop_tenant_fields,
    get_logger,
)


def test_request_context_binding() -> None:
    clear_logging_context()
    bind_request_context(request_id="req-1", session_id="sess-1")
    assert structlog.contextvars.get_contextvars() == {
        "request_id": "req-1",
        "session_id": "sess-1",
    }
    clear_logging_context()
    bind_request_context(request_id="req-2")
    assert structlog.contextvars.get_contextvars() == {"request_id": "req-2"}
    clear_logging_context()
    assert structlog.contextvars.get_contextvars() == {}


def test_configure_logging_accepts_unknown_level() -> None:
    configure_logging("not-a-level")
    get_logger(__name__).info("logging_configured")


def test_tenant_fields_are_dropped() -> None:
    event = {"event": "decision_locked", "household_key": "house-a", "session_id": "s1"}
    assert drop_tenant_fields(None, "info", event) == {
        "event": "decision_locked",
        "session_id": "s1",
    }
