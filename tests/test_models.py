"""Model validation tests."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from decisionos.models import (
    Candidate,
    DecisionEvent,
    ExecutionPayload,
    FallbackConfig,
    RescueOutput,
    Session,
)

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


@pytest.mark.parametrize("key", ["", "   ", "x" * 257])
def test_household_key_is_validated(key: str) -> None:
    with pytest.raises(ValidationError):
        DecisionEvent(household_key=key, id="evt-1", decided_at=T0)


def test_feedback_copy_keeps_payload() -> None:
    original = DecisionEvent(
        household_key="house-a",
        id="evt-1",
        decided_at=T0,
        user_action="pending",
        decision_payload={"meal": "Tacos"},
        meal_id=7,
    )
    copy = original.feedback_copy(event_id="evt-2", user_action="approved", actioned_at=T0)
    assert copy.id == "evt-2"
    assert copy.user_action == "approved"
    assert copy.actioned_at == T0
    assert copy.decision_payload == original.decision_payload
    assert copy.meal_id == 7
    assert original.user_action == "pending"


def test_decision_event_is_frozen() -> None:
    event = DecisionEvent(household_key="house-a", id="evt-1", decided_at=T0)
    with pytest.raises(ValidationError):
        event.notes = "edited"  # type: ignore[misc]


def test_session_state_properties() -> None:
    session = Session(household_key="house-a", id="s1", started_at=T0, created_at=T0, updated_at=T0)
    assert session.is_active
    assert not session.is_locked
    locked = session.model_copy(update={"decision_id": "dec-1"})
    assert locked.is_locked
    closed = session.model_copy(update={"outcome": "accepted", "ended_at": T0})
    assert not closed.is_active


@pytest.mark.parametrize("value", ["25:00", "18:60", "1815", "six"])
def test_fallback_config_rejects_bad_times(value: str) -> None:
    with pytest.raises(ValidationError):
        FallbackConfig(drm_time_threshold=value)


def test_fallback_config_rejection_threshold_minimum() -> None:
    with pytest.raises(ValidationError):
        FallbackConfig(rejection_threshold=0)


def test_rescue_output_confidence_is_fixed() -> None:
    with pytest.raises(ValidationError):
        RescueOutput(
            decision_id="drm-1",
            mode="no_cook",
            meal="Cereal",
            confidence=0.9,
            execution_payload=ExecutionPayload(steps=["Pour"]),
            fallback_type="no_cook",
            reason="explicit_done",
        )


def test_candidate_confidence_bounds() -> None:
    with pytest.raises(ValidationError):
        Candidate(meal="Tacos", confidence=1.5)
