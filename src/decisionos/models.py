"""Pydantic models for the decision core.

This module defines the data structures shared by storage, the session
state machine, and the rescue engine:
- Decision ledger rows (append-only)
- Sessions and their decision lock
- Fallback configuration and rescue output
- Global meal catalog entries

All models use Pydantic for validation and serialization.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

UserAction = Literal["pending", "approved", "rejected", "drm_triggered", "expired"]
SessionOutcome = Literal["pending", "accepted", "rescued", "abandoned"]
TriggerReason = Literal[
    "explicit_done",
    "no_valid_meal",
    "rejection_threshold",
    "time_threshold",
    "none",
]

TERMINAL_OUTCOMES: frozenset[str] = frozenset({"accepted", "rescued", "abandoned"})


def _check_household_key(value: str) -> str:
    if not value or not value.strip():
        raise ValueError("household_key must be non-empty")
    if len(value) > 256:
        raise ValueError("household_key too long (max 256 characters)")
    return value


class DecisionEvent(BaseModel):
    """Append-only decision ledger row.

    A row is never updated or deleted. A user's response to a decision is a
    new row that copies the original payload (see `feedback_copy`), so the
    full history is the set of rows sharing a payload.

    Attributes:
        household_key: Owning tenant.
        id: Unique row identifier.
        decided_at: When the decision was produced.
        actioned_at: When the user (or system) responded, if at all.
        user_action: Response recorded by this row, None for legacy rows.
        notes: System annotation, e.g. "undo".
        decision_payload: Opaque decision body.
        meal_id: Catalog reference, when the decision names a meal.
        context_hash: Fingerprint used for idempotency lookups.
        decision_type: Producer of the decision ("primary" or "rescue").
    """

    model_config = ConfigDict(frozen=True)

    household_key: str = Field(..., description="Owning household")
    id: str = Field(..., description="Unique event identifier")
    decided_at: datetime = Field(..., description="Decision time (UTC)")
    actioned_at: datetime | None = Field(default=None, description="Response time (UTC)")
    user_action: UserAction | None = Field(default=None, description="User response")
    notes: str | None = Field(default=None, description="System annotation")
    decision_payload: dict[str, Any] = Field(
        default_factory=dict, description="Opaque decision payload"
    )
    meal_id: int | None = Field(default=None, description="Meal catalog reference")
    context_hash: str | None = Field(default=None, description="Context fingerprint")
    decision_type: str | None = Field(default=None, description="Decision producer")

    @field_validator("household_key")
    @classmethod
    def validate_household_key(cls, value: str) -> str:
        return _check_household_key(value)

    def feedback_copy(
        self,
        *,
        event_id: str,
        user_action: UserAction,
        actioned_at: datetime,
        notes: str | None = None,
    ) -> DecisionEvent:
        """Return a new ledger row recording a response to this decision."""
        return self.model_copy(
            update={
                "id": event_id,
                "user_action": user_action,
                "actioned_at": actioned_at,
                "notes": notes,
            }
        )


class Session(BaseModel):
    """One household interaction, from intent to terminal outcome.

    The decision fields form the lock: while set, every read of the active
    session surfaces the same decision.
    """

    household_key: str = Field(..., description="Owning household")
    id: str = Field(..., description="Unique session identifier")
    started_at: datetime = Field(..., description="Session start (UTC)")
    ended_at: datetime | None = Field(default=None, description="Session end (UTC)")
    context: dict[str, Any] = Field(default_factory=dict, description="Intent context")
    decision_id: str | None = Field(default=None, description="Locked decision id")
    decision_payload: dict[str, Any] | None = Field(
        default=None, description="Locked decision payload"
    )
    outcome: SessionOutcome = Field(default="pending", description="Session outcome")
    rejection_count: int = Field(default=0, ge=0, description="Rejections this session")
    created_at: datetime = Field(..., description="Row creation time")
    updated_at: datetime = Field(..., description="Row update time")

    @field_validator("household_key")
    @classmethod
    def validate_household_key(cls, value: str) -> str:
        return _check_household_key(value)

    @property
    def is_active(self) -> bool:
        return self.outcome == "pending" and self.ended_at is None

    @property
    def is_locked(self) -> bool:
        return self.decision_id is not None


class FallbackOption(BaseModel):
    """A pre-approved, always-executable fallback."""

    type: str = Field(..., description="Fallback type tag, e.g. no_cook")
    meal_id: int | None = Field(default=None, description="Meal catalog reference")
    meal_name: str = Field(..., description="Display name")
    instructions: str = Field(..., description="Directly executable instructions")


class FallbackConfig(BaseModel):
    """Household fallback hierarchy and rescue thresholds."""

    model_config = ConfigDict(frozen=True)

    hierarchy: tuple[FallbackOption, ...] = Field(
        default=(), description="Ordered fallback options"
    )
    drm_time_threshold: str = Field(
        default="18:15", description="Server time cutoff (24h HH:MM)"
    )
    rejection_threshold: int = Field(
        default=2, ge=1, description="Rejections before rescue"
    )

    @field_validator("drm_time_threshold")
    @classmethod
    def validate_time_threshold(cls, value: str) -> str:
        parts = value.split(":")
        if len(parts) != 2 or not all(part.isdigit() for part in parts):
            raise ValueError("drm_time_threshold must be HH:MM")
        hours, minutes = int(parts[0]), int(parts[1])
        if hours > 23 or minutes > 59:
            raise ValueError("drm_time_threshold out of range")
        return f"{hours:02d}:{minutes:02d}"


class Meal(BaseModel):
    """Global catalog entry shared by every household."""

    id: int = Field(..., description="Catalog identifier")
    name: str = Field(..., description="Meal name")
    tags: list[str] = Field(default_factory=list, description="Free-form tags")
    est_minutes: int | None = Field(default=None, ge=0, description="Prep estimate")


class Candidate(BaseModel):
    """Output of the primary recommendation pipeline."""

    meal_id: int | None = Field(default=None, description="Meal catalog reference")
    meal: str = Field(..., description="Meal name")
    confidence: float = Field(default=0.5, ge=0.0, le=1.0, description="Pipeline confidence")
    payload: dict[str, Any] = Field(default_factory=dict, description="Decision body")


class LastRescue(BaseModel):
    """Most recent rescue for anti-repetition rotation."""

    fallback_type: str
    meal_id: int | None = None
    timestamp: datetime


class ExecutionPayload(BaseModel):
    """Instructions the household can act on immediately."""

    steps: list[str] = Field(default_factory=list)
    ingredients_needed: list[str] = Field(default_factory=list)
    substitutions: list[str] = Field(default_factory=list)


class RescueOutput(BaseModel):
    """Authoritative rescue decision."""

    decision_id: str
    mode: str
    meal: str
    meal_id: int | None = None
    confidence: float = Field(default=1.0, ge=1.0, le=1.0)
    estimated_time: str = "5 min"
    estimated_cost: str = "$0"
    execution_payload: ExecutionPayload
    is_rescue: Literal[True] = True
    fallback_type: str
    reason: TriggerReason


class FallbackExhausted(BaseModel):
    """Explicit signal that no fallback can be produced.

    This is a configuration defect. Retrying cannot produce a different
    result, so callers treat it as fatal.
    """

    reason: TriggerReason
    detail: Literal["no rescue available"] = "no rescue available"


class TriggerDecision(BaseModel):
    """Result of evaluating the rescue trigger chain."""

    trigger: bool
    reason: TriggerReason
