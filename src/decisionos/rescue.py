"""Rule-based rescue engine.

A rescue overrides every optimisation: it picks a pre-approved fallback
from the household hierarchy and returns it with full confidence. Triggers
are evaluated in a fixed priority order and the first match wins:

1. explicit_done: the household said it is done deciding
2. no_valid_meal: the primary pipeline produced nothing
3. rejection_threshold: too many rejections this session
4. time_threshold: server time is past the household cutoff

Fallback selection rotates through the hierarchy so the same option is not
served on consecutive rescues inside the rotation window.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from uuid import uuid4

from decisionos.config import DEFAULT_ROTATION_WINDOW_HOURS
from decisionos.logging import get_logger
from decisionos.metrics import MetricsRegistry, get_metrics
from decisionos.models import (
    Candidate,
    ExecutionPayload,
    FallbackConfig,
    FallbackExhausted,
    FallbackOption,
    LastRescue,
    RescueOutput,
    TriggerDecision,
    TriggerReason,
)

logger = get_logger(__name__)

DEFAULT_DRM_TIME_THRESHOLD = "18:15"
DEFAULT_REJECTION_THRESHOLD = 2
RESCUE_CONFIDENCE = 1.0

DEFAULT_FALLBACK_CONFIG = FallbackConfig(
    hierarchy=(
        FallbackOption(
            type="no_cook",
            meal_id=11,
            meal_name="Cereal with Milk",
            instructions="Pour cereal into bowl, add milk",
        ),
        FallbackOption(
            type="no_cook",
            meal_id=12,
            meal_name="PB&J Sandwich",
            instructions="Make a peanut butter and jelly sandwich",
        ),
        FallbackOption(
            type="no_cook",
            meal_id=13,
            meal_name="Cheese and Crackers",
            instructions="Slice cheese, arrange with crackers",
        ),
    ),
    drm_time_threshold=DEFAULT_DRM_TIME_THRESHOLD,
    rejection_threshold=DEFAULT_REJECTION_THRESHOLD,
)


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=UTC)


def parse_hhmm(value: str) -> int:
    """Return minutes since midnight for a 24h ``HH:MM`` string."""
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def minutes_since_midnight(moment: datetime) -> int:
    return moment.hour * 60 + moment.minute


def should_trigger_on_rejections(rejection_count: int, threshold: int) -> bool:
    return rejection_count >= threshold


def should_trigger_on_time(now: datetime, threshold: str) -> bool:
    """True once the wall-clock time of ``now`` reaches the cutoff.

    ``now`` is read as-is; callers pass server local time.
    """
    return minutes_since_midnight(now) >= parse_hhmm(threshold)


def evaluate_trigger(
    *,
    rejection_count: int,
    now: datetime,
    candidate: Candidate | None,
    explicit_done: bool = False,
    config: FallbackConfig = DEFAULT_FALLBACK_CONFIG,
) -> TriggerDecision:
    """Evaluate the trigger chain; the first matching trigger wins."""
    if explicit_done:
        return TriggerDecision(trigger=True, reason="explicit_done")
    if candidate is None:
        return TriggerDecision(trigger=True, reason="no_valid_meal")
    if should_trigger_on_rejections(rejection_count, config.rejection_threshold):
        return TriggerDecision(trigger=True, reason="rejection_threshold")
    if should_trigger_on_time(now, config.drm_time_threshold):
        return TriggerDecision(trigger=True, reason="time_threshold")
    return TriggerDecision(trigger=False, reason="none")


def _within_window(last_rescue: LastRescue, now: datetime, window_hours: float) -> bool:
    elapsed = _aware(now) - _aware(last_rescue.timestamp)
    return elapsed < timedelta(hours=window_hours)


def was_recently_used(
    option: FallbackOption,
    last_rescue: LastRescue | None,
    now: datetime,
    window_hours: float = DEFAULT_ROTATION_WINDOW_HOURS,
) -> bool:
    """True if the option matches the last rescue by type or meal inside the window."""
    if last_rescue is None:
        return False
    same_type = last_rescue.fallback_type == option.type
    same_meal = option.meal_id is not None and last_rescue.meal_id == option.meal_id
    if not same_type and not same_meal:
        return False
    return _within_window(last_rescue, now, window_hours)


def rotation_index(
    config: FallbackConfig,
    last_rescue: LastRescue | None,
    now: datetime,
    window_hours: float = DEFAULT_ROTATION_WINDOW_HOURS,
) -> int:
    """Index of the option to serve: the one after the last rescue, circularly.

    Starts over at 0 when there is no last rescue, when it no longer matches
    any option, or when it falls outside the window.
    """
    hierarchy = config.hierarchy
    if last_rescue is None or len(hierarchy) <= 1:
        return 0
    last_index = next(
        (
            index
            for index, option in enumerate(hierarchy)
            if option.type == last_rescue.fallback_type
            and (last_rescue.meal_id is None or option.meal_id == last_rescue.meal_id)
        ),
        None,
    )
    if last_index is None or not _within_window(last_rescue, now, window_hours):
        return 0
    return (last_index + 1) % len(hierarchy)


def select_fallback(
    config: FallbackConfig,
    last_rescue: LastRescue | None,
    now: datetime,
    window_hours: float = DEFAULT_ROTATION_WINDOW_HOURS,
) -> FallbackOption | None:
    if not config.hierarchy:
        return None
    return config.hierarchy[rotation_index(config, last_rescue, now, window_hours)]


def resolve_fallback_config(household_config: FallbackConfig | None) -> FallbackConfig:
    """Return the household config, or the default when none was ever saved.

    A saved config with an empty hierarchy is returned unchanged so that the
    defect surfaces as `FallbackExhausted` instead of being masked.
    """
    if household_config is None:
        return DEFAULT_FALLBACK_CONFIG
    return household_config


def _default_decision_id(session_id: str) -> str:
    return f"drm-{session_id[:8]}-{uuid4().hex[:12]}"


class RescueEngine:
    """Builds rescue decisions from a fallback hierarchy."""

    def __init__(
        self,
        metrics: MetricsRegistry | None = None,
        window_hours: float = DEFAULT_ROTATION_WINDOW_HOURS,
        id_factory: Callable[[str], str] | None = None,
    ) -> None:
        self.metrics = metrics or get_metrics()
        self.window_hours = window_hours
        self._id_factory = id_factory or _default_decision_id

    def execute(
        self,
        *,
        session_id: str,
        config: FallbackConfig,
        reason: TriggerReason,
        last_rescue: LastRescue | None,
        now: datetime,
    ) -> RescueOutput | FallbackExhausted:
        """Select a fallback and build the rescue decision.

        Returns `FallbackExhausted` when the hierarchy is empty; that is a
        configuration defect and is logged at error level.
        """
        fallback = select_fallback(config, last_rescue, now, self.window_hours)
        if fallback is None:
            self.metrics.fallback_exhausted_total.inc()
            logger.error("fallback_exhausted", session_id=session_id, reason=reason)
            return FallbackExhausted(reason=reason)

        output = RescueOutput(
            decision_id=self._id_factory(session_id),
            mode=fallback.type,
            meal=fallback.meal_name,
            meal_id=fallback.meal_id,
            confidence=RESCUE_CONFIDENCE,
            execution_payload=ExecutionPayload(steps=[fallback.instructions]),
            fallback_type=fallback.type,
            reason=reason,
        )
        logger.info(
            "rescue_selected",
            session_id=session_id,
            reason=reason,
            fallback_type=fallback.type,
            meal_id=fallback.meal_id,
        )
        return output
