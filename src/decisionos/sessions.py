"""Session and decision-lock state machine.

A household has at most one active session. The first `decide` call on a
session asks the primary pipeline for a candidate, evaluates the rescue
triggers, and either locks a decision or rescues. Every later call returns
the locked decision unchanged until the household responds.

Concurrent callers converge through write-if-absent plus re-read: only one
lock write can succeed, and only the winner appends the ``pending`` ledger
row. Calls naming another household's session are no-ops.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from decisionos.config import Settings
from decisionos.logging import get_logger
from decisionos.metrics import MetricsRegistry
from decisionos.models import (
    Candidate,
    DecisionEvent,
    FallbackConfig,
    FallbackExhausted,
    RescueOutput,
    Session,
    SessionOutcome,
    TriggerReason,
    UserAction,
)
from decisionos.rescue import (
    RescueEngine,
    evaluate_trigger,
    resolve_fallback_config,
    should_trigger_on_rejections,
)
from decisionos.store import StorageAdapter, compute_context_hash, utc_now

logger = get_logger(__name__)

PrimaryRecommend = Callable[[dict[str, Any]], Candidate | None]
Clock = Callable[[], datetime]
ConfigResolver = Callable[[FallbackConfig | None], FallbackConfig]


class DecisionOutcome(BaseModel):
    """The decision currently standing for a session."""

    session_id: str
    decision_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    is_rescue: bool = False
    created: bool = Field(default=False, description="True if this call wrote the lock")


class RejectOutcome(BaseModel):
    """Result of rejecting the current decision."""

    applied: bool
    rejection_count: int = 0
    rescue: RescueOutput | None = None
    exhausted: FallbackExhausted | None = None


class SessionManager:
    """Drives sessions from start to a terminal outcome."""

    def __init__(
        self,
        store: StorageAdapter,
        primary_recommend: PrimaryRecommend,
        rescue_engine: RescueEngine | None = None,
        clock: Clock | None = None,
        config_resolver: ConfigResolver | None = None,
        metrics: MetricsRegistry | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.primary_recommend = primary_recommend
        self.metrics = metrics or store.metrics
        self.settings = settings or Settings.from_env()
        self.rescue_engine = rescue_engine or RescueEngine(
            metrics=self.metrics, window_hours=self.settings.rotation_window_hours
        )
        self._clock = clock or utc_now
        self._resolve_config = config_resolver or resolve_fallback_config

    def _now(self) -> datetime:
        return self._clock()

    def fallback_config(self, household_key: str) -> FallbackConfig:
        return self._resolve_config(self.store.get_fallback_config(household_key))

    def _open_session(self, household_key: str, session_id: str) -> Session | None:
        session = self.store.get_session(household_key, session_id)
        if session is None or not session.is_active:
            return None
        return session

    def _close_metrics(self, session: Session, outcome: SessionOutcome, now: datetime) -> None:
        self.metrics.sessions_closed_total.inc(outcome)
        self.metrics.open_sessions.dec()
        elapsed = (now - session.started_at).total_seconds()
        self.metrics.time_to_decision_seconds.observe(max(0.0, elapsed))

    def _append_feedback(
        self,
        household_key: str,
        decision_id: str | None,
        action: UserAction,
        now: datetime,
        *,
        event_id: str | None = None,
        notes: str | None = None,
    ) -> bool:
        if decision_id is None:
            return False
        original = self.store.get_decision_event(household_key, decision_id)
        if original is None:
            return False
        copy = original.feedback_copy(
            event_id=event_id or str(uuid4()),
            user_action=action,
            actioned_at=now,
            notes=notes,
        )
        return self.store.append_decision_event(household_key, copy)

    def start(self, household_key: str, context: dict[str, Any] | None = None) -> Session:
        """Open a session; raises `ActiveSessionExists` if one is already open."""
        session = self.store.create_session(
            household_key, str(uuid4()), dict(context or {}), self._now()
        )
        self.metrics.sessions_started_total.inc()
        self.metrics.open_sessions.inc()
        logger.info("session_started", session_id=session.id)
        return session

    def get_active(self, household_key: str) -> Session | None:
        return self.store.get_active_session(household_key)

    def lock_decision(
        self,
        household_key: str,
        session_id: str,
        decision_id: str,
        payload: dict[str, Any],
    ) -> Session | None:
        """Write the lock if none is held, then return the session as stored.

        Whichever caller won, every caller sees the same decision afterwards.
        """
        won = self.store.lock_session_decision(
            household_key, session_id, decision_id, payload, self._now()
        )
        if won:
            self.metrics.decisions_locked_total.inc()
            logger.info("decision_locked", session_id=session_id, decision_id=decision_id)
        return self.store.get_session(household_key, session_id)

    def decide(
        self, household_key: str, explicit_done: bool = False
    ) -> DecisionOutcome | FallbackExhausted | None:
        """Return the standing decision for the active session, creating it once.

        Returns None when the household has no active session.
        """
        session = self.store.get_active_session(household_key)
        if session is None:
            return None
        if session.decision_id is not None and not explicit_done:
            return DecisionOutcome(
                session_id=session.id,
                decision_id=session.decision_id,
                payload=session.decision_payload or {},
            )

        now = self._now()
        candidate = None if explicit_done else self.primary_recommend(dict(session.context))
        config = self.fallback_config(household_key)
        trigger = evaluate_trigger(
            rejection_count=session.rejection_count,
            now=now.astimezone(),
            candidate=candidate,
            explicit_done=explicit_done,
            config=config,
        )
        if trigger.trigger or candidate is None:
            reason = trigger.reason if trigger.trigger else "no_valid_meal"
            result = self.rescue(household_key, session.id, reason)
            if isinstance(result, RescueOutput):
                return DecisionOutcome(
                    session_id=session.id,
                    decision_id=result.decision_id,
                    payload=result.model_dump(mode="json"),
                    is_rescue=True,
                    created=True,
                )
            if isinstance(result, FallbackExhausted):
                return result
            return self._standing_decision(household_key, session.id)

        decision_id = str(uuid4())
        payload = candidate.model_dump(mode="json")
        locked = self.lock_decision(household_key, session.id, decision_id, payload)
        if locked is None or locked.decision_id is None:
            return self._standing_decision(household_key, session.id)
        created = locked.decision_id == decision_id
        if created:
            self.store.append_decision_event(
                household_key,
                DecisionEvent(
                    household_key=household_key,
                    id=decision_id,
                    decided_at=now,
                    user_action="pending",
                    decision_payload=payload,
                    meal_id=candidate.meal_id,
                    context_hash=compute_context_hash(session.context),
                    decision_type="primary",
                ),
            )
        return DecisionOutcome(
            session_id=session.id,
            decision_id=locked.decision_id,
            payload=locked.decision_payload or {},
            is_rescue=locked.outcome == "rescued",
            created=created,
        )

    def _standing_decision(self, household_key: str, session_id: str) -> DecisionOutcome | None:
        session = self.store.get_session(household_key, session_id)
        if session is None or session.decision_id is None:
            return None
        return DecisionOutcome(
            session_id=session.id,
            decision_id=session.decision_id,
            payload=session.decision_payload or {},
            is_rescue=session.outcome == "rescued",
        )

    def reject(self, household_key: str, session_id: str) -> RejectOutcome:
        """Reject the locked decision and rescue once the threshold trips."""
        session = self._open_session(household_key, session_id)
        if session is None:
            return RejectOutcome(applied=False)
        now = self._now()
        if not self.store.record_session_rejection(household_key, session_id, now):
            return RejectOutcome(applied=False)
        self._append_feedback(household_key, session.decision_id, "rejected", now)
        self.metrics.decisions_rejected_total.inc()

        updated = self.store.get_session(household_key, session_id)
        count = updated.rejection_count if updated else session.rejection_count + 1
        logger.info("decision_rejected", session_id=session_id, rejection_count=count)

        config = self.fallback_config(household_key)
        if not should_trigger_on_rejections(count, config.rejection_threshold):
            return RejectOutcome(applied=True, rejection_count=count)
        result = self.rescue(household_key, session_id, "rejection_threshold")
        return RejectOutcome(
            applied=True,
            rejection_count=count,
            rescue=result if isinstance(result, RescueOutput) else None,
            exhausted=result if isinstance(result, FallbackExhausted) else None,
        )

    def accept(self, household_key: str, session_id: str) -> bool:
        """Accept the locked decision and close the session."""
        session = self._open_session(household_key, session_id)
        if session is None or session.decision_id is None:
            return False
        now = self._now()
        if not self.store.close_session(household_key, session_id, "accepted", now):
            return False
        self._append_feedback(household_key, session.decision_id, "approved", now)
        self._close_metrics(session, "accepted", now)
        logger.info("session_accepted", session_id=session_id)
        return True

    def rescue(
        self, household_key: str, session_id: str, reason: TriggerReason
    ) -> RescueOutput | FallbackExhausted | None:
        """Close the session with a fallback decision.

        Returns None for a missing, foreign or closed session. On
        `FallbackExhausted` the session is left pending.
        """
        session = self._open_session(household_key, session_id)
        if session is None:
            return None
        now = self._now()
        result = self.rescue_engine.execute(
            session_id=session_id,
            config=self.fallback_config(household_key),
            reason=reason,
            last_rescue=self.store.get_last_rescue(household_key),
            now=now,
        )
        if isinstance(result, FallbackExhausted):
            return result

        payload = result.model_dump(mode="json")
        if not self.store.rescue_session(
            household_key, session_id, result.decision_id, payload, now
        ):
            return None
        self.store.append_decision_event(
            household_key,
            DecisionEvent(
                household_key=household_key,
                id=result.decision_id,
                decided_at=now,
                actioned_at=now,
                user_action="drm_triggered",
                decision_payload=payload,
                meal_id=result.meal_id,
                context_hash=compute_context_hash(session.context),
                decision_type="rescue",
            ),
        )
        self.metrics.rescues_total.inc(reason)
        self._close_metrics(session, "rescued", now)
        logger.info(
            "session_rescued",
            session_id=session_id,
            reason=reason,
            fallback_type=result.fallback_type,
        )
        return result

    def abandon(self, household_key: str, session_id: str) -> bool:
        """Close the session without a decision; an unanswered lock expires."""
        session = self._open_session(household_key, session_id)
        if session is None:
            return False
        now = self._now()
        if not self.store.close_session(household_key, session_id, "abandoned", now):
            return False
        self._append_feedback(household_key, session.decision_id, "expired", now)
        self._close_metrics(session, "abandoned", now)
        logger.info("session_abandoned", session_id=session_id)
        return True

    def undo(self, household_key: str, decision_id: str) -> bool:
        """Record that the household took back a decision.

        The undo row has a deterministic id, so a repeated undo is a no-op.
        """
        applied = self._append_feedback(
            household_key,
            decision_id,
            "rejected",
            self._now(),
            event_id=f"undo-{decision_id}",
            notes="undo",
        )
        if applied:
            logger.info("decision_undone", decision_id=decision_id)
        return applied
