"""In-memory storage backend for development and tests."""

from __future__ import annotations

from datetime import datetime
from threading import Lock
from typing import Any

from decisionos.config import StoreConfig
from decisionos.metrics import MetricsRegistry
from decisionos.models import (
    DecisionEvent,
    FallbackConfig,
    Meal,
    Session,
    SessionOutcome,
    UserAction,
)
from decisionos.store import ActiveSessionExists, StorageAdapter, check_close_outcome

FALLBACK_CONFIG_KEY = "fallback"


class MemoryStore(StorageAdapter):
    """Dict-backed store with the same tenant isolation as the SQL backend.

    Rows are keyed by ``(household_key, natural_key)`` and every lookup also
    compares the stored household key. Returned models are copies, so callers
    never hold a reference into the store.
    """

    backend = "memory"

    def __init__(
        self,
        config: StoreConfig | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        super().__init__(config, metrics)
        self._lock = Lock()
        self._sessions: dict[tuple[str, str], Session] = {}
        self._events: list[DecisionEvent] = []
        self._event_keys: set[tuple[str, str]] = set()
        self._configs: dict[tuple[str, str], FallbackConfig] = {}
        self._meals: dict[int, Meal] = {}
        self._closed = False

    def _owned_session(self, household_key: str, session_id: str) -> Session | None:
        session = self._sessions.get((household_key, session_id))
        if session is None or session.household_key != household_key:
            return None
        return session

    def _active_session(self, household_key: str) -> Session | None:
        for (owner, _), session in self._sessions.items():
            if owner == household_key and session.is_active:
                return session
        return None

    def create_session(
        self,
        household_key: str,
        session_id: str,
        context: dict[str, Any],
        started_at: datetime,
    ) -> Session:
        self._check_writable("create_session")
        session = Session(
            household_key=household_key,
            id=session_id,
            started_at=started_at,
            context=dict(context),
            created_at=started_at,
            updated_at=started_at,
        )
        with self._lock:
            existing = self._active_session(household_key)
            if existing is not None:
                raise ActiveSessionExists(existing.id)
            self._sessions[(household_key, session_id)] = session
        return session.model_copy(deep=True)

    def get_session(self, household_key: str, session_id: str) -> Session | None:
        with self._lock:
            session = self._owned_session(household_key, session_id)
            if session is None:
                self._record_noop("get_session")
                return None
            return session.model_copy(deep=True)

    def get_active_session(self, household_key: str) -> Session | None:
        with self._lock:
            session = self._active_session(household_key)
            return session.model_copy(deep=True) if session else None

    def _update_session(
        self,
        household_key: str,
        session_id: str,
        operation: str,
        *,
        require_unlocked: bool = False,
        **changes: Any,
    ) -> bool:
        self._check_writable(operation)
        with self._lock:
            session = self._owned_session(household_key, session_id)
            if (
                session is None
                or session.ended_at is not None
                or (require_unlocked and session.decision_id is not None)
            ):
                self._record_noop(operation)
                return False
            self._sessions[(household_key, session_id)] = session.model_copy(update=changes)
        return True

    def lock_session_decision(
        self,
        household_key: str,
        session_id: str,
        decision_id: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> bool:
        return self._update_session(
            household_key,
            session_id,
            "lock_session_decision",
            require_unlocked=True,
            decision_id=decision_id,
            decision_payload=dict(payload),
            updated_at=now,
        )

    def record_session_rejection(
        self, household_key: str, session_id: str, now: datetime
    ) -> bool:
        self._check_writable("record_session_rejection")
        with self._lock:
            session = self._owned_session(household_key, session_id)
            if session is None or session.ended_at is not None:
                self._record_noop("record_session_rejection")
                return False
            self._sessions[(household_key, session_id)] = session.model_copy(
                update={
                    "rejection_count": session.rejection_count + 1,
                    "decision_id": None,
                    "decision_payload": None,
                    "updated_at": now,
                }
            )
        return True

    def close_session(
        self,
        household_key: str,
        session_id: str,
        outcome: SessionOutcome,
        now: datetime,
    ) -> bool:
        check_close_outcome(outcome)
        return self._update_session(
            household_key,
            session_id,
            "close_session",
            outcome=outcome,
            ended_at=now,
            updated_at=now,
        )

    def rescue_session(
        self,
        household_key: str,
        session_id: str,
        decision_id: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> bool:
        return self._update_session(
            household_key,
            session_id,
            "rescue_session",
            outcome="rescued",
            decision_id=decision_id,
            decision_payload=dict(payload),
            ended_at=now,
            updated_at=now,
        )

    def append_decision_event(self, household_key: str, event: DecisionEvent) -> bool:
        self._check_writable("append_decision_event")
        key = (household_key, event.id)
        with self._lock:
            if event.household_key != household_key or key in self._event_keys:
                self._record_noop("append_decision_event")
                return False
            self._events.append(event.model_copy(deep=True))
            self._event_keys.add(key)
        return True

    def _owned_events(self, household_key: str) -> list[DecisionEvent]:
        return [event for event in self._events if event.household_key == household_key]

    def get_decision_event(self, household_key: str, event_id: str) -> DecisionEvent | None:
        with self._lock:
            for event in self._owned_events(household_key):
                if event.id == event_id:
                    return event.model_copy(deep=True)
        self._record_noop("get_decision_event")
        return None

    def get_decision_events_by_context_hash(
        self, household_key: str, context_hash: str
    ) -> list[DecisionEvent]:
        with self._lock:
            events = self._owned_events(household_key)
        return [
            event.model_copy(deep=True)
            for event in reversed(events)
            if event.context_hash == context_hash
        ]

    def list_decision_events(self, household_key: str, limit: int = 50) -> list[DecisionEvent]:
        with self._lock:
            events = self._owned_events(household_key)
        newest = list(reversed(events))[: max(0, limit)]
        return [event.model_copy(deep=True) for event in newest]

    def get_latest_decision_event(
        self, household_key: str, user_action: UserAction | None = None
    ) -> DecisionEvent | None:
        with self._lock:
            events = self._owned_events(household_key)
        for event in reversed(events):
            if user_action is None or event.user_action == user_action:
                return event.model_copy(deep=True)
        return None

    def get_fallback_config(self, household_key: str) -> FallbackConfig | None:
        with self._lock:
            config = self._configs.get((household_key, FALLBACK_CONFIG_KEY))
            return config.model_copy(deep=True) if config else None

    def save_fallback_config(self, household_key: str, config: FallbackConfig) -> None:
        self._check_writable("save_fallback_config")
        with self._lock:
            self._configs[(household_key, FALLBACK_CONFIG_KEY)] = config.model_copy(deep=True)

    def upsert_meal(self, meal: Meal) -> None:
        self._check_writable("upsert_meal")
        with self._lock:
            self._meals[meal.id] = meal.model_copy(deep=True)

    def get_meal(self, meal_id: int) -> Meal | None:
        with self._lock:
            meal = self._meals.get(meal_id)
            return meal.model_copy(deep=True) if meal else None

    def list_meals(self, limit: int = 100) -> list[Meal]:
        with self._lock:
            meals = [self._meals[meal_id] for meal_id in sorted(self._meals)]
        return [meal.model_copy(deep=True) for meal in meals[: max(0, limit)]]

    def ping(self) -> bool:
        return not self._closed

    def close(self) -> None:
        self._closed = True
