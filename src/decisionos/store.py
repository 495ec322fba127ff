"""Storage adapter interface shared by the in-memory and relational backends."""

from __future__ import annotations

import hashlib
import json
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from types import TracebackType
from typing import Any

from decisionos.config import StoreConfig
from decisionos.logging import get_logger
from decisionos.metrics import MetricsRegistry, get_metrics
from decisionos.models import (
    TERMINAL_OUTCOMES,
    DecisionEvent,
    FallbackConfig,
    LastRescue,
    Meal,
    Session,
    SessionOutcome,
    UserAction,
)

logger = get_logger(__name__)


class ReadonlyViolation(RuntimeError):
    """A write was attempted while the store is in readonly mode."""

    def __init__(self, operation: str) -> None:
        super().__init__(f"Store is readonly; refused {operation}")
        self.operation = operation


class ActiveSessionExists(RuntimeError):
    """The household already has an active session."""

    def __init__(self, session_id: str | None = None) -> None:
        super().__init__("Household already has an active session")
        self.session_id = session_id


def utc_now() -> datetime:
    return datetime.now(UTC)


def compute_context_hash(context: dict[str, Any]) -> str:
    """Return a SHA256 fingerprint of a decision context."""
    try:
        payload = json.dumps(context, sort_keys=True, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        payload = repr(sorted(context.items(), key=lambda item: str(item[0])))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def check_close_outcome(outcome: SessionOutcome) -> None:
    if outcome not in TERMINAL_OUTCOMES:
        raise ValueError(f"Session outcome must be terminal, got {outcome!r}")


class StorageAdapter(ABC):
    """Tenant-scoped persistence for sessions, the decision ledger and configs.

    Every tenant-scoped method takes ``household_key`` first. A call that
    names another household's row, or a closed session, is a silent no-op:
    reads return None and writes return False. Such no-ops are counted in
    ``decisionos_scoped_noops_total``. Writes raise `ReadonlyViolation`
    while ``config.readonly`` is set.
    """

    backend: str = "abstract"

    def __init__(
        self,
        config: StoreConfig | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self.config = config or StoreConfig()
        self.metrics = metrics or get_metrics()

    def _reject_readonly(self, operation: str) -> None:
        self.metrics.readonly_rejections_total.inc(self.backend)
        logger.warning("readonly_write_rejected", backend=self.backend, operation=operation)
        raise ReadonlyViolation(operation)

    def _check_writable(self, operation: str) -> None:
        if self.config.readonly:
            self._reject_readonly(operation)

    def _record_noop(self, operation: str) -> None:
        self.metrics.scoped_noops_total.inc(self.backend, operation)
        logger.debug("scoped_operation_noop", backend=self.backend, operation=operation)

    # Sessions

    @abstractmethod
    def create_session(
        self,
        household_key: str,
        session_id: str,
        context: dict[str, Any],
        started_at: datetime,
    ) -> Session:
        """Create the household's active session or raise `ActiveSessionExists`."""

    @abstractmethod
    def get_session(self, household_key: str, session_id: str) -> Session | None: ...

    @abstractmethod
    def get_active_session(self, household_key: str) -> Session | None: ...

    @abstractmethod
    def lock_session_decision(
        self,
        household_key: str,
        session_id: str,
        decision_id: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> bool:
        """Write the decision lock only if none is held; True if this call won."""

    @abstractmethod
    def record_session_rejection(
        self, household_key: str, session_id: str, now: datetime
    ) -> bool:
        """Increment the rejection count and clear the lock."""

    @abstractmethod
    def close_session(
        self,
        household_key: str,
        session_id: str,
        outcome: SessionOutcome,
        now: datetime,
    ) -> bool: ...

    @abstractmethod
    def rescue_session(
        self,
        household_key: str,
        session_id: str,
        decision_id: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> bool:
        """Close the session as rescued with the rescue output as its decision."""

    # Decision ledger

    @abstractmethod
    def append_decision_event(self, household_key: str, event: DecisionEvent) -> bool:
        """Append a ledger row; False if the id already exists for the household."""

    @abstractmethod
    def get_decision_event(self, household_key: str, event_id: str) -> DecisionEvent | None: ...

    @abstractmethod
    def get_decision_events_by_context_hash(
        self, household_key: str, context_hash: str
    ) -> list[DecisionEvent]: ...

    @abstractmethod
    def list_decision_events(self, household_key: str, limit: int = 50) -> list[DecisionEvent]:
        """Return the newest ledger rows first."""

    @abstractmethod
    def get_latest_decision_event(
        self, household_key: str, user_action: UserAction | None = None
    ) -> DecisionEvent | None: ...

    def get_last_rescue(self, household_key: str) -> LastRescue | None:
        """Derive the last rescue from the newest ``drm_triggered`` ledger row."""
        event = self.get_latest_decision_event(household_key, "drm_triggered")
        if event is None:
            return None
        fallback_type = event.decision_payload.get("fallback_type")
        if not isinstance(fallback_type, str):
            return None
        return LastRescue(
            fallback_type=fallback_type,
            meal_id=event.meal_id,
            timestamp=event.actioned_at or event.decided_at,
        )

    # Household configuration

    @abstractmethod
    def get_fallback_config(self, household_key: str) -> FallbackConfig | None: ...

    @abstractmethod
    def save_fallback_config(self, household_key: str, config: FallbackConfig) -> None: ...

    # Global catalog

    @abstractmethod
    def upsert_meal(self, meal: Meal) -> None: ...

    @abstractmethod
    def get_meal(self, meal_id: int) -> Meal | None: ...

    @abstractmethod
    def list_meals(self, limit: int = 100) -> list[Meal]: ...

    # Lifecycle

    @abstractmethod
    def ping(self) -> bool: ...

    @abstractmethod
    def close(self) -> None: ...

    def __enter__(self) -> StorageAdapter:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


def create_store(
    config: StoreConfig | None = None,
    metrics: MetricsRegistry | None = None,
) -> StorageAdapter:
    """Build the backend named by the configuration.

    A configured database URL selects the relational backend; otherwise the
    in-memory backend is used and a warning is logged, since nothing it
    holds survives the process.
    """
    from decisionos.memory_store import MemoryStore
    from decisionos.sql_store import SqlStore

    effective = config or StoreConfig.from_env()
    if effective.database_url:
        return SqlStore(effective.database_url, config=effective, metrics=metrics)
    logger.warning("store_fallback_to_memory", reason="no database url configured")
    return MemoryStore(config=effective, metrics=metrics)
