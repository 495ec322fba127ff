"""Relational storage backend using SQLite with Postgres support.

Runtime statements come only from `decisionos.queries` and pass two gates
before dispatch: the readonly gate, then the tenant-safety analyzer. Schema
changes run through versioned migrations at construction and never through
the runtime gate.
"""

from __future__ import annotations

import json
import re
import sqlite3
from collections.abc import Callable, Sequence
from contextlib import suppress
from datetime import datetime
from threading import Lock
from typing import Any, Literal

from decisionos import queries
from decisionos.config import StoreConfig
from decisionos.logging import get_logger
from decisionos.metrics import MetricsRegistry
from decisionos.models import (
    DecisionEvent,
    FallbackConfig,
    Meal,
    Session,
    SessionOutcome,
    UserAction,
)
from decisionos.sqlcheck import ContractViolation, assert_tenant_safe, is_read_only_sql
from decisionos.store import (
    ActiveSessionExists,
    StorageAdapter,
    check_close_outcome,
    utc_now,
)

logger = get_logger(__name__)

MigrationStep = tuple[int, str, Callable[[], None]]
Fetch = Literal["none", "one", "all"]

_PLACEHOLDER = re.compile(r"\$(\d+)")


def _is_postgres_dsn(dsn: str) -> bool:
    lowered = dsn.strip().lower()
    return lowered.startswith(
        (
            "postgres://",
            "postgresql://",
            "postgres+psycopg://",
            "postgresql+psycopg://",
        )
    )


def _sqlite_path(dsn: str) -> str:
    for prefix in ("sqlite:///", "sqlite://"):
        if dsn.startswith(prefix):
            return dsn[len(prefix) :] or ":memory:"
    return dsn


def _normalize_postgres_ddl(sql: str) -> str:
    return sql.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "BIGSERIAL PRIMARY KEY")


def bind_sqlite(sql: str, params: Sequence[Any]) -> tuple[str, tuple[Any, ...]]:
    """Rewrite ``$n`` to SQLite's numbered ``?n`` form."""
    return _PLACEHOLDER.sub(r"?\1", sql), tuple(params)


def bind_postgres(sql: str, params: Sequence[Any]) -> tuple[str, tuple[Any, ...]]:
    """Rewrite ``$n`` to ``%s`` and expand parameters per occurrence."""
    indexes = [int(match) for match in _PLACEHOLDER.findall(sql)]
    for index in indexes:
        if index < 1 or index > len(params):
            raise ValueError(f"Placeholder ${index} has no parameter")
    escaped = sql.replace("%", "%%")
    return _PLACEHOLDER.sub("%s", escaped), tuple(params[index - 1] for index in indexes)


def _import_psycopg() -> tuple[Any, Any]:
    import psycopg  # type: ignore[import-not-found]
    from psycopg.rows import dict_row  # type: ignore[import-not-found]

    return psycopg, dict_row


class _PostgresConnectionAdapter:
    def __init__(self, raw_conn: Any) -> None:
        self._raw_conn = raw_conn

    def execute(self, query: str, params: tuple[Any, ...] | None = None) -> Any:
        normalized = _normalize_postgres_ddl(query)
        if params is None:
            return self._raw_conn.execute(normalized)
        return self._raw_conn.execute(normalized, params)

    def commit(self) -> None:
        self._raw_conn.commit()

    def rollback(self) -> None:
        self._raw_conn.rollback()

    def close(self) -> None:
        self._raw_conn.close()


def _dump(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def _load_dict(raw: str | None) -> dict[str, Any] | None:
    if raw is None:
        return None
    payload = json.loads(raw)
    return payload if isinstance(payload, dict) else {}


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(raw: str | None) -> datetime | None:
    return datetime.fromisoformat(raw) if raw is not None else None


class SqlStore(StorageAdapter):
    """Tenant-scoped store backed by a SQLite file or a Postgres DSN."""

    def __init__(
        self,
        dsn: str,
        config: StoreConfig | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        super().__init__(config, metrics)
        self._is_postgres = _is_postgres_dsn(dsn)
        self.backend = "postgres" if self._is_postgres else "sqlite"
        self.conn: Any
        self._integrity_errors: tuple[type[BaseException], ...]
        if self._is_postgres:
            try:
                psycopg, dict_row = _import_psycopg()
            except ImportError as exc:
                raise RuntimeError(
                    "Postgres store requires psycopg. "
                    "Install with: pip install 'decisionos[postgres]'"
                ) from exc
            raw_conn = psycopg.connect(dsn, row_factory=dict_row)
            self.conn = _PostgresConnectionAdapter(raw_conn)
            self._integrity_errors = (psycopg.IntegrityError,)
            self._bind = bind_postgres
        else:
            conn = sqlite3.connect(_sqlite_path(dsn), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            self.conn = conn
            self._integrity_errors = (sqlite3.IntegrityError,)
            self._bind = bind_sqlite
        self._lock = Lock()
        self._closed = False
        self._init_schema()

    def close(self) -> None:
        """Close the underlying connection."""
        with self._lock:
            if self._closed:
                return
            self.conn.close()
            self._closed = True

    def __del__(self) -> None:  # pragma: no cover - best-effort cleanup
        with suppress(Exception):
            self.close()

    # ------------------------------------------------------------------
    # Schema migrations (deployment path, outside the runtime gate)
    # ------------------------------------------------------------------

    def _init_schema(self) -> None:
        self._ensure_migrations_table()
        self._apply_migrations()

    def _build_migrations(self) -> list[MigrationStep]:
        return [
            (1, "bootstrap_schema", self._migration_bootstrap_schema),
            (2, "one_active_session", self._migration_one_active_session),
            (3, "append_only_ledger", self._migration_append_only_ledger),
        ]

    def _ensure_migrations_table(self) -> None:
        with self._lock:
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    applied_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            self.conn.commit()

    def _applied_migration_versions(self) -> set[int]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT version FROM schema_migrations ORDER BY version ASC"
            ).fetchall()
        return {int(row["version"]) for row in rows}

    def _apply_migrations(self) -> None:
        migrations = self._build_migrations()
        versions = [version for version, _, _ in migrations]
        if versions != sorted(versions):
            raise RuntimeError("Schema migrations must be ordered by version.")
        if len(versions) != len(set(versions)):
            raise RuntimeError("Schema migrations contain duplicate versions.")

        applied_versions = self._applied_migration_versions()
        for version, name, handler in migrations:
            if version in applied_versions:
                continue
            self._apply_migration(version, name, handler)
            applied_versions.add(version)

    def _apply_migration(
        self,
        version: int,
        name: str,
        handler: Callable[[], None],
    ) -> None:
        savepoint = f"decisionos_migration_v{version}"
        with self._lock:
            self.conn.execute(f"SAVEPOINT {savepoint}")
        try:
            handler()
            statement, params = self._bind(
                "INSERT INTO schema_migrations (version, name) VALUES ($1, $2)",
                (version, name),
            )
            with self._lock:
                self.conn.execute(statement, params)
                self.conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                self.conn.commit()
        except Exception as exc:
            with self._lock:
                with suppress(Exception):
                    self.conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                    self.conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                with suppress(Exception):
                    self.conn.rollback()
            raise RuntimeError(f"Failed schema migration v{version} ({name}).") from exc
        logger.info("schema_migration_applied", backend=self.backend, version=version, name=name)

    def _migration_bootstrap_schema(self) -> None:
        """Create tenant tables and the global meal catalog."""
        with self._lock:
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    household_key TEXT NOT NULL,
                    id TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    ended_at TEXT,
                    context_json TEXT NOT NULL,
                    decision_id TEXT,
                    decision_payload_json TEXT,
                    outcome TEXT NOT NULL,
                    rejection_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (household_key, id)
                )
                """
            )
            self.conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_sessions_household
                ON sessions(household_key, started_at)
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS decision_events (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    household_key TEXT NOT NULL,
                    id TEXT NOT NULL,
                    decided_at TEXT NOT NULL,
                    actioned_at TEXT,
                    user_action TEXT,
                    notes TEXT,
                    decision_payload_json TEXT NOT NULL,
                    meal_id INTEGER,
                    context_hash TEXT,
                    decision_type TEXT
                )
                """
            )
            self.conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_decision_events_household_id
                ON decision_events(household_key, id)
                """
            )
            self.conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_decision_events_context_hash
                ON decision_events(household_key, context_hash)
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS household_configs (
                    household_key TEXT PRIMARY KEY,
                    config_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS meals (
                    id INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    tags_json TEXT NOT NULL,
                    est_minutes INTEGER
                )
                """
            )

    def _migration_one_active_session(self) -> None:
        """At most one pending, open session per household."""
        with self._lock:
            self.conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_one_active
                ON sessions(household_key)
                WHERE outcome = 'pending' AND ended_at IS NULL
                """
            )

    def _migration_append_only_ledger(self) -> None:
        """Reject UPDATE and DELETE on the decision ledger."""
        with self._lock:
            if self._is_postgres:
                self.conn.execute(
                    """
                    CREATE OR REPLACE FUNCTION prevent_decision_events_mutation()
                    RETURNS trigger
                    AS $$
                    BEGIN
                        RAISE EXCEPTION 'decision_events are append-only';
                    END;
                    $$ LANGUAGE plpgsql
                    """
                )
                for operation in ("UPDATE", "DELETE"):
                    trigger = f"decision_events_no_{operation.lower()}"
                    self.conn.execute(f"DROP TRIGGER IF EXISTS {trigger} ON decision_events")
                    self.conn.execute(
                        f"""
                        CREATE TRIGGER {trigger}
                        BEFORE {operation} ON decision_events
                        FOR EACH ROW
                        EXECUTE FUNCTION prevent_decision_events_mutation()
                        """
                    )
                return
            for operation in ("UPDATE", "DELETE"):
                self.conn.execute(
                    f"""
                    CREATE TRIGGER IF NOT EXISTS decision_events_no_{operation.lower()}
                    BEFORE {operation} ON decision_events
                    BEGIN
                        SELECT RAISE(ABORT, 'decision_events are append-only');
                    END;
                    """
                )

    # ------------------------------------------------------------------
    # Runtime gate
    # ------------------------------------------------------------------

    def execute(self, sql: str, params: Sequence[Any] = (), *, fetch: Fetch = "none") -> Any:
        """Run one runtime statement through the readonly gate and the analyzer.

        Returns the affected row count for ``fetch="none"``, a row (or None)
        for ``"one"`` and a list of rows for ``"all"``.
        """
        if not is_read_only_sql(sql) and self.config.readonly:
            self._reject_readonly(queries.name_of(sql))
        try:
            assert_tenant_safe(sql)
        except ContractViolation as exc:
            self.metrics.contract_violations_total.inc(exc.rule)
            logger.error(
                "sql_contract_violation",
                backend=self.backend,
                rule=exc.rule,
                detail=exc.message,
                query=queries.name_of(sql),
            )
            raise
        statement, bound = self._bind(sql, params)
        with self._lock:
            try:
                cursor = self.conn.execute(statement, bound)
                if fetch == "one":
                    result: Any = cursor.fetchone()
                elif fetch == "all":
                    result = cursor.fetchall()
                else:
                    result = cursor.rowcount
                self.conn.commit()
            except Exception:
                with suppress(Exception):
                    self.conn.rollback()
                raise
        return result

    def _write(self, sql: str, params: Sequence[Any], operation: str) -> bool:
        applied = self.execute(sql, params) > 0
        if not applied:
            self._record_noop(operation)
        return applied

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_session(row: Any | None) -> Session | None:
        if row is None:
            return None
        return Session(
            household_key=row["household_key"],
            id=row["id"],
            started_at=datetime.fromisoformat(row["started_at"]),
            ended_at=_parse_dt(row["ended_at"]),
            context=_load_dict(row["context_json"]) or {},
            decision_id=row["decision_id"],
            decision_payload=_load_dict(row["decision_payload_json"]),
            outcome=row["outcome"],
            rejection_count=int(row["rejection_count"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @staticmethod
    def _row_to_event(row: Any) -> DecisionEvent:
        return DecisionEvent(
            household_key=row["household_key"],
            id=row["id"],
            decided_at=datetime.fromisoformat(row["decided_at"]),
            actioned_at=_parse_dt(row["actioned_at"]),
            user_action=row["user_action"],
            notes=row["notes"],
            decision_payload=_load_dict(row["decision_payload_json"]) or {},
            meal_id=row["meal_id"],
            context_hash=row["context_hash"],
            decision_type=row["decision_type"],
        )

    @staticmethod
    def _row_to_meal(row: Any) -> Meal:
        tags = json.loads(row["tags_json"])
        return Meal(
            id=int(row["id"]),
            name=row["name"],
            tags=[tag for tag in tags if isinstance(tag, str)] if isinstance(tags, list) else [],
            est_minutes=row["est_minutes"],
        )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(
        self,
        household_key: str,
        session_id: str,
        context: dict[str, Any],
        started_at: datetime,
    ) -> Session:
        try:
            self.execute(
                queries.SESSION_INSERT,
                (
                    household_key,
                    session_id,
                    started_at.isoformat(),
                    _dump(context),
                    started_at.isoformat(),
                ),
            )
        except self._integrity_errors:
            existing = self.get_active_session(household_key)
            if existing is not None:
                raise ActiveSessionExists(existing.id) from None
            raise
        session = self.get_session(household_key, session_id)
        if session is None:
            raise RuntimeError("Session persistence failed")
        return session

    def get_session(self, household_key: str, session_id: str) -> Session | None:
        row = self.execute(queries.SESSION_SELECT, (household_key, session_id), fetch="one")
        if row is None:
            self._record_noop("get_session")
        return self._row_to_session(row)

    def get_active_session(self, household_key: str) -> Session | None:
        row = self.execute(queries.SESSION_SELECT_ACTIVE, (household_key,), fetch="one")
        return self._row_to_session(row)

    def lock_session_decision(
        self,
        household_key: str,
        session_id: str,
        decision_id: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> bool:
        return self._write(
            queries.SESSION_LOCK_DECISION,
            (household_key, session_id, decision_id, _dump(payload), now.isoformat()),
            "lock_session_decision",
        )

    def record_session_rejection(
        self, household_key: str, session_id: str, now: datetime
    ) -> bool:
        return self._write(
            queries.SESSION_RECORD_REJECTION,
            (household_key, session_id, now.isoformat()),
            "record_session_rejection",
        )

    def close_session(
        self,
        household_key: str,
        session_id: str,
        outcome: SessionOutcome,
        now: datetime,
    ) -> bool:
        check_close_outcome(outcome)
        return self._write(
            queries.SESSION_CLOSE,
            (household_key, session_id, outcome, now.isoformat()),
            "close_session",
        )

    def rescue_session(
        self,
        household_key: str,
        session_id: str,
        decision_id: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> bool:
        return self._write(
            queries.SESSION_RESCUE,
            (household_key, session_id, decision_id, _dump(payload), now.isoformat()),
            "rescue_session",
        )

    # ------------------------------------------------------------------
    # Decision ledger
    # ------------------------------------------------------------------

    def append_decision_event(self, household_key: str, event: DecisionEvent) -> bool:
        if event.household_key != household_key:
            self._check_writable("append_decision_event")
            self._record_noop("append_decision_event")
            return False
        return self._write(
            queries.EVENT_INSERT,
            (
                household_key,
                event.id,
                event.decided_at.isoformat(),
                _iso(event.actioned_at),
                event.user_action,
                event.notes,
                _dump(event.decision_payload),
                event.meal_id,
                event.context_hash,
                event.decision_type,
            ),
            "append_decision_event",
        )

    def get_decision_event(self, household_key: str, event_id: str) -> DecisionEvent | None:
        row = self.execute(queries.EVENT_SELECT, (household_key, event_id), fetch="one")
        if row is None:
            self._record_noop("get_decision_event")
            return None
        return self._row_to_event(row)

    def get_decision_events_by_context_hash(
        self, household_key: str, context_hash: str
    ) -> list[DecisionEvent]:
        rows = self.execute(
            queries.EVENT_SELECT_BY_CONTEXT_HASH, (household_key, context_hash), fetch="all"
        )
        return [self._row_to_event(row) for row in rows]

    def list_decision_events(self, household_key: str, limit: int = 50) -> list[DecisionEvent]:
        rows = self.execute(queries.EVENT_LIST, (household_key, max(0, limit)), fetch="all")
        return [self._row_to_event(row) for row in rows]

    def get_latest_decision_event(
        self, household_key: str, user_action: UserAction | None = None
    ) -> DecisionEvent | None:
        if user_action is None:
            row = self.execute(queries.EVENT_SELECT_LATEST, (household_key,), fetch="one")
        else:
            row = self.execute(
                queries.EVENT_SELECT_LATEST_BY_ACTION, (household_key, user_action), fetch="one"
            )
        return self._row_to_event(row) if row is not None else None

    # ------------------------------------------------------------------
    # Household configuration
    # ------------------------------------------------------------------

    def get_fallback_config(self, household_key: str) -> FallbackConfig | None:
        row = self.execute(queries.CONFIG_SELECT, (household_key,), fetch="one")
        if row is None:
            return None
        return FallbackConfig.model_validate_json(row["config_json"])

    def save_fallback_config(self, household_key: str, config: FallbackConfig) -> None:
        self.execute(
            queries.CONFIG_UPSERT,
            (household_key, config.model_dump_json(), utc_now().isoformat()),
        )

    # ------------------------------------------------------------------
    # Global catalog
    # ------------------------------------------------------------------

    def upsert_meal(self, meal: Meal) -> None:
        self.execute(
            queries.MEAL_UPSERT,
            (meal.id, meal.name, json.dumps(meal.tags), meal.est_minutes),
        )

    def get_meal(self, meal_id: int) -> Meal | None:
        row = self.execute(queries.MEAL_SELECT, (meal_id,), fetch="one")
        return self._row_to_meal(row) if row is not None else None

    def list_meals(self, limit: int = 100) -> list[Meal]:
        rows = self.execute(queries.MEAL_LIST, (max(0, limit),), fetch="all")
        return [self._row_to_meal(row) for row in rows]

    def ping(self) -> bool:
        if self._closed:
            return False
        row = self.execute(queries.PING, fetch="one")
        return row is not None
