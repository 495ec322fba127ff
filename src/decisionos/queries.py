"""Every SQL statement the relational backend executes at runtime.

Statements use positional ``$n`` parameters. On tenant tables ``$1`` is
always ``household_key`` and INSERTs list it as the first column. The
relational store rewrites placeholders per driver; the text here is what
the analyzer sees.
"""

from __future__ import annotations

SESSION_COLUMNS = (
    "household_key, id, started_at, ended_at, context_json, decision_id, "
    "decision_payload_json, outcome, rejection_count, created_at, updated_at"
)

EVENT_COLUMNS = (
    "household_key, id, decided_at, actioned_at, user_action, notes, "
    "decision_payload_json, meal_id, context_hash, decision_type"
)

# Sessions

SESSION_INSERT = """
INSERT INTO sessions (
    household_key, id, started_at, ended_at, context_json, decision_id,
    decision_payload_json, outcome, rejection_count, created_at, updated_at
) VALUES ($1, $2, $3, NULL, $4, NULL, NULL, 'pending', 0, $5, $5)
"""

SESSION_SELECT = f"""
SELECT {SESSION_COLUMNS}
FROM sessions
WHERE household_key = $1 AND id = $2
"""

SESSION_SELECT_ACTIVE = f"""
SELECT {SESSION_COLUMNS}
FROM sessions
WHERE household_key = $1 AND outcome = 'pending' AND ended_at IS NULL
ORDER BY started_at DESC
LIMIT 1
"""

# Write-if-absent: only the first writer sees a changed row.
SESSION_LOCK_DECISION = """
UPDATE sessions
SET decision_id = $3, decision_payload_json = $4, updated_at = $5
WHERE household_key = $1 AND id = $2 AND decision_id IS NULL AND ended_at IS NULL
"""

SESSION_RECORD_REJECTION = """
UPDATE sessions
SET rejection_count = rejection_count + 1,
    decision_id = NULL,
    decision_payload_json = NULL,
    updated_at = $3
WHERE household_key = $1 AND id = $2 AND ended_at IS NULL
"""

SESSION_CLOSE = """
UPDATE sessions
SET outcome = $3, ended_at = $4, updated_at = $4
WHERE household_key = $1 AND id = $2 AND ended_at IS NULL
"""

SESSION_RESCUE = """
UPDATE sessions
SET outcome = 'rescued',
    decision_id = $3,
    decision_payload_json = $4,
    ended_at = $5,
    updated_at = $5
WHERE household_key = $1 AND id = $2 AND ended_at IS NULL
"""

# Decision ledger (append-only)

EVENT_INSERT = """
INSERT INTO decision_events (
    household_key, id, decided_at, actioned_at, user_action, notes,
    decision_payload_json, meal_id, context_hash, decision_type
) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
ON CONFLICT (household_key, id) DO NOTHING
"""

EVENT_SELECT = f"""
SELECT {EVENT_COLUMNS}
FROM decision_events
WHERE household_key = $1 AND id = $2
"""

EVENT_SELECT_BY_CONTEXT_HASH = f"""
SELECT {EVENT_COLUMNS}
FROM decision_events
WHERE household_key = $1 AND context_hash = $2
ORDER BY seq DESC
"""

EVENT_LIST = f"""
SELECT {EVENT_COLUMNS}
FROM decision_events
WHERE household_key = $1
ORDER BY seq DESC
LIMIT $2
"""

EVENT_SELECT_LATEST = f"""
SELECT {EVENT_COLUMNS}
FROM decision_events
WHERE household_key = $1
ORDER BY seq DESC
LIMIT 1
"""

EVENT_SELECT_LATEST_BY_ACTION = f"""
SELECT {EVENT_COLUMNS}
FROM decision_events
WHERE household_key = $1 AND user_action = $2
ORDER BY seq DESC
LIMIT 1
"""

# Household configuration

CONFIG_SELECT = """
SELECT config_json
FROM household_configs
WHERE household_key = $1
"""

CONFIG_UPSERT = """
INSERT INTO household_configs (household_key, config_json, updated_at)
VALUES ($1, $2, $3)
ON CONFLICT (household_key) DO UPDATE SET
    config_json = excluded.config_json,
    updated_at = excluded.updated_at
"""

# Global meal catalog

MEAL_UPSERT = """
INSERT INTO meals (id, name, tags_json, est_minutes)
VALUES ($1, $2, $3, $4)
ON CONFLICT (id) DO UPDATE SET
    name = excluded.name,
    tags_json = excluded.tags_json,
    est_minutes = excluded.est_minutes
"""

MEAL_SELECT = """
SELECT id, name, tags_json, est_minutes
FROM meals
WHERE id = $1
"""

MEAL_LIST = """
SELECT id, name, tags_json, est_minutes
FROM meals
ORDER BY id ASC
LIMIT $1
"""

PING = "SELECT 1"

# Name -> statement, for offline checks and the sql-check command.
RUNTIME_SQL: dict[str, str] = {
    "session_insert": SESSION_INSERT,
    "session_select": SESSION_SELECT,
    "session_select_active": SESSION_SELECT_ACTIVE,
    "session_lock_decision": SESSION_LOCK_DECISION,
    "session_record_rejection": SESSION_RECORD_REJECTION,
    "session_close": SESSION_CLOSE,
    "session_rescue": SESSION_RESCUE,
    "event_insert": EVENT_INSERT,
    "event_select": EVENT_SELECT,
    "event_select_by_context_hash": EVENT_SELECT_BY_CONTEXT_HASH,
    "event_list": EVENT_LIST,
    "event_select_latest": EVENT_SELECT_LATEST,
    "event_select_latest_by_action": EVENT_SELECT_LATEST_BY_ACTION,
    "config_select": CONFIG_SELECT,
    "config_upsert": CONFIG_UPSERT,
    "meal_upsert": MEAL_UPSERT,
    "meal_select": MEAL_SELECT,
    "meal_list": MEAL_LIST,
    "ping": PING,
}

READ_ONLY_QUERIES: frozenset[str] = frozenset(
    name
    for name in RUNTIME_SQL
    if name.startswith(("session_select", "event_select", "event_list", "config_select"))
    or name in {"meal_select", "meal_list", "ping"}
)


def name_of(sql: str) -> str:
    """Return the corpus name of a statement, or ``adhoc``."""
    for name, statement in RUNTIME_SQL.items():
        if statement == sql:
            return name
    return "adhoc"
