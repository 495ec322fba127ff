"""Tenant-safety analyzer tests."""

from __future__ import annotations

import pytest

from decisionos.sqlcheck import (
    RULES,
    ContractViolation,
    assert_tenant_safe,
    is_read_only_sql,
    normalize_sql,
    tenant_tables_in,
    validate,
)


def _rules(sql: str) -> list[str]:
    return [violation.rule for violation in validate(sql)]


def test_normalize_strips_comments_and_literals() -> None:
    sql = "SELECT 'a;b' -- trailing; comment\nFROM meals /* block */"
    assert normalize_sql(sql) == "SELECT '' FROM meals"


def test_normalize_handles_escaped_quotes() -> None:
    assert normalize_sql("SELECT id FROM meals WHERE name = 'it''s'") == (
        "SELECT id FROM meals WHERE name = ''"
    )


def test_normalize_unterminated_block_comment_consumes_rest() -> None:
    assert normalize_sql("SELECT 1 /* never closed; DROP TABLE meals") == "SELECT 1"


def test_comment_markers_inside_literals_are_data() -> None:
    assert normalize_sql("SELECT id FROM meals WHERE name = '--x' AND id = $1") == (
        "SELECT id FROM meals WHERE name = '' AND id = $1"
    )


def test_multi_statement_rejected() -> None:
    assert "multi_statement" in _rules("SELECT 1; SELECT 2")


def test_semicolon_inside_literal_is_allowed() -> None:
    assert validate("SELECT id FROM meals WHERE name = ';'") == []


@pytest.mark.parametrize(
    "sql",
    [
        "DELETE FROM sessions WHERE household_key = $1",
        "DROP TABLE meals",
        "TRUNCATE decision_events",
        "ALTER TABLE sessions ADD COLUMN x TEXT",
        "CREATE TABLE t (id INTEGER)",
        "GRANT SELECT ON meals TO public",
    ],
)
def test_banned_keywords(sql: str) -> None:
    assert "banned_keyword" in _rules(sql)


def test_banned_keyword_in_comment_or_literal_is_ignored() -> None:
    assert validate("SELECT id FROM meals -- DROP TABLE meals") == []
    assert validate("SELECT id FROM meals WHERE name = 'drop'") == []


def test_missing_tenant_predicate() -> None:
    assert _rules("SELECT * FROM decision_events WHERE id = $2") == ["missing_tenant_predicate"]


def test_predicate_hidden_in_comment_does_not_count() -> None:
    sql = "SELECT * FROM sessions WHERE id = $2 -- AND household_key = $1"
    assert _rules(sql) == ["missing_tenant_predicate"]


def test_schema_qualified_and_quoted_tables_resolve() -> None:
    assert _rules('SELECT * FROM public."sessions" WHERE id = $2') == [
        "missing_tenant_predicate"
    ]


def test_predicate_in_select_list_does_not_filter() -> None:
    assert "missing_tenant_predicate" in _rules(
        "SELECT household_key = $1 FROM decision_events"
    )


def test_tenant_predicate_wrong_param() -> None:
    assert _rules("SELECT * FROM sessions WHERE household_key = $2") == [
        "tenant_predicate_wrong_param"
    ]
    assert _rules("SELECT * FROM sessions WHERE household_key = $10") == [
        "tenant_predicate_wrong_param"
    ]


def test_reverse_tenant_predicate() -> None:
    assert "reverse_tenant_predicate" in _rules("SELECT * FROM sessions WHERE $1 = household_key")


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT * FROM sessions WHERE household_key IN ($1, $2)",
        "SELECT * FROM sessions WHERE household_key = ANY($1)",
    ],
)
def test_tenant_predicate_in_list(sql: str) -> None:
    assert "tenant_predicate_in_list" in _rules(sql)


def test_tenant_predicate_or() -> None:
    sql = "SELECT * FROM sessions WHERE household_key = $1 OR id = $2"
    assert "tenant_predicate_or" in _rules(sql)


def test_or_allowed_on_global_tables() -> None:
    assert validate("SELECT * FROM meals WHERE id = $1 OR name = $2") == []


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT * FROM sessions WHERE household_key = 'house-a'",
        "SELECT * FROM sessions WHERE household_key = 42",
    ],
)
def test_literal_tenant_value(sql: str) -> None:
    assert _rules(sql) == ["literal_tenant_value"]


def test_join_with_qualified_predicates_passes() -> None:
    sql = (
        "SELECT s.id, de.id FROM sessions s "
        "JOIN decision_events de ON de.household_key = $1 "
        "WHERE s.household_key = $1"
    )
    assert validate(sql) == []


def test_join_predicate_unqualified() -> None:
    sql = (
        "SELECT * FROM sessions s JOIN decision_events de ON s.id = de.id "
        "WHERE household_key = $1"
    )
    assert "join_predicate_unqualified" in _rules(sql)


def test_join_requires_predicate_per_alias() -> None:
    sql = (
        "SELECT * FROM sessions s JOIN decision_events de ON de.household_key = $1 "
        "WHERE s.id = $2"
    )
    violations = validate(sql)
    assert [violation.rule for violation in violations] == ["missing_tenant_predicate"]
    assert "sessions" in violations[0].message


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT s.id FROM sessions s WHERE s.household_key = $1 "
        "UNION ALL SELECT s.id FROM sessions s",
        "SELECT id FROM sessions WHERE household_key = $1 "
        "INTERSECT SELECT id FROM sessions WHERE household_key = $1",
        "SELECT id FROM decision_events WHERE household_key = $1 "
        "EXCEPT SELECT id FROM decision_events WHERE household_key = $1",
    ],
)
def test_set_operation_on_tenant_table(sql: str) -> None:
    assert "set_operation_on_tenant_table" in _rules(sql)


def test_set_operation_on_global_table_passes() -> None:
    assert validate("SELECT id FROM meals WHERE id = $1 UNION SELECT id FROM meals") == []


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT id FROM sessions WHERE NOT household_key = $1",
        "SELECT id FROM sessions WHERE NOT (household_key = $1)",
        "SELECT id FROM sessions s WHERE not s.household_key = $1",
        "SELECT id FROM sessions WHERE id = $2 AND NOT (outcome = $3 AND household_key = $1)",
    ],
)
def test_negated_tenant_predicate(sql: str) -> None:
    assert "negated_tenant_predicate" in _rules(sql)


def test_not_on_other_columns_passes() -> None:
    sql = (
        "SELECT id FROM sessions WHERE household_key = $1 "
        "AND ended_at IS NOT NULL AND NOT (outcome = $2)"
    )
    assert validate(sql) == []


def test_left_join_on_does_not_filter_from_table() -> None:
    sql = (
        "SELECT s.id FROM sessions s LEFT JOIN decision_events d "
        "ON s.household_key = $1 AND d.household_key = $1"
    )
    violations = validate(sql)
    assert [violation.rule for violation in violations] == ["missing_tenant_predicate"]
    assert "sessions" in violations[0].message


def test_left_join_on_filters_joined_table() -> None:
    sql = (
        "SELECT s.id FROM sessions s LEFT JOIN decision_events d "
        "ON d.household_key = $1 AND d.id = s.decision_id "
        "WHERE s.household_key = $1"
    )
    assert validate(sql) == []


@pytest.mark.parametrize("kind", ["RIGHT", "RIGHT OUTER", "FULL"])
def test_outer_join_on_does_not_filter_joined_table(kind: str) -> None:
    sql = f"SELECT m.id FROM meals m {kind} JOIN sessions s ON s.household_key = $1"
    violations = validate(sql)
    assert [violation.rule for violation in violations] == ["missing_tenant_predicate"]
    assert "sessions" in violations[0].message


def test_on_predicate_only_counts_for_its_own_join() -> None:
    sql = (
        "SELECT s.id FROM sessions s "
        "JOIN decision_events d ON d.household_key = $1 AND s.household_key = $1 "
        "WHERE s.id = $2"
    )
    violations = validate(sql)
    assert [violation.rule for violation in violations] == ["missing_tenant_predicate"]
    assert "sessions" in violations[0].message


def test_comma_join_requires_predicate_per_alias() -> None:
    sql = "SELECT * FROM sessions s, decision_events de WHERE s.household_key = $1"
    violations = validate(sql)
    assert [violation.rule for violation in violations] == ["missing_tenant_predicate"]
    assert "decision_events" in violations[0].message


def test_update_without_tenant_predicate() -> None:
    with pytest.raises(ContractViolation) as excinfo:
        assert_tenant_safe("UPDATE sessions SET outcome=$2 WHERE id=$3")
    assert excinfo.value.rule == "update_missing_tenant_predicate"


def test_update_predicate_in_set_clause_does_not_count() -> None:
    sql = "UPDATE sessions SET household_key = $1 WHERE id = $2"
    assert _rules(sql) == ["update_missing_tenant_predicate"]


def test_update_without_where() -> None:
    assert _rules("UPDATE sessions SET outcome = $2") == ["update_missing_tenant_predicate"]


@pytest.mark.parametrize(
    "sql",
    [
        "INSERT INTO decision_events (id, household_key) VALUES ($2, $1)",
        "INSERT INTO decision_events (household_key, id) VALUES ($2, $1)",
        "INSERT INTO sessions VALUES ($1, $2)",
        "INSERT INTO decision_events (household_key, id) VALUES ($1, $2), ($3, $4)",
    ],
)
def test_insert_tenant_param_position(sql: str) -> None:
    assert _rules(sql) == ["insert_tenant_param_position"]


def test_insert_multi_row_with_tenant_first_passes() -> None:
    sql = "INSERT INTO decision_events (household_key, id) VALUES ($1, $2), ($1, $3)"
    assert validate(sql) == []


def test_on_conflict_on_constraint() -> None:
    sql = (
        "INSERT INTO household_configs (household_key, config_json, updated_at) "
        "VALUES ($1, $2, $3) ON CONFLICT ON CONSTRAINT household_configs_pkey DO NOTHING"
    )
    assert _rules(sql) == ["on_conflict_on_constraint"]


@pytest.mark.parametrize(
    "conflict",
    ["ON CONFLICT (id) DO NOTHING", "ON CONFLICT DO NOTHING"],
)
def test_conflict_target_missing_tenant(conflict: str) -> None:
    sql = f"INSERT INTO decision_events (household_key, id) VALUES ($1, $2) {conflict}"
    assert _rules(sql) == ["conflict_target_missing_tenant"]


def test_cte_on_tenant_table() -> None:
    sql = (
        "WITH recent AS (SELECT * FROM decision_events WHERE household_key = $1) "
        "SELECT * FROM recent"
    )
    assert "cte_on_tenant_table" in _rules(sql)


def test_cte_hiding_update_is_rejected() -> None:
    sql = (
        "WITH x AS (UPDATE decision_events SET notes = $2 RETURNING id) "
        "SELECT * FROM x"
    )
    assert "cte_on_tenant_table" in _rules(sql)


@pytest.mark.parametrize(
    "tail",
    [
        "AND id IN (SELECT session_id FROM decision_events WHERE household_key = $1)",
        "AND EXISTS(SELECT 1 FROM decision_events WHERE household_key = $1)",
        "AND id = ANY(SELECT id FROM decision_events WHERE household_key = $1)",
    ],
)
def test_subquery_on_tenant_table(tail: str) -> None:
    sql = f"SELECT * FROM sessions WHERE household_key = $1 {tail}"
    assert "subquery_on_tenant_table" in _rules(sql)


def test_assert_tenant_safe_passes_clean_statement() -> None:
    assert_tenant_safe("SELECT id FROM sessions WHERE household_key = $1 AND id = $2")


def test_assert_reports_first_violation() -> None:
    with pytest.raises(ContractViolation) as excinfo:
        assert_tenant_safe("SELECT * FROM sessions; DROP TABLE sessions")
    assert excinfo.value.rule == "multi_statement"
    assert "multi_statement" in str(excinfo.value)


def test_rule_registry_codes() -> None:
    assert RULES[0] == "multi_statement"
    assert {
        "missing_tenant_predicate",
        "join_predicate_unqualified",
        "update_missing_tenant_predicate",
        "cte_on_tenant_table",
        "subquery_on_tenant_table",
        "set_operation_on_tenant_table",
        "negated_tenant_predicate",
    } <= set(RULES)


@pytest.mark.parametrize(
    ("sql", "expected"),
    [
        ("SELECT 1", True),
        ("  -- leading comment\nSELECT 1", True),
        ("WITH x AS (SELECT 1) SELECT * FROM x", True),
        ("INSERT INTO meals (id) VALUES ($1)", False),
        ("SELECT 1; DROP TABLE meals", False),
        ("SELECT 'update'", False),
        ("SELECT * FROM meals FOR UPDATE", False),
        ("", False),
        ("/* only a comment", False),
    ],
)
def test_is_read_only_sql(sql: str, expected: bool) -> None:
    assert is_read_only_sql(sql) is expected


def test_tenant_tables_in() -> None:
    sql = (
        "SELECT * FROM sessions s JOIN decision_events de ON de.household_key = $1 "
        "WHERE s.household_key = $1"
    )
    assert tenant_tables_in(sql) == {"sessions", "decision_events"}
    assert tenant_tables_in("SELECT * FROM meals") == set()
