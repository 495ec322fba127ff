"""Every runtime statement must satisfy the tenant-safe SQL contract."""

from __future__ import annotations

import pytest

from decisionos.queries import READ_ONLY_QUERIES, RUNTIME_SQL, name_of
from decisionos.sqlcheck import is_read_only_sql, tenant_tables_in, validate


@pytest.mark.parametrize("name", sorted(RUNTIME_SQL))
def test_runtime_statement_passes_analyzer(name: str) -> None:
    assert validate(RUNTIME_SQL[name]) == []


@pytest.mark.parametrize("name", sorted(RUNTIME_SQL))
def test_tenant_statements_bind_household_first(name: str) -> None:
    sql = RUNTIME_SQL[name]
    if tenant_tables_in(sql):
        assert "$1" in sql


@pytest.mark.parametrize("name", sorted(RUNTIME_SQL))
def test_read_only_classification(name: str) -> None:
    assert is_read_only_sql(RUNTIME_SQL[name]) is (name in READ_ONLY_QUERIES)


def test_name_of_known_and_adhoc() -> None:
    assert name_of(RUNTIME_SQL["session_close"]) == "session_close"
    assert name_of("SELECT 2") == "adhoc"
