"""CLI entrypoint tests."""

from __future__ import annotations

import json

import pytest

from decisionos import __version__
from decisionos.__main__ import load_statements, main, run_sql_check
from decisionos.metrics import MetricsRegistry
from decisionos.queries import RUNTIME_SQL


def test_cli_version(capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(["--version"])
    assert excinfo.value.code == 0
    assert f"decisionos {__version__}" in capsys.readouterr().out


def test_cli_without_command_prints_help(capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main([])
    assert excinfo.value.code == 2
    assert "usage:" in capsys.readouterr().out.lower()


def test_sql_check_runtime_corpus_passes(capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(["sql-check"])
    assert excinfo.value.code == 0
    output = capsys.readouterr().out
    assert f"{len(RUNTIME_SQL)} checked, 0 failed" in output


def test_sql_check_json_report(capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(["sql-check", "--json"])
    assert excinfo.value.code == 0
    report = json.loads(capsys.readouterr().out)
    assert report == {"status": "pass", "checked": len(RUNTIME_SQL), "failures": []}


def test_sql_check_file_with_violation(tmp_path, capsys) -> None:
    path = tmp_path / "queries.sql"
    path.write_text(
        "SELECT id FROM sessions\nWHERE household_key = $1\n\n"
        "-- missing tenant filter\nSELECT * FROM decision_events WHERE id = $2\n",
        encoding="utf-8",
    )
    with pytest.raises(SystemExit) as excinfo:
        main(["sql-check", "--file", str(path)])
    assert excinfo.value.code == 1
    output = capsys.readouterr().out
    assert "FAIL queries.sql:2: missing_tenant_predicate" in output
    assert "2 checked, 1 failed" in output


def test_sql_check_missing_file(tmp_path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(["sql-check", "--file", str(tmp_path / "absent.sql")])
    assert excinfo.value.code == 2


def test_sql_check_list_rules(capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(["sql-check", "--list-rules", "--json"])
    assert excinfo.value.code == 0
    rules = json.loads(capsys.readouterr().out)
    assert list(rules)[0] == "multi_statement"
    assert "update_missing_tenant_predicate" in rules


def test_load_statements_skips_blank_blocks(tmp_path) -> None:
    path = tmp_path / "batch.sql"
    path.write_text("\n\nSELECT 1\n\n\n\nSELECT 2\n", encoding="utf-8")
    assert load_statements(path) == {"batch.sql:1": "SELECT 1", "batch.sql:2": "SELECT 2"}


def test_run_sql_check_report() -> None:
    report = run_sql_check({"bad": "UPDATE sessions SET outcome=$2 WHERE id=$3"})
    assert report["status"] == "fail"
    assert report["failures"] == [
        {
            "name": "bad",
            "rule": "update_missing_tenant_predicate",
            "message": "UPDATE sessions must filter on household_key = $1 in WHERE",
        }
    ]


def test_run_sql_check_counts_violations_by_rule() -> None:
    registry = MetricsRegistry()
    run_sql_check(
        {
            "ok": "SELECT id FROM sessions WHERE household_key = $1",
            "bad": "SELECT id FROM sessions WHERE NOT household_key = $1",
        },
        metrics=registry,
    )
    assert registry.contract_violations_total.get("negated_tenant_predicate") == 1
    assert registry.contract_violations_total.get("missing_tenant_predicate") == 0


def test_sql_check_metrics_output(tmp_path, capsys) -> None:
    path = tmp_path / "queries.sql"
    path.write_text("SELECT * FROM decision_events WHERE id = $2\n", encoding="utf-8")
    with pytest.raises(SystemExit) as excinfo:
        main(["sql-check", "--file", str(path), "--metrics"])
    assert excinfo.value.code == 1
    output = capsys.readouterr().out
    assert "1 checked, 1 failed" in output
    assert "# TYPE decisionos_contract_violations_total counter" in output
    assert 'decisionos_contract_violations_total{rule="missing_tenant_predicate"}' in output


def test_sql_check_metrics_rejects_json() -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(["sql-check", "--metrics", "--json"])
    assert excinfo.value.code == 2
