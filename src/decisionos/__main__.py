"""decisionos CLI entrypoint.

Usage:
    python -m decisionos sql-check                 # Check the runtime SQL corpus
    python -m decisionos sql-check --file q.sql    # Check statements from a file
    python -m decisionos sql-check --json          # Machine-readable report
    python -m decisionos sql-check --list-rules    # Print analyzer rules
    python -m decisionos sql-check --metrics       # Append Prometheus metrics
    python -m decisionos --version                 # Print version
"""

from __future__ import annotations

import argparse
import json
import re
import sys
from pathlib import Path
from typing import Any
from uuid import uuid4

from decisionos.config import Settings
from decisionos.logging import (
    bind_request_context,
    clear_logging_context,
    configure_logging,
    get_logger,
)
from decisionos.metrics import MetricsRegistry, get_metrics
from decisionos.queries import RUNTIME_SQL
from decisionos.sqlcheck import describe_rules, validate

logger = get_logger(__name__)

_BLANK_LINES = re.compile(r"\n\s*\n")


def load_statements(path: Path) -> dict[str, str]:
    """Read statements separated by blank lines, named by their position."""
    text = path.read_text(encoding="utf-8")
    blocks = [block.strip() for block in _BLANK_LINES.split(text)]
    return {
        f"{path.name}:{index}": block
        for index, block in enumerate((block for block in blocks if block), start=1)
    }


def run_sql_check(
    statements: dict[str, str], metrics: MetricsRegistry | None = None
) -> dict[str, Any]:
    """Validate each statement and build a report, counting violations by rule."""
    registry = metrics or get_metrics()
    failures: list[dict[str, str]] = []
    for name, sql in statements.items():
        for violation in validate(sql):
            registry.contract_violations_total.inc(violation.rule)
            failures.append({"name": name, "rule": violation.rule, "message": violation.message})
    report: dict[str, Any] = {
        "status": "pass" if not failures else "fail",
        "checked": len(statements),
        "failures": failures,
    }
    logger.info(
        "sql_check_completed",
        status=report["status"],
        checked=report["checked"],
        violations=len(failures),
    )
    return report


def _print_report(report: dict[str, Any]) -> None:
    for failure in report["failures"]:
        print(f"FAIL {failure['name']}: {failure['rule']}: {failure['message']}")
    failed = len({failure["name"] for failure in report["failures"]})
    print(f"{report['checked']} checked, {failed} failed")


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint."""
    from decisionos import __version__

    parser = argparse.ArgumentParser(
        prog="decisionos",
        description="decisionos decision core tools",
    )
    parser.add_argument(
        "--version", "-v", action="version", version=f"decisionos {__version__}"
    )
    subparsers = parser.add_subparsers(dest="command")
    sql_check = subparsers.add_parser(
        "sql-check", help="Check SQL statements against the tenant-safety rules"
    )
    sql_check.add_argument(
        "--file",
        type=Path,
        default=None,
        help="File of statements separated by blank lines (default: runtime corpus)",
    )
    sql_check.add_argument("--json", action="store_true", help="Print a JSON report")
    sql_check.add_argument(
        "--list-rules", action="store_true", help="Print rule codes and exit"
    )
    sql_check.add_argument(
        "--metrics",
        action="store_true",
        help="Print the metrics registry in Prometheus text format after the report",
    )

    args = parser.parse_args(argv)

    if args.command != "sql-check":
        parser.print_help()
        sys.exit(2)

    if args.list_rules:
        rules = describe_rules()
        if args.json:
            print(json.dumps(rules, indent=2))
        else:
            for rule_id, description in rules.items():
                print(f"{rule_id}: {description}")
        sys.exit(0)

    if args.metrics and args.json:
        sql_check.error("--metrics cannot be combined with --json")

    if args.file is not None:
        if not args.file.is_file():
            parser.error(f"--file not found: {args.file}")
        statements = load_statements(args.file)
    else:
        statements = dict(RUNTIME_SQL)

    configure_logging(Settings.from_env().log_level)
    bind_request_context(request_id=uuid4().hex)
    try:
        report = run_sql_check(statements)
    finally:
        clear_logging_context()
    if args.json:
        print(json.dumps(report, indent=2))
    else:
        _print_report(report)
    if args.metrics:
        print(get_metrics().collect_all(), end="")
    sys.exit(0 if report["status"] == "pass" else 1)


if __name__ == "__main__":
    main()
