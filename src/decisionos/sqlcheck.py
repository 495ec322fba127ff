"""Static tenant-safety analyzer for parameterized SQL.

The analyzer works on statement text alone. It does not parse SQL; it
normalizes the text, extracts table references, and applies a fixed set of
token-level rules. Whole syntactic categories (multi-statement text, DDL,
CTEs, subqueries and set operations on tenant tables, OR-combined or negated
tenant predicates) are rejected outright because predicate coverage inside
them cannot be proven at this level. A tenant predicate in a JOIN's ON
condition only counts for the table that JOIN brings in.

Protocol: on every tenant-scoped statement, positional parameter ``$1`` is
the household key.

Each rule is a pure function returning a list of `Violation` values;
`validate` aggregates them in pipeline order and `assert_tenant_safe` raises
`ContractViolation` for the first one.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from functools import cached_property

TENANT_KEY_COLUMN = "household_key"

# Single source of truth for tenant scoping.
TENANT_TABLES: frozenset[str] = frozenset(
    {"sessions", "decision_events", "household_configs"}
)
GLOBAL_TABLES: frozenset[str] = frozenset({"meals", "schema_migrations"})

BANNED_KEYWORDS: tuple[str, ...] = (
    "DELETE",
    "ALTER",
    "CREATE",
    "DROP",
    "TRUNCATE",
    "COPY",
    "GRANT",
    "REVOKE",
    "EXECUTE",
)
MUTATION_KEYWORDS: tuple[str, ...] = ("INSERT", "UPDATE", "MERGE", *BANNED_KEYWORDS)

_ALIAS_STOPWORDS = frozenset(
    {
        "AS", "ON", "SET", "WHERE", "JOIN", "LEFT", "RIGHT", "INNER", "OUTER",
        "FULL", "CROSS", "NATURAL", "USING", "ORDER", "GROUP", "LIMIT", "OFFSET",
        "HAVING", "UNION", "EXCEPT", "INTERSECT", "VALUES", "RETURNING",
        "DEFAULT", "SELECT", "FOR", "WINDOW", "ONLY", "LATERAL", "FETCH",
        "WITH", "DO", "NOTHING", "CONFLICT", "AND", "OR", "NOT",
    }
)

_IDENT = r'"?[A-Za-z_][\w$]*"?'
_NAME = rf"{_IDENT}(?:\s*\.\s*{_IDENT})?"
_FROM_LIST = re.compile(
    r"\bFROM\s+(.*?)(?=\b(?:WHERE|GROUP|ORDER|LIMIT|OFFSET|HAVING|UNION|EXCEPT|"
    r"INTERSECT|RETURNING|JOIN|LEFT|RIGHT|INNER|FULL|CROSS|NATURAL|ON|FOR|"
    r"WINDOW|FETCH)\b|\)|$)",
    re.IGNORECASE,
)
_JOIN_REF = re.compile(
    rf"(?:\b(RIGHT|FULL)\s+(?:OUTER\s+)?)?\bJOIN\s+(?:LATERAL\s+)?({_NAME})"
    rf"(?:\s+(?:AS\s+)?({_IDENT}))?",
    re.I,
)
_JOIN_SCOPE_END = re.compile(
    r"\b(?:JOIN|LEFT|RIGHT|INNER|FULL|CROSS|NATURAL|WHERE|GROUP|ORDER|LIMIT|"
    r"OFFSET|HAVING|WINDOW|FETCH|FOR|RETURNING|UNION|EXCEPT|INTERSECT)\b",
    re.IGNORECASE,
)
_UPDATE_REF = re.compile(
    rf"(?<!DO )(?<!FOR )\bUPDATE\s+(?:ONLY\s+)?({_NAME})(?:\s+(?:AS\s+)?({_IDENT}))?", re.I
)
_INSERT_REF = re.compile(rf"\bINSERT\s+INTO\s+({_NAME})(?:\s+AS\s+({_IDENT}))?", re.I)
_FROM_ITEM = re.compile(rf"^\s*(?:ONLY\s+)?({_NAME})(?:\s+(?:AS\s+)?({_IDENT}))?\s*$", re.I)

_TENANT_PREDICATE = re.compile(
    r"(?:(?<![\w$.\"])\"?([A-Za-z_][\w$]*)\"?\s*\.\s*|(?<![\w$.\"]))"
    r"household_key\s*=\s*(\$\d+|''|-?\d+(?:\.\d+)?)(?![\w.])",
    re.IGNORECASE,
)
_REVERSE_PREDICATE = re.compile(
    r"(\$\d+|''|-?\d+(?:\.\d+)?)\s*=\s*(?:\"?[A-Za-z_][\w$]*\"?\s*\.\s*)?household_key\b",
    re.IGNORECASE,
)
_IN_LIST_PREDICATE = re.compile(
    r"\bhousehold_key\s+(?:NOT\s+)?IN\s*\(|\bhousehold_key\s*=\s*(?:ANY|SOME|ALL)\s*\(",
    re.IGNORECASE,
)
_WHERE = re.compile(r"\bWHERE\b", re.IGNORECASE)
_SET_OPERATION = re.compile(r"\b(?:UNION|INTERSECT|EXCEPT)\b", re.IGNORECASE)
_NEGATION = re.compile(r"\bNOT\b\s*", re.IGNORECASE)
_TENANT_OPERAND = re.compile(
    r"(?:\"?[A-Za-z_][\w$]*\"?\s*\.\s*)?household_key\b", re.IGNORECASE
)
_OR = re.compile(r"\bOR\b", re.IGNORECASE)
_CTE = re.compile(r"^WITH\b|\bWITH\s+(?:RECURSIVE\s+)?[\w\"]+\s+AS\s*\(", re.IGNORECASE)
_SUBQUERY = re.compile(r"\(\s*SELECT\b", re.IGNORECASE)
_ON_CONSTRAINT = re.compile(r"\bON\s+CONFLICT\s+ON\s+CONSTRAINT\b", re.IGNORECASE)
_ON_CONFLICT = re.compile(r"\bON\s+CONFLICT\b\s*(\(([^)]*)\))?", re.IGNORECASE)
_INSERT_COLUMNS = re.compile(
    rf"\bINSERT\s+INTO\s+{_NAME}(?:\s+AS\s+{_IDENT})?\s*\(([^)]*)\)\s*VALUES\s*",
    re.IGNORECASE,
)
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class Violation:
    """A single rule failure."""

    rule: str
    message: str


class ContractViolation(RuntimeError):
    """A statement broke the tenant-safe SQL contract.

    Always a programming error: never retried, never swallowed.
    """

    def __init__(self, rule: str, message: str) -> None:
        super().__init__(f"{rule}: {message}")
        self.rule = rule
        self.message = message


@dataclass(frozen=True)
class TableRef:
    """A table reference extracted from a statement."""

    table: str
    alias: str | None
    clause: str  # FROM, JOIN, UPDATE, INSERT
    # Text range of this JOIN's own ON condition. None when predicates
    # there cannot restrict the table (FROM items, RIGHT and FULL joins).
    join_span: tuple[int, int] | None = None

    @property
    def qualifier(self) -> str:
        return self.alias or self.table

    @property
    def is_tenant(self) -> bool:
        return self.table in TENANT_TABLES


@dataclass(frozen=True)
class TenantPredicate:
    """An ``[alias.]household_key = <operand>`` occurrence."""

    alias: str | None
    operand: str
    position: int

    @property
    def param_index(self) -> int | None:
        if self.operand.startswith("$"):
            return int(self.operand[1:])
        return None


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def _scan(sql: str, *, strip_literals: bool) -> str:
    """Remove comments and optionally blank out single-quoted literals.

    Comment markers inside literals are data, and quotes inside comments are
    not literals, so both are handled in one pass. An unterminated block
    comment or literal consumes the rest of the text.
    """
    out: list[str] = []
    i = 0
    length = len(sql)
    while i < length:
        char = sql[i]
        pair = sql[i : i + 2]
        if pair == "--":
            end = sql.find("\n", i)
            i = length if end == -1 else end
            out.append(" ")
            continue
        if pair == "/*":
            end = sql.find("*/", i + 2)
            i = length if end == -1 else end + 2
            out.append(" ")
            continue
        if char == "'":
            j = i + 1
            while j < length:
                if sql[j] == "'":
                    if sql[j + 1 : j + 2] == "'":
                        j += 2
                        continue
                    break
                j += 1
            literal_end = min(j + 1, length)
            out.append("''" if strip_literals else sql[i:literal_end])
            i = literal_end
            continue
        out.append(char)
        i += 1
    return "".join(out)


def strip_comments(sql: str) -> str:
    """Return the statement with comments removed and literals kept."""
    return _scan(sql, strip_literals=False)


def normalize_sql(sql: str) -> str:
    """Strip comments, blank string literals, and collapse whitespace."""
    return _WHITESPACE.sub(" ", _scan(sql, strip_literals=True)).strip()


def _contains_keyword(text: str, keywords: tuple[str, ...]) -> list[str]:
    upper = text.upper()
    return [kw for kw in keywords if re.search(rf"\b{kw}\b", upper)]


def _clean_name(raw: str) -> str:
    last = raw.split(".")[-1].strip()
    return last.strip('"').lower()


def _clean_alias(raw: str | None) -> str | None:
    if raw is None:
        return None
    alias = raw.strip().strip('"')
    if alias.upper() in _ALIAS_STOPWORDS:
        return None
    return alias.lower()


def _split_top_level(text: str, sep: str = ",") -> list[str]:
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    for char in text:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        if char == sep and depth == 0:
            parts.append("".join(current))
            current = []
            continue
        current.append(char)
    parts.append("".join(current))
    return parts


def _value_tuples(text: str) -> list[str]:
    """Return the bodies of consecutive top-level ``(...)`` groups."""
    tuples: list[str] = []
    i = 0
    while i < len(text) and text[i] == "(":
        depth = 0
        for j in range(i, len(text)):
            if text[j] == "(":
                depth += 1
            elif text[j] == ")":
                depth -= 1
                if depth == 0:
                    tuples.append(text[i + 1 : j])
                    i = j + 1
                    break
        else:
            tuples.append(text[i + 1 :])
            return tuples
        rest = text[i:].lstrip()
        if not rest.startswith(","):
            break
        i = len(text) - len(rest[1:].lstrip())
    return tuples


# ---------------------------------------------------------------------------
# Statement model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ParsedStatement:
    """Normalized statement plus the facts every rule works from."""

    raw: str
    normalized: str

    @cached_property
    def verb(self) -> str:
        first = self.normalized.split(" ", 1)[0] if self.normalized else ""
        return first.upper()

    @cached_property
    def references(self) -> tuple[TableRef, ...]:
        text = self.normalized
        refs: list[TableRef] = []
        for match in _FROM_LIST.finditer(text):
            for item in _split_top_level(match.group(1)):
                parsed = _FROM_ITEM.match(item)
                if parsed is None:
                    continue
                refs.append(
                    TableRef(_clean_name(parsed.group(1)), _clean_alias(parsed.group(2)), "FROM")
                )
        for match in _JOIN_REF.finditer(text):
            name = _clean_name(match.group(2))
            if name.upper() in _ALIAS_STOPWORDS:
                continue
            span = None
            if match.group(1) is None:
                end = _JOIN_SCOPE_END.search(text, match.end())
                span = (match.end(), end.start() if end else len(text))
            refs.append(TableRef(name, _clean_alias(match.group(3)), "JOIN", span))
        for pattern, clause in ((_UPDATE_REF, "UPDATE"), (_INSERT_REF, "INSERT")):
            for match in pattern.finditer(text):
                name = _clean_name(match.group(1))
                if name.upper() in _ALIAS_STOPWORDS:
                    continue
                refs.append(TableRef(name, _clean_alias(match.group(2)), clause))
        return tuple(refs)

    @cached_property
    def tenant_refs(self) -> tuple[TableRef, ...]:
        return tuple(ref for ref in self.references if ref.is_tenant)

    @property
    def is_multi_tenant(self) -> bool:
        return len(self.tenant_refs) > 1

    @cached_property
    def predicates(self) -> tuple[TenantPredicate, ...]:
        return tuple(
            TenantPredicate(
                alias=match.group(1).lower() if match.group(1) else None,
                operand=match.group(2),
                position=match.start(),
            )
            for match in _TENANT_PREDICATE.finditer(self.normalized)
        )

    @cached_property
    def where_start(self) -> int | None:
        match = _WHERE.search(self.normalized)
        return match.start() if match else None

    def binds(self, predicate: TenantPredicate, ref: TableRef) -> bool:
        """Return True if the predicate names the given reference."""
        if predicate.alias is None:
            return not self.is_multi_tenant
        return predicate.alias == ref.qualifier

    def covers(self, predicate: TenantPredicate, ref: TableRef) -> bool:
        """Return True if the predicate filters the reference's rows.

        WHERE filters every reference. An ON condition only filters the
        table its own inner or left JOIN brings in.
        """
        if not self.binds(predicate, ref):
            return False
        if self.where_start is not None and predicate.position > self.where_start:
            return True
        if ref.join_span is None:
            return False
        start, end = ref.join_span
        return start <= predicate.position < end


def parse_statement(sql: str) -> ParsedStatement:
    """Normalize a statement for rule evaluation."""
    return ParsedStatement(raw=sql, normalized=normalize_sql(sql))


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def check_multi_statement(statement: ParsedStatement) -> list[Violation]:
    if ";" not in statement.normalized:
        return []
    return [Violation("multi_statement", "Statement separator ';' is not allowed")]


def check_banned_keywords(statement: ParsedStatement) -> list[Violation]:
    return [
        Violation("banned_keyword", f"Keyword {keyword} is not allowed")
        for keyword in _contains_keyword(statement.normalized, BANNED_KEYWORDS)
    ]


def check_cte(statement: ParsedStatement) -> list[Violation]:
    if not statement.tenant_refs or not _CTE.search(statement.normalized):
        return []
    return [
        Violation(
            "cte_on_tenant_table",
            "WITH clauses are not allowed on statements touching tenant tables",
        )
    ]


def check_subquery(statement: ParsedStatement) -> list[Violation]:
    if not statement.tenant_refs or not _SUBQUERY.search(statement.normalized):
        return []
    return [
        Violation(
            "subquery_on_tenant_table",
            "Subqueries are not allowed on statements touching tenant tables",
        )
    ]


def check_set_operation(statement: ParsedStatement) -> list[Violation]:
    if not statement.tenant_refs or not _SET_OPERATION.search(statement.normalized):
        return []
    return [
        Violation(
            "set_operation_on_tenant_table",
            "UNION, INTERSECT and EXCEPT are not allowed on statements touching tenant tables",
        )
    ]


def check_negated_predicate(statement: ParsedStatement) -> list[Violation]:
    text = statement.normalized
    for match in _NEGATION.finditer(text):
        operand = text[match.end() :]
        if operand.startswith("("):
            groups = _value_tuples(operand)
            negated = bool(groups) and _TENANT_OPERAND.search(groups[0]) is not None
        else:
            negated = _TENANT_OPERAND.match(operand) is not None
        if negated:
            return [
                Violation(
                    "negated_tenant_predicate",
                    f"{TENANT_KEY_COLUMN} predicates must not be negated with NOT",
                )
            ]
    return []


def check_reverse_predicate(statement: ParsedStatement) -> list[Violation]:
    return [
        Violation(
            "reverse_tenant_predicate",
            f"Write '{TENANT_KEY_COLUMN} = $1', not '{match.group(1)} = {TENANT_KEY_COLUMN}'",
        )
        for match in _REVERSE_PREDICATE.finditer(statement.normalized)
    ]


def check_in_list_predicate(statement: ParsedStatement) -> list[Violation]:
    if not _IN_LIST_PREDICATE.search(statement.normalized):
        return []
    return [
        Violation(
            "tenant_predicate_in_list",
            f"{TENANT_KEY_COLUMN} must be compared with '=', not IN/ANY",
        )
    ]


def check_or_predicate(statement: ParsedStatement) -> list[Violation]:
    if not statement.tenant_refs or not _OR.search(statement.normalized):
        return []
    return [
        Violation(
            "tenant_predicate_or",
            "OR is not allowed on statements touching tenant tables",
        )
    ]


def check_literal_tenant_value(statement: ParsedStatement) -> list[Violation]:
    return [
        Violation(
            "literal_tenant_value",
            f"{TENANT_KEY_COLUMN} must be bound to $1, not a literal",
        )
        for predicate in statement.predicates
        if predicate.param_index is None
    ]


def check_wrong_param(statement: ParsedStatement) -> list[Violation]:
    return [
        Violation(
            "tenant_predicate_wrong_param",
            f"{TENANT_KEY_COLUMN} is bound to {predicate.operand}; it must be $1",
        )
        for predicate in statement.predicates
        if predicate.param_index is not None and predicate.param_index != 1
    ]


def check_join_qualification(statement: ParsedStatement) -> list[Violation]:
    if not statement.is_multi_tenant:
        return []
    if all(predicate.alias is not None for predicate in statement.predicates):
        return []
    return [
        Violation(
            "join_predicate_unqualified",
            "Statements joining tenant tables must qualify every "
            f"{TENANT_KEY_COLUMN} predicate with its table alias",
        )
    ]


def check_missing_predicate(statement: ParsedStatement) -> list[Violation]:
    violations: list[Violation] = []
    for ref in statement.tenant_refs:
        if ref.clause in {"UPDATE", "INSERT"}:
            continue
        bound = [
            predicate
            for predicate in statement.predicates
            if statement.covers(predicate, ref)
        ]
        if any(predicate.param_index == 1 for predicate in bound):
            continue
        if bound:
            # Reported by the wrong-param or literal rules.
            continue
        violations.append(
            Violation(
                "missing_tenant_predicate",
                f"{ref.table} ({ref.qualifier}) has no {TENANT_KEY_COLUMN} = $1 predicate",
            )
        )
    return violations


def check_update_predicate(statement: ParsedStatement) -> list[Violation]:
    violations: list[Violation] = []
    where = _WHERE.search(statement.normalized)
    for ref in statement.tenant_refs:
        if ref.clause != "UPDATE":
            continue
        covered = where is not None and any(
            predicate.position > where.start()
            and predicate.param_index == 1
            and statement.binds(predicate, ref)
            for predicate in statement.predicates
        )
        if not covered:
            violations.append(
                Violation(
                    "update_missing_tenant_predicate",
                    f"UPDATE {ref.table} must filter on {TENANT_KEY_COLUMN} = $1 in WHERE",
                )
            )
    return violations


def check_insert_tenant_param(statement: ParsedStatement) -> list[Violation]:
    if not any(ref.clause == "INSERT" for ref in statement.tenant_refs):
        return []
    violation = Violation(
        "insert_tenant_param_position",
        f"INSERT into a tenant table must list {TENANT_KEY_COLUMN} first and bind it to $1",
    )
    match = _INSERT_COLUMNS.search(statement.normalized)
    if match is None:
        return [violation]
    columns = [column.strip().strip('"').lower() for column in match.group(1).split(",")]
    if not columns or columns[0] != TENANT_KEY_COLUMN:
        return [violation]
    tuples = _value_tuples(statement.normalized[match.end() :])
    if not tuples:
        return [violation]
    for body in tuples:
        if _split_top_level(body)[0].strip() != "$1":
            return [violation]
    return []


def check_on_constraint(statement: ParsedStatement) -> list[Violation]:
    if not _ON_CONSTRAINT.search(statement.normalized):
        return []
    return [
        Violation(
            "on_conflict_on_constraint",
            "ON CONFLICT ON CONSTRAINT is not allowed; use a column-list target",
        )
    ]


def check_conflict_target(statement: ParsedStatement) -> list[Violation]:
    if not any(ref.clause == "INSERT" for ref in statement.tenant_refs):
        return []
    violations: list[Violation] = []
    for match in _ON_CONFLICT.finditer(statement.normalized):
        if _ON_CONSTRAINT.match(statement.normalized, match.start()):
            continue
        target = match.group(2)
        columns = (
            {column.strip().strip('"').lower() for column in target.split(",")}
            if target
            else set()
        )
        if TENANT_KEY_COLUMN not in columns:
            violations.append(
                Violation(
                    "conflict_target_missing_tenant",
                    f"ON CONFLICT target must include {TENANT_KEY_COLUMN}",
                )
            )
    return violations


RuleFn = Callable[[ParsedStatement], list[Violation]]


def _registry() -> dict[str, tuple[str, RuleFn]]:
    return {
        "multi_statement": (
            "Only one statement may be executed per call.",
            check_multi_statement,
        ),
        "banned_keyword": (
            "DDL and destructive keywords never appear in runtime SQL.",
            check_banned_keywords,
        ),
        "cte_on_tenant_table": (
            "Tenant statements are flat: no WITH clauses.",
            check_cte,
        ),
        "subquery_on_tenant_table": (
            "Tenant statements are flat: no nested SELECT.",
            check_subquery,
        ),
        "set_operation_on_tenant_table": (
            "Tenant statements are a single SELECT: no UNION, INTERSECT or EXCEPT.",
            check_set_operation,
        ),
        "negated_tenant_predicate": (
            "Tenant predicates are never negated.",
            check_negated_predicate,
        ),
        "reverse_tenant_predicate": (
            "Tenant predicates are written column-first.",
            check_reverse_predicate,
        ),
        "tenant_predicate_in_list": (
            "Tenant predicates never match a set of households.",
            check_in_list_predicate,
        ),
        "tenant_predicate_or": (
            "Tenant predicates are never widened with OR.",
            check_or_predicate,
        ),
        "literal_tenant_value": (
            "Household keys are always bound, never inlined.",
            check_literal_tenant_value,
        ),
        "tenant_predicate_wrong_param": (
            "The household key is always parameter $1.",
            check_wrong_param,
        ),
        "join_predicate_unqualified": (
            "Joined tenant tables each carry an alias-qualified predicate.",
            check_join_qualification,
        ),
        "missing_tenant_predicate": (
            "Every tenant table read is filtered to one household.",
            check_missing_predicate,
        ),
        "update_missing_tenant_predicate": (
            "UPDATE on a tenant table filters on the household in WHERE.",
            check_update_predicate,
        ),
        "insert_tenant_param_position": (
            "INSERT binds the household key as the first value.",
            check_insert_tenant_param,
        ),
        "on_conflict_on_constraint": (
            "Conflict targets are column lists.",
            check_on_constraint,
        ),
        "conflict_target_missing_tenant": (
            "Upserts on tenant tables resolve conflicts per household.",
            check_conflict_target,
        ),
    }


RULES: tuple[str, ...] = tuple(_registry())


def describe_rules() -> dict[str, str]:
    """Return rule code to description, in evaluation order."""
    return {rule_id: description for rule_id, (description, _) in _registry().items()}


def validate(sql: str) -> list[Violation]:
    """Return every contract violation in the statement, in pipeline order."""
    statement = parse_statement(sql)
    violations: list[Violation] = []
    for _, check in _registry().values():
        violations.extend(check(statement))
    return violations


def assert_tenant_safe(sql: str) -> None:
    """Raise `ContractViolation` for the first rule the statement breaks."""
    violations = validate(sql)
    if violations:
        first = violations[0]
        raise ContractViolation(first.rule, first.message)


def tenant_tables_in(sql: str) -> set[str]:
    """Return the tenant tables a statement references."""
    return {ref.table for ref in parse_statement(sql).tenant_refs}


def is_read_only_sql(sql: str) -> bool:
    """Return True if the statement cannot write.

    Literals are kept for this check, so a mutation keyword inside a string
    value also rejects the statement. Callers that need such values bind
    them as parameters.
    """
    text = _WHITESPACE.sub(" ", strip_comments(sql)).strip()
    if not text or ";" in text:
        return False
    first = text.split(" ", 1)[0].upper()
    if first not in {"SELECT", "WITH"}:
        return False
    return not _contains_keyword(text, MUTATION_KEYWORDS)
