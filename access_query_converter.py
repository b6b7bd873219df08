"""
Access query -> PostgreSQL converter.

Converts one exported Microsoft Access query (SQL text, DAO query type code and
declared parameters) into PostgreSQL DDL: a view, a parameterized
table-returning function, a PL/pgSQL action function or a make-table function.

Pipeline (one call to convert_access_query):
  1. Strip the PARAMETERS header; resolve declared + prompt-style parameters.
  2. Function translation: FUNCTION_MAP rules applied until a fixed point
     (capped at MAX_FUNCTION_PASSES).
  3. Parameter binding: [param] references -> p_param.
  4. Syntax translation: form/report/TempVars references (state store reads),
     string literals, LIKE wildcards, [brackets] -> "identifiers", TOP N,
     True/False, date literals, & -> ||.
  5. Schema qualification of FROM/JOIN/INTO/UPDATE targets and of
     user-defined function calls. Runs exactly once.
  6. Cross-join injection of state store joins (cross-join mode only). Runs
     after step 5 so the state table is never qualified twice.
  7. DDL synthesis by query type.

No I/O happens here. A failing stage is recorded as a warning and the
pipeline continues with the text produced by the previous stage.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Iterable, Iterator, Optional

from access_function_map import FUNCTION_MAP, FunctionRule

# Module-level logger; handlers are configured by the CLI
log = logging.getLogger("access_query_converter")

MAX_FUNCTION_PASSES = 20

# State store: per-schema table read by converted form/TempVars references
STATE_TABLE_NAME = "session_state"
SESSION_SETTING = "app.session_id"
TEMPVARS_TABLE = "_tempvars"


# =============================================================================
# Data model
# =============================================================================

class QueryType(str, enum.Enum):
    SELECT = "select"
    UPDATE = "update"
    DELETE = "delete"
    INSERT = "insert"
    MAKE_TABLE = "make-table"
    CROSSTAB = "crosstab"
    UNION = "union"
    UNKNOWN = "unknown"

    @classmethod
    def from_code(cls, code: Optional[int]) -> "QueryType":
        return _TYPE_CODES.get(code, cls.UNKNOWN)


# DAO QueryDef.Type codes
_TYPE_CODES: dict[Optional[int], QueryType] = {
    0: QueryType.SELECT,
    16: QueryType.CROSSTAB,
    32: QueryType.DELETE,
    48: QueryType.UPDATE,
    64: QueryType.INSERT,
    80: QueryType.MAKE_TABLE,
    128: QueryType.UNION,
}

_TYPE_LABELS: dict[str, int] = {
    "select": 0, "crosstab": 16, "delete": 32, "update": 48, "append": 64,
    "insert": 64, "maketable": 80, "make-table": 80, "union": 128,
}


@dataclass(frozen=True)
class DeclaredParameter:
    name: str
    legacy_type: str = "Text"


@dataclass(frozen=True)
class QueryDescriptor:
    """One exported Access query. Built by the caller from extracted metadata."""

    name: str
    sql: str
    query_type_code: Optional[int] = 0
    query_type: str = "Select"
    declared_parameters: tuple[DeclaredParameter, ...] = ()

    @property
    def kind(self) -> QueryType:
        return QueryType.from_code(self.query_type_code)

    @classmethod
    def from_dict(cls, data: dict) -> "QueryDescriptor":
        """Build from the exporter's JSON (camelCase keys) or snake_case keys."""
        name = data.get("queryName") or data.get("name") or ""
        label = data.get("queryType") or data.get("query_type") or ""
        code = data.get("queryTypeCode", data.get("query_type_code"))
        if code is None:
            code = _TYPE_LABELS.get(str(label).strip().lower().replace(" ", ""))
        params = []
        for p in data.get("parameters") or data.get("declared_parameters") or []:
            if isinstance(p, DeclaredParameter):
                params.append(p)
            else:
                params.append(DeclaredParameter(
                    name=p.get("name", ""),
                    legacy_type=p.get("type") or p.get("legacy_type") or "Text",
                ))
        return cls(
            name=name,
            sql=data.get("sql") or "",
            query_type_code=int(code) if code is not None else None,
            query_type=str(label or "Select"),
            declared_parameters=tuple(params),
        )


@dataclass(frozen=True)
class StateReference:
    alias: str
    table: str
    column: str


@dataclass(frozen=True)
class ResolvedParameter:
    name: str
    pg_name: str
    pg_type: str


@dataclass(frozen=True)
class ExtractedFunction:
    name: str
    sql: str
    expression: str = ""


@dataclass
class ConversionResult:
    statements: list[str]
    object_name: str
    object_kind: str
    warnings: list[str] = field(default_factory=list)
    extracted_functions: list[ExtractedFunction] = field(default_factory=list)
    referenced_entries: list[dict] = field(default_factory=list)
    state_references: list[StateReference] = field(default_factory=list)


class StateJoinCollector:
    """Hands out ss1, ss2, ... aliases in encounter order (cross-join mode)."""

    def __init__(self) -> None:
        self.references: list[StateReference] = []

    def add(self, table: str, column: str) -> StateReference:
        ref = StateReference(alias=f"ss{len(self.references) + 1}", table=table, column=column)
        self.references.append(ref)
        return ref


@dataclass
class ConversionContext:
    """Diagnostics threaded through one conversion call."""

    warnings: list[str] = field(default_factory=list)
    referenced_entries: list[dict] = field(default_factory=list)
    joins: Optional[StateJoinCollector] = None

    def warn(self, message: str) -> None:
        log.debug("Conversion warning: %s", message)
        self.warnings.append(message)


# =============================================================================
# Identifier sanitizer
# =============================================================================

def sanitize_name(name: str) -> str:
    """Lowercase, whitespace runs -> '_', drop anything outside [a-z0-9_]."""
    return re.sub(r"[^a-z0-9_]", "", re.sub(r"\s+", "_", (name or "").lower()))


def _sql_str(value: str) -> str:
    return (value or "").replace("'", "''")


# =============================================================================
# Balanced-expression scanner
# =============================================================================

_PAIRS = {"(": ")", "[": "]"}


def _skip_literal(text: str, pos: int) -> int:
    """Return the index just past the quoted literal or [bracketed] name opening at pos.

    Quotes close on the same character; a doubled quote or a backslash escapes.
    Brackets do not nest and have no escapes. Unterminated -> len(text).
    """
    opener = text[pos]
    closer = "]" if opener == "[" else opener
    n = len(text)
    i = pos + 1
    while i < n:
        c = text[i]
        if opener != "[" and c == "\\" and i + 1 < n:
            i += 2
            continue
        if c == closer:
            if opener != "[" and i + 1 < n and text[i + 1] == closer:
                i += 2
                continue
            return i + 1
        i += 1
    return n


def find_closing_delimiter(text: str, open_pos: int) -> Optional[int]:
    """Return the index of the delimiter closing the '(' or '[' at open_pos, or None."""
    if open_pos < 0 or open_pos >= len(text) or text[open_pos] not in _PAIRS:
        return None
    if text[open_pos] == "[":
        end = _skip_literal(text, open_pos)
        return end - 1 if text[end - 1] == "]" and end - 1 > open_pos else None
    depth = 1
    i = open_pos + 1
    n = len(text)
    while i < n:
        c = text[i]
        if c in "'\"[":
            i = _skip_literal(text, i)
            continue
        if c == "(":
            depth += 1
        elif c == ")":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    return None


def split_top_level_commas(s: str) -> list[str]:
    """Split an argument list on commas at depth 0, outside literals and [names]."""
    parts: list[str] = []
    depth = 0
    start = 0
    i = 0
    n = len(s)
    while i < n:
        c = s[i]
        if c in "'\"[":
            i = _skip_literal(s, i)
            continue
        if c == "(":
            depth += 1
        elif c == ")":
            depth -= 1
        elif c == "," and depth == 0:
            parts.append(s[start:i].strip())
            start = i + 1
        i += 1
    tail = s[start:].strip()
    if tail or parts:
        parts.append(tail)
    return parts


def _is_inside_literal(text: str, pos: int) -> bool:
    """True if pos falls inside a quoted literal or [bracketed] name."""
    i = 0
    while i < pos:
        if text[i] in "'\"[":
            end = _skip_literal(text, i)
            if end > pos:
                return True
            i = end
            continue
        i += 1
    return False


def _innermost_open_paren(text: str, pos: int) -> Optional[int]:
    """Index of the innermost '(' still unclosed at pos, outside literals; None at depth 0."""
    opens: list[int] = []
    i = 0
    while i < pos:
        c = text[i]
        if c in "'\"[":
            i = _skip_literal(text, i)
            continue
        if c == "(":
            opens.append(i)
        elif c == ")" and opens:
            opens.pop()
        i += 1
    return opens[-1] if opens else None


# Single-quoted strings, double-quoted strings/identifiers, [bracketed] names
_LITERAL_SPLIT_RE = re.compile(r"""('(?:[^'\\]|\\.|'')*'|"(?:[^"\\]|\\.|"")*"|\[[^\]]*\])""")
_STRING_SPLIT_RE = re.compile(r"""('(?:[^'\\]|\\.|'')*')""")
_ACCESS_STRING_SPLIT_RE = re.compile(r"""('(?:[^'\\]|\\.|'')*'|"(?:[^"\\]|\\.|"")*")""")


def _sub_outside_literals(pattern, repl, text: str, flags: int = 0,
                          splitter: re.Pattern = _LITERAL_SPLIT_RE) -> str:
    """re.sub applied only to the fragments of text outside literals (see splitter)."""
    parts = splitter.split(text)
    compiled = re.compile(pattern, flags) if isinstance(pattern, str) else pattern
    for i in range(0, len(parts), 2):
        parts[i] = compiled.sub(repl, parts[i])
    return "".join(parts)


def _top_level_positions(sql: str, start: int = 0) -> Iterator[int]:
    """Yield indexes at parenthesis depth 0 that are outside literals and quoted names."""
    depth = 0
    i = start
    n = len(sql)
    while i < n:
        c = sql[i]
        if c in "'\"[":
            i = _skip_literal(sql, i)
            continue
        if c == "(":
            depth += 1
        elif c == ")":
            depth -= 1
        elif depth == 0:
            yield i
        i += 1


def _find_top_level_keyword(sql: str, keyword_re: re.Pattern, start: int = 0) -> Optional[re.Match]:
    for i in _top_level_positions(sql, start):
        if not sql[i].isalpha():
            continue
        if i > 0 and (sql[i - 1].isalnum() or sql[i - 1] in "_$."):
            continue
        m = keyword_re.match(sql, i)
        if m:
            return m
    return None


def _clause_end(sql: str, start: int, keyword_re: re.Pattern) -> int:
    m = _find_top_level_keyword(sql, keyword_re, start)
    return m.start() if m else len(sql)


# =============================================================================
# Function translation engine
# =============================================================================

@dataclass(frozen=True)
class FunctionTranslation:
    sql: str
    passes: int
    converged: bool


def _apply_rule(sql: str, rule: FunctionRule) -> str:
    """Rewrite every call site of one rule, scanning left to right."""
    search_start = 0
    while True:
        match = rule.pattern.search(sql, search_start)
        if not match:
            return sql
        if _is_inside_literal(sql, match.start()):
            search_start = match.end()
            continue
        open_pos = match.end() - 1
        close = find_closing_delimiter(sql, open_pos)
        if close is None:
            search_start = match.end()
            continue
        args = split_top_level_commas(sql[open_pos + 1:close])
        repl = rule.transform(args)
        sql = sql[:match.start()] + repl + sql[close + 1:]
        # Resume after the replacement; nested calls are picked up by the next pass
        search_start = match.start() + len(repl)


def translate_functions(
    sql: str,
    rules: Iterable[FunctionRule] = FUNCTION_MAP,
    max_passes: int = MAX_FUNCTION_PASSES,
) -> FunctionTranslation:
    """Apply the rule catalog until a pass changes nothing, or max_passes is reached.

    A transform error propagates to the caller.
    """
    rules = tuple(rules)
    passes = 0
    while passes < max_passes:
        passes += 1
        before = sql
        for rule in rules:
            sql = _apply_rule(sql, rule)
        if sql == before:
            return FunctionTranslation(sql=sql, passes=passes, converged=True)
    log.warning("Function translation did not converge after %d passes", passes)
    return FunctionTranslation(sql=sql, passes=passes, converged=False)


def apply_function_translations(sql: str) -> str:
    return translate_functions(sql).sql


# =============================================================================
# Reference resolver (Forms / Reports / Parent / TempVars)
# =============================================================================

_SEG = r"(?:\[[^\]]+\]|\w+)"
_VALUE_SUFFIX = r"(?:\.Value\b)?"
_REFERENCE_RE = re.compile(
    r"(?<![\w.])(?P<three>\[?(?P<coll>Forms|Reports)\]?!(?P<obj>" + _SEG + r")[!.](?P<ctrl3>" + _SEG + r")"
    + _VALUE_SUFFIX + r")"
    r"|(?<![\w.])(?P<parent>\[?Parent\]?(?:!" + _SEG + r")+" + _VALUE_SUFFIX + r")"
    r"|(?<![\w.])(?P<two>\[?(?P<kind>Form|Report)\]?!(?P<ctrl2>" + _SEG + r")" + _VALUE_SUFFIX + r")"
    r"|(?<![\w.])(?P<tempvar>\[?TempVars\]?(?:!(?P<tv1>" + _SEG + r")"
    r"|\(\s*[\"'](?P<tv2>[^\"']+)[\"']\s*\)))",
    re.IGNORECASE,
)


def _unbracket(segment: str) -> str:
    return segment[1:-1] if segment.startswith("[") and segment.endswith("]") else segment


def _mapping_target(value) -> Optional[tuple[str, str]]:
    if isinstance(value, dict):
        table = value.get("table") or value.get("storageTable") or value.get("table_name")
        column = value.get("column") or value.get("storageColumn") or value.get("column_name")
        return (table, column) if table and column else None
    if isinstance(value, (tuple, list)) and len(value) == 2:
        return value[0], value[1]
    if isinstance(value, str) and "." in value:
        table, column = value.split(".", 1)
        return table, column
    return None


def resolve_control_mapping(
    control_mapping: Optional[dict],
    form_name: Optional[str],
    ctrl_name: str,
    form_specific: bool,
) -> Optional[tuple[str, str]]:
    """Look up (table, column) for a control.

    Exact "form.control" key first (form-specific refs only), then the first key
    ending in ".control" in mapping iteration order.
    """
    if not control_mapping:
        return None
    if form_specific and form_name:
        exact = control_mapping.get(f"{form_name}.{ctrl_name}")
        if exact is not None:
            return _mapping_target(exact)
    suffix = "." + ctrl_name.lower()
    for key, value in control_mapping.items():
        if key.lower().endswith(suffix):
            return _mapping_target(value)
    return None


def state_subquery(state_table: str, table_name: str, column_name: str) -> str:
    """Scalar subquery reading one state store value for the current session."""
    return (
        f"(SELECT value FROM {state_table} "
        f"WHERE session_id = current_setting('{SESSION_SETTING}', true) "
        f"AND table_name = '{_sql_str(table_name)}' "
        f"AND column_name = '{_sql_str(column_name)}')"
    )


def state_predicates(ref: StateReference) -> str:
    return (
        f"{ref.alias}.table_name = '{_sql_str(ref.table)}' "
        f"AND {ref.alias}.column_name = '{_sql_str(ref.column)}' "
        f"AND {ref.alias}.session_id = current_setting('{SESSION_SETTING}', true)"
    )


def resolve_references(
    sql: str,
    control_mapping: Optional[dict],
    ctx: ConversionContext,
    state_table: str,
) -> str:
    """Replace Forms/Reports/Parent/TempVars references with state store reads.

    Subquery mode by default; when ctx.joins is set every reference becomes
    ssN.value and the collector records the join to inject later.
    """
    def read(table: str, column: str) -> str:
        if ctx.joins is not None:
            return f"{ctx.joins.add(table, column).alias}.value"
        return state_subquery(state_table, table, column)

    def record(target: tuple[str, str]) -> None:
        ctx.referenced_entries.append({"table": target[0], "column": target[1]})

    def replace_ref(m: re.Match) -> str:
        if m.group("three"):
            coll = m.group("coll")
            form = _unbracket(m.group("obj"))
            ctrl = _unbracket(m.group("ctrl3"))
            fn, cn = sanitize_name(form), sanitize_name(ctrl)
            target = resolve_control_mapping(control_mapping, fn, cn, True)
            if target:
                record(target)
                return read(*target)
            ctx.warn(f"Unresolved form ref: {coll}!{form}!{ctrl}")
            return read(fn, cn)

        if m.group("parent") or m.group("two"):
            if m.group("parent"):
                label = "Parent"
                chain = re.sub(r"\.Value$", "", m.group("parent"), flags=re.IGNORECASE)
                # Parent!Sub!Ctrl -> the last segment names the control
                ctrl = _unbracket(re.findall(_SEG, chain.split("!", 1)[1])[-1])
            else:
                label = m.group("kind")
                ctrl = _unbracket(m.group("ctrl2"))
            target = resolve_control_mapping(control_mapping, None, sanitize_name(ctrl), False)
            if target:
                record(target)
                return read(*target)
            ctx.warn(f"Unresolved form ref: {label}!{ctrl}")
            return f"NULL /* UNRESOLVED: {label}!{ctrl.replace('*/', '* /')} */"

        var = _unbracket(m.group("tv1") or m.group("tv2") or "")
        return read(TEMPVARS_TABLE, sanitize_name(var))

    def replace_outside_literals(m: re.Match) -> str:
        if _is_inside_literal(sql, m.start()):
            return m.group(0)
        return replace_ref(m)

    return _REFERENCE_RE.sub(replace_outside_literals, sql)


# =============================================================================
# Syntax translator
# =============================================================================

# Leftmost token wins, so brackets inside strings (and quotes inside brackets) stay put
_ACCESS_TOKEN_RE = re.compile(
    r"""'(?:[^'\\]|\\.|'')*'|\[[^\]]*\]|"(?P<dq>(?:[^"\\]|\\.|"")*)\""""
)
_ACCESS_DELETE_RE = re.compile(r"^(\s*DELETE)\s+(?!FROM\b).*?\bFROM\b", re.IGNORECASE | re.DOTALL)
_LIKE_RE = re.compile(r"\bA?LIKE\s+'((?:[^']|'')*)'", re.IGNORECASE)
_BRACKET_RE = re.compile(r"\[([^\]]+)\]")
_TOP_RE = re.compile(r"\b(SELECT\s+(?:DISTINCT\s+)?)TOP\s+(\d+)(\s+PERCENT)?\s+", re.IGNORECASE)
_COMPARE_OP = r"(?:<>|!=|<=|>=|<|>|=)"
_COLUMN_REF = r'(?:"[^"]+"|[A-Za-z_]\w*)(?:\s*\.\s*(?:"[^"]+"|[A-Za-z_]\w*))?'
_NOT_A_COLUMN = frozenset({
    "null", "true", "false", "current_date", "current_time", "current_timestamp",
    "any", "all", "some", "not", "and", "or", "select",
})


_TIME_PART = r"(\d{1,2}):(\d{2})(?::(\d{2}))?(?:\s*([AaPp])\.?[Mm]\.?)?"
_DATE_LITERAL_RES = (
    (re.compile(r"#(\d{1,2})/(\d{1,2})/(\d{4})\s+" + _TIME_PART + r"#"), "mdy", "timestamp"),
    (re.compile(r"#(\d{4})-(\d{1,2})-(\d{1,2})\s+" + _TIME_PART + r"#"), "ymd", "timestamp"),
    (re.compile(r"#(\d{1,2})/(\d{1,2})/(\d{4})#"), "mdy", "date"),
    (re.compile(r"#(\d{4})-(\d{1,2})-(\d{1,2})#"), "ymd", "date"),
    (re.compile(r"#" + _TIME_PART + r"#"), "", "time"),
)


def _clock(hour: str, minute: str, second: Optional[str], meridiem: Optional[str]) -> str:
    """24-hour hh:mm[:ss]; 12 AM is midnight and 12 PM is noon."""
    h = int(hour)
    if meridiem:
        h = h % 12 + (12 if meridiem.upper() == "P" else 0)
    return f"{h:02d}:{minute}" + (f":{second}" if second else "")


def _convert_date_literals(sql: str) -> str:
    """#m/d/yyyy#, #yyyy-mm-dd#, optional time with AM/PM, or a bare #time# -> typed literal."""
    for pattern, order, pg_type in _DATE_LITERAL_RES:
        m = pattern.fullmatch(sql.strip())
        if not m:
            continue
        g = m.groups()
        if not order:
            return f"'{_clock(*g)}'::{pg_type}"
        y, mo, d = (g[2], g[0], g[1]) if order == "mdy" else (g[0], g[1], g[2])
        date = f"{y}-{mo.zfill(2)}-{d.zfill(2)}"
        if pg_type == "date":
            return f"'{date}'::date"
        return f"'{date} {_clock(*g[3:])}'::{pg_type}"
    return sql


def _rewrite_top(sql: str, ctx: ConversionContext) -> tuple[str, Optional[int]]:
    """Drop every SELECT TOP N. Returns (sql, N for the outer statement or None).

    A TOP inside a parenthesized subquery becomes LIMIT N before that
    subquery's closing paren; the outer limit is appended by the caller.
    """
    outer: Optional[int] = None
    pos = 0
    while True:
        m = _TOP_RE.search(sql, pos)
        if not m:
            return sql, outer
        if _is_inside_literal(sql, m.start()):
            pos = m.end()
            continue
        head = m.group(1).rstrip() + " "
        sql = sql[:m.start()] + head + sql[m.end():]
        pos = m.start() + len(head)
        count = m.group(2)
        if m.group(3):
            ctx.warn(f"TOP {count} PERCENT has no LIMIT equivalent; row limit dropped")
            continue
        open_pos = _innermost_open_paren(sql, m.start())
        close = find_closing_delimiter(sql, open_pos) if open_pos is not None else None
        if close is not None:
            sql = f"{sql[:close].rstrip()} LIMIT {count}{sql[close:]}"
        elif open_pos is None and outer is None:
            outer = int(count)
        else:
            ctx.warn(f"TOP {count} outside the outer SELECT and any subquery; row limit dropped")


def _cast_state_comparisons(sql: str, state_table: str) -> str:
    """Cast columns compared with a state store read to ::text (value is text)."""
    state_read = r"(?:\(SELECT value FROM " + re.escape(state_table) + r"\b|ss\d+\.value\b)"
    is_update = bool(re.match(r"\s*UPDATE\b", sql, re.IGNORECASE))

    def left(m: re.Match) -> str:
        if m.group(1).lower() in _NOT_A_COLUMN:
            return m.group(0)
        # SET col = <state read> is an assignment target, not a comparison
        if is_update and re.search(r"(?:\bSET|,)\s*$", sql[:m.start()], re.IGNORECASE):
            return m.group(0)
        return f"{m.group(1)}::text{m.group(2)}"

    sql = re.sub(
        r"(?<![\w.\"':])(" + _COLUMN_REF + r")(\s*" + _COMPARE_OP + r"\s*)(?=" + state_read + r")",
        left, sql,
    )

    right_re = re.compile(r"(\s*" + _COMPARE_OP + r"\s*)(" + _COLUMN_REF + r")(?![\w\"(.]|\s*\(|::)")

    def cast_following(text: str, pos: int) -> str:
        m = right_re.match(text, pos)
        if not m or m.group(2).lower() in _NOT_A_COLUMN:
            return text
        return text[:m.end()] + "::text" + text[m.end():]

    for m in list(re.finditer(r"\bss\d+\.value\b", sql))[::-1]:
        sql = cast_following(sql, m.end())
    opener = "(SELECT value FROM " + state_table
    pos = sql.rfind(opener)
    while pos != -1:
        close = find_closing_delimiter(sql, pos)
        if close is not None:
            sql = cast_following(sql, close + 1)
        pos = sql.rfind(opener, 0, pos)
    return sql


def apply_syntax_translations(
    sql: str,
    control_mapping: Optional[dict] = None,
    ctx: Optional[ConversionContext] = None,
    state_table: str = f"public.{STATE_TABLE_NAME}",
) -> str:
    """Access syntax -> PostgreSQL syntax. Reference resolution runs first."""
    ctx = ctx if ctx is not None else ConversionContext()

    # (a) Forms/Reports/TempVars -> state store reads, before any quoting changes
    sql = resolve_references(sql, control_mapping, ctx, state_table)

    # Access "strings" -> 'strings' (before brackets become "identifiers")
    def to_single(m: re.Match) -> str:
        if m.group("dq") is None:
            return m.group(0)
        inner = m.group("dq").replace('""', '"').replace('\\"', '"')
        return "'" + inner.replace("'", "''") + "'"

    sql = _ACCESS_TOKEN_RE.sub(to_single, sql)

    # LIKE "*x?" -> LIKE '%x_'
    def like(m: re.Match) -> str:
        pattern = m.group(1)
        if re.search(r"\[[^\]]*\]", pattern):
            ctx.warn(f"LIKE pattern '{pattern}' uses an Access character class; review manually")
        return "LIKE '" + pattern.replace("*", "%").replace("?", "_") + "'"

    sql = _LIKE_RE.sub(like, sql)

    # (b) [Bracketed Name] -> "bracketed_name"
    sql = _sub_outside_literals(_BRACKET_RE, lambda m: f'"{sanitize_name(m.group(1))}"', sql,
                                splitter=_STRING_SPLIT_RE)

    # (c) operators and literals; from here on "..." are identifiers
    sql = _sub_outside_literals(r"\bDISTINCTROW\b", "DISTINCT", sql, re.IGNORECASE)
    # DELETE Orders.* FROM Orders -> DELETE FROM Orders
    sql = _ACCESS_DELETE_RE.sub(r"\1 FROM", sql, count=1)

    sql, top = _rewrite_top(sql, ctx)

    sql = _sub_outside_literals(r"\bTrue\b", "true", sql, re.IGNORECASE)
    sql = _sub_outside_literals(r"\bFalse\b", "false", sql, re.IGNORECASE)
    sql = _sub_outside_literals(r"\bDate\s*\(\s*\)", "CURRENT_DATE", sql, re.IGNORECASE)
    sql = _sub_outside_literals(r"\bNow\s*\(\s*\)", "CURRENT_TIMESTAMP", sql, re.IGNORECASE)
    sql = _sub_outside_literals(r"\bTime\s*\(\s*\)", "CURRENT_TIME", sql, re.IGNORECASE)
    def date_literal(m: re.Match) -> str:
        converted = _convert_date_literals(m.group(0))
        if converted == m.group(0):
            ctx.warn(f"Unrecognized date literal {m.group(0)} left unconverted")
        return converted

    sql = _sub_outside_literals(r"#[^#']+#", date_literal, sql)
    sql = _sub_outside_literals(r"\s*&\s*", " || ", sql)
    sql = _sub_outside_literals(r"\s+Mod\s+", " % ", sql, re.IGNORECASE)

    sql = _cast_state_comparisons(sql, state_table)

    if top is not None:
        sql = sql.rstrip().rstrip(";") + f" LIMIT {top}"
    return sql


def convert_access_expression(expr: str, control_mapping: Optional[dict] = None,
                              schema: str = "public") -> str:
    """Translate a standalone Access expression (calculated control source, criteria)."""
    result = apply_function_translations(expr)
    return apply_syntax_translations(result, control_mapping, ConversionContext(),
                                     f"{schema}.{STATE_TABLE_NAME}")


# ---- Schema qualification ----

_PREFIX_RESERVED = frozenset({
    "select", "from", "where", "set", "values", "as", "on", "and", "or", "not", "in",
    "into", "update", "delete", "insert", "by",
    "exists", "null", "true", "false", "inner", "left", "right", "outer",
    "cross", "full", "natural", "join", "group", "order", "having", "limit",
    "offset", "union", "intersect", "except", "case", "when", "then", "else",
    "end", "between", "like", "is", "distinct", "using", "lateral", "returning",
    "window", "fetch", "for",
})

_RESERVED_ALT = "|".join(sorted(_PREFIX_RESERVED, key=len, reverse=True))
_TABLE_NAME = r"(\"[^\"]+\"|[a-zA-Z_]\w*\b)(?!\s*\.)"
_TABLE_ALIAS = r"(\s+(?:AS\s+)?(?!(?:" + _RESERVED_ALT + r")\b)[a-zA-Z_]\w*\b)?"

_TABLE_REF_RE = re.compile(
    r"\b(FROM|JOIN|INTO|UPDATE)(\s+\(*\s*)" + _TABLE_NAME + _TABLE_ALIAS,
    re.IGNORECASE,
)

# Built-ins whose argument list uses FROM as a separator: SUBSTRING(s FROM n)
_FROM_ARG_FUNCTIONS = frozenset({"substring", "overlay", "trim", "extract"})


def _enclosing_call_name(sql: str, pos: int) -> Optional[str]:
    """Lowercased name of the call whose unclosed '(' encloses pos, or None."""
    open_pos = _innermost_open_paren(sql, pos)
    if open_pos is None:
        return None
    m = re.search(r"([A-Za-z_]\w*)\s*$", sql[:open_pos])
    return m.group(1).lower() if m else None


def add_schema_prefix(sql: str, schema: str) -> str:
    """Qualify bare table names after FROM/JOIN/INTO/UPDATE and in comma-separated FROM lists."""

    def qualify(table: str, add_alias: bool) -> str:
        sanitized = sanitize_name(table.replace('"', ""))
        prefix = f'{schema}."{sanitized}"'
        return f"{prefix} {sanitized}" if add_alias else prefix

    def rewrite_part(part: str, offset: int) -> str:
        def repl(m: re.Match) -> str:
            keyword, gap, table, alias_clause = m.group(1), m.group(2), m.group(3), m.group(4)
            if keyword.upper() == "FROM":
                if _enclosing_call_name(sql, offset + m.start()) in _FROM_ARG_FUNCTIONS:
                    return m.group(0)
                before = part[max(0, m.start() - 80):m.start()]
                if re.search(r"\bDISTINCT\s+$", before, re.IGNORECASE):
                    return m.group(0)
            if sanitize_name(table.replace('"', "")) in _PREFIX_RESERVED:
                return m.group(0)
            # FROM fn(...) is a set-returning call; INTO t (cols) is a column list
            if not alias_clause and re.match(r"\s*\(", part[m.end():]) and keyword.upper() != "INTO":
                return m.group(0)
            # INSERT INTO / SELECT ... INTO take no bare alias
            add_alias = keyword.upper() != "INTO" and not alias_clause
            return f"{keyword}{gap}{qualify(table, add_alias)}{alias_clause or ''}"

        part = _TABLE_REF_RE.sub(repl, part)

        comma_re = re.compile(
            r"(" + re.escape(schema) + r"\.\"\w+\"" + _TABLE_ALIAS.replace("(", "(?:", 1) + r")\s*,\s*"
            + _TABLE_NAME + _TABLE_ALIAS,
            re.IGNORECASE,
        )

        def comma_repl(m: re.Match) -> str:
            before, table, alias_clause = m.group(1), m.group(2), m.group(3)
            if sanitize_name(table.replace('"', "")) in _PREFIX_RESERVED:
                return m.group(0)
            if not alias_clause and re.match(r"\s*\(", part[m.end():]):
                return m.group(0)
            return f"{before}, {qualify(table, not alias_clause)}{alias_clause or ''}"

        while True:
            new_part = comma_re.sub(comma_repl, part)
            if new_part == part:
                return part
            part = new_part

    parts = _STRING_SPLIT_RE.split(sql)
    offset = 0
    for i, part in enumerate(parts):
        if i % 2 == 0:
            parts[i] = rewrite_part(part, offset)
        offset += len(part)
    return "".join(parts)


# PostgreSQL built-ins and SQL keywords that are never schema-qualified
PG_BUILTINS = frozenset({
    "count", "sum", "avg", "min", "max", "array_agg", "string_agg", "bool_and", "bool_or",
    "length", "substring", "left", "right", "upper", "lower", "trim", "ltrim", "rtrim",
    "position", "replace", "reverse", "repeat", "ascii", "chr", "initcap", "concat",
    "concat_ws", "overlay", "translate", "encode", "decode", "md5", "format",
    "regexp_replace", "regexp_match", "regexp_matches", "split_part", "btrim", "strpos",
    "floor", "trunc", "abs", "round", "sign", "sqrt", "ln", "exp", "ceil", "ceiling",
    "mod", "power", "random", "log", "pi", "degrees", "radians", "div", "greatest", "least",
    "extract", "make_date", "make_time", "make_timestamp", "make_interval",
    "date_part", "date_trunc", "age", "to_char", "to_date", "to_timestamp", "to_number",
    "now", "clock_timestamp", "statement_timestamp", "timeofday",
    "coalesce", "nullif", "cast",
    "json_agg", "jsonb_agg", "json_build_object", "jsonb_build_object",
    "row_to_json", "to_json", "to_jsonb",
    "row_number", "rank", "dense_rank", "lag", "lead", "first_value", "last_value", "ntile",
    "percent_rank", "cume_dist", "nth_value",
    "array_length", "unnest", "array_to_string",
    "current_setting", "set_config", "pg_typeof", "generate_series", "exists",
    # type names that take a modifier: numeric(19,4), varchar(50) ...
    "numeric", "decimal", "varchar", "char", "character", "bit", "float",
    "time", "timestamp", "interval", "date",
})

_SQL_KEYWORDS = frozenset({
    "select", "from", "where", "set", "values", "as", "on", "and", "or", "not", "in",
    "join", "inner", "left", "right", "outer", "cross", "full", "having",
    "group", "order", "by", "union", "except", "intersect",
    "insert", "update", "delete", "into", "table", "view", "function",
    "create", "alter", "drop", "replace",
    "begin", "end", "return", "returns", "declare", "if", "then", "else",
    "when", "between", "like", "ilike", "similar", "is", "null",
    "true", "false", "distinct", "all", "any", "some", "over", "partition",
    "limit", "offset", "fetch", "for", "with", "recursive", "using", "lateral",
    "filter", "within", "row", "array", "conflict", "case", "returning", "window",
    "interval", "language", "stable", "immutable", "volatile",
    "security", "definer", "invoker",
})

# Aggregates created in the target schema by the aggregate bootstrap
_SCHEMA_AGGREGATES = frozenset({"first_agg", "last_agg"})


def add_schema_function_prefix(
    sql: str,
    schema: str,
    user_functions: Optional[Iterable[str]] = None,
    unqualified: Iterable[str] = (),
) -> str:
    """Qualify calls to user-defined functions with the target schema.

    With a registry, only the registered names are qualified; without one,
    every call that is not a PostgreSQL built-in or keyword is. Names in
    unqualified are always left alone.
    """
    registry = {f.lower() for f in user_functions} if user_functions is not None else None
    skip = {f.lower() for f in unqualified}

    def repl(m: re.Match) -> str:
        lower = m.group(1).lower()
        if lower in skip:
            return m.group(0)
        if lower in _SCHEMA_AGGREGATES:
            return f'{schema}."{lower}"('
        if registry is not None:
            return f'{schema}."{lower}"(' if lower in registry else m.group(0)
        if lower in PG_BUILTINS or lower in _SQL_KEYWORDS:
            return m.group(0)
        return f'{schema}."{lower}"('

    return _sub_outside_literals(r"(?<![.\"\w:$])([a-zA-Z_]\w*)\s*\(", repl, sql)


# ---- Cross-join injection ----

_FROM_RE = re.compile(r"FROM\b", re.IGNORECASE)
_WHERE_RE = re.compile(r"WHERE\b", re.IGNORECASE)
_USING_RE = re.compile(r"USING\b", re.IGNORECASE)
_SELECT_RE = re.compile(r"SELECT\b", re.IGNORECASE)
_VALUES_RE = re.compile(r"VALUES\s*\(", re.IGNORECASE)
_SET_OP_RE = re.compile(r"(?:UNION(?:\s+ALL)?|INTERSECT|EXCEPT)\b", re.IGNORECASE)
_AFTER_FROM_RE = re.compile(
    r"(?:WHERE|GROUP\s+BY|HAVING|ORDER\s+BY|LIMIT|OFFSET|WINDOW|FETCH|RETURNING|FOR\s+UPDATE)\b",
    re.IGNORECASE,
)
_AFTER_WHERE_RE = re.compile(
    r"(?:GROUP\s+BY|HAVING|ORDER\s+BY|LIMIT|OFFSET|WINDOW|FETCH|RETURNING|FOR\s+UPDATE)\b",
    re.IGNORECASE,
)
_AFTER_SELECT_LIST_RE = re.compile(
    r"(?:FROM|INTO|WHERE|GROUP\s+BY|HAVING|ORDER\s+BY|LIMIT|OFFSET|WINDOW|UNION|INTERSECT|EXCEPT)\b",
    re.IGNORECASE,
)


def _splice(sql: str, pos: int, text: str) -> str:
    head, tail = sql[:pos].rstrip(), sql[pos:].lstrip()
    return f"{head} {text} {tail}".rstrip() if tail else f"{head} {text}"


def _add_state_predicates(stmt: str, predicates: str) -> str:
    where = _find_top_level_keyword(stmt, _WHERE_RE)
    if where:
        cond_end = _clause_end(stmt, where.end(), _AFTER_WHERE_RE)
        existing = stmt[where.end():cond_end].strip()
        tail = stmt[cond_end:].strip()
        merged = f"{stmt[:where.start()]}WHERE {predicates} AND ({existing})"
        return f"{merged} {tail}" if tail else merged
    from_kw = _find_top_level_keyword(stmt, _FROM_RE)
    pos = _clause_end(stmt, from_kw.end() if from_kw else 0, _AFTER_WHERE_RE)
    return _splice(stmt, pos, f"WHERE {predicates}")


def _inject_select(stmt: str, sources: list[str], predicates: str) -> str:
    from_kw = _find_top_level_keyword(stmt, _FROM_RE)
    if from_kw:
        end = _clause_end(stmt, from_kw.end(), _AFTER_FROM_RE)
        stmt = _splice(stmt, end, " ".join(f"CROSS JOIN {s}" for s in sources))
    else:
        select_kw = _find_top_level_keyword(stmt, _SELECT_RE)
        end = _clause_end(stmt, select_kw.end() if select_kw else 0, _AFTER_SELECT_LIST_RE)
        stmt = _splice(stmt, end, "FROM " + " CROSS JOIN ".join(sources))
    return _add_state_predicates(stmt, predicates)


def _inject_statement(stmt: str, refs: list[StateReference], state_table: str,
                      ctx: Optional[ConversionContext]) -> str:
    sources = [f"{state_table} {r.alias}" for r in refs]
    predicates = " AND ".join(state_predicates(r) for r in refs)
    lead = re.match(r"\s*(\w+)", stmt)
    keyword = lead.group(1).upper() if lead else ""

    if keyword == "UPDATE":
        from_kw = _find_top_level_keyword(stmt, _FROM_RE)
        if from_kw:
            end = _clause_end(stmt, from_kw.end(), _AFTER_FROM_RE)
            stmt = _splice(stmt, end, " ".join(f"CROSS JOIN {s}" for s in sources))
        else:
            stmt = _splice(stmt, _clause_end(stmt, 0, _AFTER_FROM_RE), "FROM " + " CROSS JOIN ".join(sources))
        return _add_state_predicates(stmt, predicates)

    if keyword == "DELETE":
        from_kw = _find_top_level_keyword(stmt, _FROM_RE)
        using = _find_top_level_keyword(stmt, _USING_RE)
        if using:
            end = _clause_end(stmt, using.end(), _AFTER_FROM_RE)
            stmt = _splice(stmt, end, " ".join(f"CROSS JOIN {s}" for s in sources))
        else:
            pos = _clause_end(stmt, from_kw.end() if from_kw else 0, _AFTER_FROM_RE)
            stmt = _splice(stmt, pos, "USING " + " CROSS JOIN ".join(sources))
        return _add_state_predicates(stmt, predicates)

    if keyword == "INSERT":
        select_kw = _find_top_level_keyword(stmt, _SELECT_RE)
        if select_kw:
            return stmt[:select_kw.start()] + _inject_select(stmt[select_kw.start():], sources, predicates)
        values_kw = _find_top_level_keyword(stmt, _VALUES_RE)
        if values_kw:
            close = find_closing_delimiter(stmt, values_kw.end() - 1)
            rest = stmt[close + 1:].strip() if close is not None else ""
            if close is not None and not rest.startswith(","):
                row = stmt[values_kw.end():close]
                select = f"SELECT {row} FROM {' CROSS JOIN '.join(sources)} WHERE {predicates}"
                return f"{stmt[:values_kw.start()]}{select}" + (f" {rest}" if rest else "")
        if ctx is not None:
            ctx.warn("Cross-join state references in a multi-row INSERT ... VALUES were not joined")
        return stmt

    return _inject_select(stmt, sources, predicates)


def _split_set_operations(sql: str) -> list[tuple[str, str]]:
    """Split on top-level UNION/INTERSECT/EXCEPT; returns (branch, separator) pairs."""
    pieces: list[tuple[str, str]] = []
    start = 0
    pos = 0
    while True:
        m = _find_top_level_keyword(sql, _SET_OP_RE, pos)
        if not m:
            pieces.append((sql[start:], ""))
            return pieces
        pieces.append((sql[start:m.start()], m.group(0)))
        start = pos = m.end()


def inject_state_joins(
    sql: str,
    references: list[StateReference],
    state_table: str,
    ctx: Optional[ConversionContext] = None,
) -> str:
    """Add state store joins and predicates for ssN aliases (cross-join mode).

    Each set-operation branch receives only the aliases it uses. Must run after
    schema qualification.
    """
    if not references:
        return sql
    out: list[str] = []
    for branch, separator in _split_set_operations(sql):
        used = [r for r in references if re.search(r"\b" + r.alias + r"\.", branch)]
        if used:
            lead_ws = branch[:len(branch) - len(branch.lstrip())]
            branch = lead_ws + _inject_statement(branch.strip(), used, state_table, ctx)
            if separator:
                branch += " "
        out.append(branch + separator)
    return "".join(out)


# =============================================================================
# Parameter resolver
# =============================================================================

_PARAM_TYPES: dict[str, str] = {
    "boolean": "boolean",
    "yesno": "boolean",
    "byte": "integer",
    "integer": "integer",
    "long": "bigint",
    "currency": "numeric(19,4)",
    "single": "real",
    "double": "double precision",
    "ieeesingle": "real",
    "ieeedouble": "double precision",
    "date": "date",
    "datetime": "date",
    "memo": "text",
    "text": "text",
}

_FORM_REF_PARAM_RE = re.compile(r"^\[?(?:TempVars|Parent|Forms?|Reports?)\]?\s*[!.(]", re.IGNORECASE)
_PROMPT_PARAM_RE = re.compile(r"(?<![!.\w\]])\[([^\]\[]*[?:])\]")


def map_param_type(legacy_type: Optional[str]) -> str:
    """Access parameter type -> PostgreSQL type; unknown types become text."""
    key = re.sub(r"[\s_/]", "", (legacy_type or "").lower())
    return _PARAM_TYPES.get(key, "text")


def infer_parameter_names(sql: str) -> list[str]:
    """Prompt-style parameters the body references without declaring them: [Enter start date:]."""
    names: list[str] = []
    for m in _PROMPT_PARAM_RE.finditer(sql):
        if _is_inside_literal(sql, m.start()):
            continue
        if m.group(1) not in names:
            names.append(m.group(1))
    return names


def refine_param_types(
    params: list[ResolvedParameter],
    sql: str,
    column_types: Optional[dict[str, str]],
) -> list[ResolvedParameter]:
    """Give text-typed parameters the type of the column they are compared with."""
    if not column_types:
        return params
    col = r'((?:"?\w+"?\.)?"?\w+"?)'
    refined: list[ResolvedParameter] = []
    for param in params:
        if param.pg_type != "text":
            refined.append(param)
            continue
        name = re.escape(param.pg_name)
        m = re.search(
            col + r"\s*\)?\s*=\s*" + name + r"\b|\b" + name + r"\s*=\s*" + col,
            sql, re.IGNORECASE,
        )
        if m:
            ref = (m.group(1) or m.group(2) or "").replace('"', "").lower()
            resolved = column_types.get(ref) or column_types.get(ref.split(".")[-1])
            if resolved:
                param = replace(param, pg_type=resolved)
        refined.append(param)
    return refined


def resolve_params(
    declared: Iterable[DeclaredParameter],
    inferred_names: Iterable[str] = (),
    column_types: Optional[dict[str, str]] = None,
    sql: str = "",
) -> list[ResolvedParameter]:
    """Merge declared and inferred parameters into unique p_-named bind parameters.

    Form/report/TempVars references and dotted Table.Column names are not
    bind parameters; they are resolved as references.
    """
    candidates: list[ResolvedParameter] = []
    for p in declared:
        if _FORM_REF_PARAM_RE.search(p.name) or "." in p.name.replace("[", "").replace("]", ""):
            continue
        candidates.append(ResolvedParameter(p.name, "p_" + sanitize_name(p.name), map_param_type(p.legacy_type)))
    for name in inferred_names:
        candidates.append(ResolvedParameter(name, "p_" + sanitize_name(name), "text"))

    unique: dict[str, ResolvedParameter] = {}
    for param in candidates:
        if param.pg_name != "p_" and param.pg_name not in unique:
            unique[param.pg_name] = param
    return refine_param_types(list(unique.values()), sql, column_types)


def bind_parameter_references(sql: str, params: Iterable[ResolvedParameter]) -> str:
    """Rewrite [Param] and bare Param references in the Access body to p_param."""
    for param in params:
        bracketed = r"(?<![!.\w\]])\[" + re.escape(param.name.strip("[]")) + r"\]"
        sql = _sub_outside_literals(bracketed, param.pg_name, sql, re.IGNORECASE,
                                    splitter=_ACCESS_STRING_SPLIT_RE)
        if re.fullmatch(r"[A-Za-z_]\w*", param.name):
            bare = r"(?<![!.\w\"\[])" + re.escape(param.name) + r"(?![\w\]\"(])"
            sql = _sub_outside_literals(bare, param.pg_name, sql, re.IGNORECASE)
    return sql


# =============================================================================
# DDL synthesizer
# =============================================================================

_AGGREGATE_RE = re.compile(r"\b(?:first_agg|last_agg)\"?\s*\(", re.IGNORECASE)
_SIMPLE_COLUMN_RE = re.compile(r'^(?:(?:"[^"]+"|\w+)\s*\.\s*)*(?:"[^"]+"|\w+|\*)$')
_ALIAS_RE = re.compile(r'^(.*?)\s+AS\s+("[^"]+"|\w+)\s*$', re.IGNORECASE | re.DOTALL)
_NOT_IMMUTABLE_RE = re.compile(
    r"\b(?:sum|count|avg|min|max|first_agg|last_agg|string_agg|array_agg|bool_and|bool_or"
    r"|stddev\w*|variance|var_pop|var_samp)\"?\s*\("
    r"|\bOVER\s*\(|\bSELECT\b"
    r"|\b(?:current_date|current_time|current_timestamp|localtime|localtimestamp|now|random"
    r"|clock_timestamp|current_setting|nextval|currval)\b",
    re.IGNORECASE,
)
_EXPR_TOKEN_RE = re.compile(
    r"(?P<str>'(?:[^']|'')*')"
    r"|(?P<comment>/\*.*?\*/)"
    r"|(?P<cast>::\s*(?:double\s+precision|[A-Za-z_]\w*)(?:\s*\(\s*\d+(?:\s*,\s*\d+)?\s*\))?)"
    r'|(?P<ident>(?:"[^"]+"|[A-Za-z_]\w*)(?:\s*\.\s*(?:"[^"]+"|[A-Za-z_]\w*))*)',
    re.DOTALL,
)
_EXPR_KEYWORDS = frozenset({
    "and", "or", "not", "null", "true", "false", "case", "when", "then", "else", "end",
    "is", "in", "like", "ilike", "between", "as", "from", "for", "interval", "similar",
    "escape", "any", "all", "some", "exists", "distinct", "collate", "at", "zone",
    "both", "leading", "trailing", "date", "time", "timestamp", "year", "month", "day",
    "hour", "minute", "second", "epoch", "dow", "doy", "quarter", "week",
    "current_date", "current_time", "current_timestamp", "localtime", "localtimestamp",
    "integer", "int", "bigint", "smallint", "numeric", "decimal", "real", "text",
    "varchar", "char", "character", "boolean", "double", "precision", "float",
})
_TEXT_FUNCS_RE = re.compile(
    r"^(?:upper|lower|trim|ltrim|rtrim|substring|left|right|replace|to_char|initcap"
    r"|concat|repeat|reverse|chr|lpad|rpad)\s*\(",
    re.IGNORECASE,
)


def _column_reference_spans(expr: str) -> list[tuple[int, int, str]]:
    """(start, end, text) of every column reference in an expression."""
    spans: list[tuple[int, int, str]] = []
    for m in _EXPR_TOKEN_RE.finditer(expr):
        if m.lastgroup != "ident":
            continue
        text = m.group("ident")
        if re.match(r"\s*\(", expr[m.end():]):
            continue  # function call
        if m.start() > 0 and (expr[m.start() - 1].isdigit() or expr[m.start() - 1] in "$."):
            continue
        if "." not in text and not text.startswith('"') and text.lower() in _EXPR_KEYWORDS:
            continue
        spans.append((m.start(), m.end(), text))
    return spans


def _trailing_cast_type(expr: str) -> Optional[str]:
    m = re.search(r"::\s*(double\s+precision|[A-Za-z_]\w*(?:\s*\(\s*\d+(?:\s*,\s*\d+)?\s*\))?)\s*$", expr)
    if not m:
        return None
    prefix = expr[:m.start()].rstrip()
    head = re.match(r"\s*(?:[A-Za-z_]\w*\s*)?\(", prefix)
    if head and find_closing_delimiter(prefix, head.end() - 1) == len(prefix) - 1:
        return m.group(1).lower()
    return None


def _infer_result_type(expr: str) -> tuple[str, str]:
    """Return (pg_type, body) for a calculated expression; body may gain a cast."""
    cast = _trailing_cast_type(expr)
    if cast:
        return cast, expr
    bare = _LITERAL_SPLIT_RE.sub("''", expr)
    if "||" in bare or _TEXT_FUNCS_RE.match(expr.strip()):
        return "text", f"({expr})::text"
    if not re.match(r"\s*(?:CASE|COALESCE)\b", expr, re.IGNORECASE) and re.search(
        r"<>|!=|<=|>=|[<>=]|\bIS\s+(?:NOT\s+)?NULL\b|\bLIKE\b|\bAND\b|\bOR\b|\bNOT\b", bare, re.IGNORECASE
    ):
        return "boolean", expr
    if re.search(r"\bINTERVAL\b", bare, re.IGNORECASE):
        return "timestamp", f"({expr})::timestamp"
    if re.search(r"[-+*/%]", bare):
        return "numeric", f"({expr})::numeric"
    return "anycompatible", expr


def find_select_list_bounds(sql: str) -> Optional[tuple[int, int]]:
    """(start, end) of the top-level SELECT list, or None when sql is not a SELECT."""
    m = re.match(r"\s*SELECT\s+(?:DISTINCT\s+)?", sql, re.IGNORECASE)
    if not m:
        return None
    end = _clause_end(sql, m.end(), _AFTER_SELECT_LIST_RE)
    return m.end(), end


def _replace_select_items(sql: str, bounds: tuple[int, int], items: list[str]) -> str:
    start, end = bounds
    tail = sql[end:]
    return sql[:start] + ", ".join(items) + (" " + tail.lstrip() if tail.strip() else "")


def extract_calculated_columns(
    sql: str, schema: str, object_name: str,
) -> tuple[str, list[ExtractedFunction]]:
    """Move aliased calculated SELECT items into IMMUTABLE helper functions.

    Only expressions with at least one column reference and nothing
    aggregate, windowed, volatile or session-dependent are extracted.
    """
    bounds = find_select_list_bounds(sql)
    if not bounds:
        return sql, []
    items = split_top_level_commas(sql[bounds[0]:bounds[1]])
    extracted: list[ExtractedFunction] = []
    new_items: list[str] = []
    for item in items:
        m = _ALIAS_RE.match(item)
        if not m:
            new_items.append(item)
            continue
        expr, alias = m.group(1).strip(), m.group(2)
        if _SIMPLE_COLUMN_RE.match(expr) or _NOT_IMMUTABLE_RE.search(expr) \
                or re.search(r"\b" + re.escape(schema) + r"\.", expr):
            new_items.append(item)
            continue
        spans = _column_reference_spans(expr)
        if not spans:
            new_items.append(item)
            continue

        args: dict[str, str] = {}
        for _, _, ref in spans:
            if ref in args:
                continue
            base = "p_" + (sanitize_name(ref.split(".")[-1].replace('"', "")) or "arg")
            pg_name, n = base, 2
            while pg_name in args.values():
                pg_name, n = f"{base}_{n}", n + 1
            args[ref] = pg_name
        body = expr
        for start, end, ref in reversed(spans):
            body = body[:start] + args[ref] + body[end:]
        result_type, body = _infer_result_type(body)

        alias_name = sanitize_name(alias.strip('"'))
        fn_name = f"calc_{object_name}_{alias_name}"
        signature = ", ".join(f"{pg} anycompatible" for pg in args.values())
        ddl = (
            f'CREATE OR REPLACE FUNCTION {schema}."{fn_name}"({signature})\n'
            f"RETURNS {result_type} AS $$\n"
            f"SELECT {body}\n"
            f"$$ LANGUAGE SQL IMMUTABLE"
        )
        extracted.append(ExtractedFunction(name=fn_name, sql=ddl, expression=expr))
        new_items.append(f'{schema}."{fn_name}"({", ".join(args)}) AS {alias}')
        log.debug("Extracted calculated column %s into %s.%s", alias, schema, fn_name)

    if not extracted:
        return sql, []
    return _replace_select_items(sql, bounds, new_items), extracted


def extract_return_columns(
    sql: str,
    column_types: Optional[dict[str, str]] = None,
) -> tuple[list[str], str]:
    """Derive RETURNS TABLE columns from the SELECT list.

    Returns (["\"col\" type", ...], sql). Columns of unknown type are returned
    as text and cast in the select list. An unparseable list returns ([], sql).
    """
    bounds = find_select_list_bounds(sql)
    if not bounds:
        return [], sql
    column_types = column_types or {}
    items = split_top_level_commas(sql[bounds[0]:bounds[1]])
    cols: list[str] = []
    seen: set[str] = set()
    new_items: list[str] = []
    for item in items:
        alias_m = _ALIAS_RE.match(item)
        expr = alias_m.group(1).strip() if alias_m else item.strip()
        if alias_m:
            name = sanitize_name(alias_m.group(2).replace('"', ""))
        elif _SIMPLE_COLUMN_RE.match(expr) and not expr.endswith("*"):
            name = sanitize_name(re.split(r"\s*\.\s*", expr)[-1].replace('"', ""))
        else:
            return [], sql
        if not name:
            return [], sql

        pg_type = None
        if _SIMPLE_COLUMN_RE.match(expr):
            ref = expr.replace('"', "").replace(" ", "").lower()
            pg_type = column_types.get(ref) or column_types.get(ref.split(".")[-1])
        unique, n = name, 2
        while unique in seen:
            unique, n = f"{name}_{n}", n + 1
        seen.add(unique)
        if pg_type:
            cols.append(f'"{unique}" {pg_type}')
            new_items.append(item)
        else:
            cols.append(f'"{unique}" text')
            cast_expr = f"{expr}::text" if _SIMPLE_COLUMN_RE.match(expr) else f"({expr})::text"
            alias = alias_m.group(2) if alias_m else f'"{unique}"'
            new_items.append(f"{cast_expr} AS {alias}")
    return cols, _replace_select_items(sql, bounds, new_items)


def needs_custom_aggregates(sql: str) -> bool:
    return bool(_AGGREGATE_RE.search(sql))


def get_aggregate_statements(schema: str) -> list[str]:
    """Idempotent first_agg/last_agg bootstrap for the target schema."""
    return [
        f"""DO $$ BEGIN
  IF NOT EXISTS (SELECT 1 FROM pg_proc WHERE proname = 'first_agg_sfunc' AND pronamespace = '{schema}'::regnamespace) THEN
    CREATE FUNCTION {schema}.first_agg_sfunc(anyelement, anyelement) RETURNS anyelement AS 'SELECT COALESCE($1, $2)' LANGUAGE SQL IMMUTABLE;
    CREATE AGGREGATE {schema}.first_agg(anyelement) (SFUNC = {schema}.first_agg_sfunc, STYPE = anyelement);
  END IF;
END $$""",
        f"""DO $$ BEGIN
  IF NOT EXISTS (SELECT 1 FROM pg_proc WHERE proname = 'last_agg_sfunc' AND pronamespace = '{schema}'::regnamespace) THEN
    CREATE FUNCTION {schema}.last_agg_sfunc(anyelement, anyelement) RETURNS anyelement AS 'SELECT COALESCE($2, $1)' LANGUAGE SQL IMMUTABLE;
    CREATE AGGREGATE {schema}.last_agg(anyelement) (SFUNC = {schema}.last_agg_sfunc, STYPE = anyelement);
  END IF;
END $$""",
    ]


def _param_signature(params: list[ResolvedParameter]) -> str:
    return "(" + ", ".join(f"{p.pg_name} {p.pg_type}" for p in params) + ")"


def _commented(sql: str) -> str:
    return "-- " + sql.replace("\n", "\n-- ")


def is_comment_only(statement: str) -> bool:
    """True for stub output (-- lines only); such statements are never executed."""
    return all(not line.strip() or line.strip().startswith("--") for line in statement.splitlines())


def build_select_view(sql: str, schema: str, pg_name: str, extract: bool = True) -> tuple[list[str], list[ExtractedFunction]]:
    extracted: list[ExtractedFunction] = []
    if extract:
        sql, extracted = extract_calculated_columns(sql, schema, pg_name)
    statements = [fn.sql for fn in extracted]
    statements.append(f'CREATE OR REPLACE VIEW {schema}."{pg_name}" AS\n{sql}')
    return statements, extracted


def build_parameterized_select(
    sql: str,
    schema: str,
    pg_name: str,
    params: list[ResolvedParameter],
    column_types: Optional[dict[str, str]] = None,
    extract: bool = True,
) -> tuple[list[str], list[ExtractedFunction], list[str]]:
    extracted: list[ExtractedFunction] = []
    if extract:
        sql, extracted = extract_calculated_columns(sql, schema, pg_name)
    statements = [fn.sql for fn in extracted]
    warnings: list[str] = []
    return_cols, sql = extract_return_columns(sql, column_types)
    if return_cols:
        returns = f"RETURNS TABLE({', '.join(return_cols)})"
    else:
        returns = "RETURNS SETOF record"
        warnings.append("Could not parse SELECT columns; using RETURNS SETOF record, manual definition needed")
    statements.append(
        f'CREATE OR REPLACE FUNCTION {schema}."{pg_name}"{_param_signature(params)}\n'
        f"{returns} AS $$\n{sql}\n$$ LANGUAGE SQL STABLE"
    )
    return statements, extracted, warnings


def build_plpgsql_function(sql: str, schema: str, pg_name: str, params: list[ResolvedParameter]) -> list[str]:
    """Action query (UPDATE/DELETE/INSERT) wrapped in a function returning the row count."""
    return [
        f'CREATE OR REPLACE FUNCTION {schema}."{pg_name}"{_param_signature(params)}\n'
        f"RETURNS integer AS $$\n"
        f"DECLARE _count integer;\n"
        f"BEGIN\n"
        f"  {sql};\n"
        f"  GET DIAGNOSTICS _count = ROW_COUNT;\n"
        f"  RETURN _count;\n"
        f"END;\n"
        f"$$ LANGUAGE plpgsql VOLATILE"
    ]


_INTO_TARGET_RE = re.compile(r"\bINTO\s+(?:\w+\.)?\"?(\w+)\"?\s+", re.IGNORECASE)


def build_make_table_function(
    sql: str, schema: str, pg_name: str, params: list[ResolvedParameter], original_sql: str,
) -> tuple[list[str], list[str], str]:
    """SELECT ... INTO target -> function that drops and recreates target. Returns (statements, warnings, kind)."""
    m = _INTO_TARGET_RE.search(sql)
    if not m:
        return (
            [f"-- MakeTable query could not be converted:\n{_commented(original_sql)}"],
            ["MakeTable query: could not parse INTO target table"],
            "none",
        )
    target = sanitize_name(m.group(1))
    select = (sql[:m.start()] + sql[m.end():]).strip()
    return (
        [
            f'CREATE OR REPLACE FUNCTION {schema}."{pg_name}"{_param_signature(params)}\n'
            f"RETURNS integer AS $$\n"
            f"DECLARE _count integer;\n"
            f"BEGIN\n"
            f'  DROP TABLE IF EXISTS {schema}."{target}";\n'
            f'  CREATE TABLE {schema}."{target}" AS\n'
            f"  {select};\n"
            f"  GET DIAGNOSTICS _count = ROW_COUNT;\n"
            f"  RETURN _count;\n"
            f"END;\n"
            f"$$ LANGUAGE plpgsql VOLATILE"
        ],
        [],
        "function",
    )


def synthesize_ddl(
    sql: str,
    schema: str,
    object_name: str,
    params: list[ResolvedParameter],
    query: QueryDescriptor,
    column_types: Optional[dict[str, str]] = None,
    original_sql: Optional[str] = None,
) -> ConversionResult:
    """Pick the target object for the translated sql and emit its DDL."""
    original_sql = original_sql if original_sql is not None else query.sql
    kind = query.kind
    result = ConversionResult(statements=[], object_name=object_name, object_kind="none")

    if needs_custom_aggregates(sql):
        result.statements.extend(get_aggregate_statements(schema))

    leading = re.match(r"\s*(\w+)", sql)
    keyword = leading.group(1).upper() if leading else ""
    is_union = kind is QueryType.UNION or bool(_find_top_level_keyword(sql, _SET_OP_RE))

    if kind is QueryType.MAKE_TABLE:
        statements, warnings, object_kind = build_make_table_function(sql, schema, object_name, params, original_sql)
        result.statements.extend(statements)
        result.warnings.extend(warnings)
        result.object_kind = object_kind

    elif kind is QueryType.CROSSTAB:
        result.object_kind = "view"
        result.warnings.append(
            "Crosstab queries require the tablefunc extension and manual column definitions; convert manually"
        )
        result.statements.append(f"-- Crosstab query requires manual conversion:\n{_commented(original_sql)}")

    elif kind in (QueryType.UPDATE, QueryType.DELETE, QueryType.INSERT) or keyword in ("UPDATE", "DELETE", "INSERT"):
        result.object_kind = "function"
        result.statements.extend(build_plpgsql_function(sql, schema, object_name, params))

    elif keyword == "SELECT" and params:
        result.object_kind = "function"
        statements, extracted, warnings = build_parameterized_select(
            sql, schema, object_name, params, column_types, extract=not is_union,
        )
        result.statements.extend(statements)
        result.extracted_functions = extracted
        result.warnings.extend(warnings)

    elif keyword == "SELECT":
        result.object_kind = "view"
        statements, extracted = build_select_view(sql, schema, object_name, extract=not is_union)
        result.statements.extend(statements)
        result.extracted_functions = extracted

    elif kind is QueryType.UNION:
        result.object_kind = "view"
        result.statements.append(f'CREATE OR REPLACE VIEW {schema}."{object_name}" AS\n{sql}')

    else:
        result.statements = [
            f'-- Unsupported query type "{query.query_type}" (code {query.query_type_code}):\n'
            f"{_commented(original_sql)}"
        ]
        result.warnings.append(f"Unsupported query type: {query.query_type} (code {query.query_type_code})")

    return result


# =============================================================================
# Orchestration
# =============================================================================

def convert_access_query(
    query: QueryDescriptor,
    schema: str,
    column_types: Optional[dict[str, str]] = None,
    control_mapping: Optional[dict] = None,
    *,
    cross_join: bool = False,
    user_functions: Optional[Iterable[str]] = None,
    state_table: Optional[str] = None,
) -> ConversionResult:
    """Convert one Access query to PostgreSQL statements.

    cross_join=True resolves form/TempVars references as joins against the
    state store instead of one scalar subquery per reference.
    """
    pg_name = sanitize_name(query.name)
    state_table = state_table or f"{schema}.{STATE_TABLE_NAME}"
    ctx = ConversionContext(joins=StateJoinCollector() if cross_join else None)

    if not query.sql or not query.sql.strip():
        return ConversionResult(statements=[], object_name=pg_name, object_kind="none",
                                warnings=["Empty SQL, nothing to convert"])

    log.debug("[QUERY %s] converting (type=%s, code=%s)", query.name, query.query_type, query.query_type_code)
    sql = re.sub(r";\s*$", "", query.sql.strip())
    sql = re.sub(r"^PARAMETERS\s+[^;]+;\s*", "", sql, flags=re.IGNORECASE)

    params = resolve_params(query.declared_parameters, infer_parameter_names(sql))

    legacy_names: frozenset[str] = frozenset()
    try:
        translation = translate_functions(sql)
        sql = translation.sql
        if not translation.converged:
            ctx.warn(f"Function translation did not converge after {translation.passes} passes; "
                     "output may contain untranslated calls")
    except Exception as e:
        log.warning("[QUERY %s] function translation failed: %s", query.name, e)
        ctx.warn(f"Function translation error: {e}")
        # untranslated Access calls are not user functions in the target schema
        legacy_names = frozenset(rule.name.rstrip("$") for rule in FUNCTION_MAP)

    try:
        sql = bind_parameter_references(sql, params)
    except Exception as e:
        log.warning("[QUERY %s] parameter binding failed: %s", query.name, e)
        ctx.warn(f"Parameter binding error: {e}")

    try:
        sql = apply_syntax_translations(sql, control_mapping, ctx, state_table)
    except Exception as e:
        log.warning("[QUERY %s] syntax translation failed: %s", query.name, e)
        ctx.warn(f"Syntax translation error: {e}")

    params = refine_param_types(params, sql, column_types)

    try:
        sql = add_schema_prefix(sql, schema)
        sql = add_schema_function_prefix(sql, schema, user_functions, legacy_names)
    except Exception as e:
        log.warning("[QUERY %s] schema qualification failed: %s", query.name, e)
        ctx.warn(f"Schema qualification error: {e}")

    state_refs = list(ctx.joins.references) if ctx.joins is not None else []
    if state_refs:
        try:
            sql = inject_state_joins(sql, state_refs, state_table, ctx)
        except Exception as e:
            log.warning("[QUERY %s] state join injection failed: %s", query.name, e)
            ctx.warn(f"State join injection error: {e}")

    result = synthesize_ddl(sql, schema, pg_name, params, query, column_types, query.sql)
    result.warnings = ctx.warnings + result.warnings
    result.referenced_entries = ctx.referenced_entries
    result.state_references = state_refs
    log.debug("[QUERY %s] -> %s %s.%s (%d statement(s), %d warning(s))",
              query.name, result.object_kind, schema, pg_name, len(result.statements), len(result.warnings))
    return result
