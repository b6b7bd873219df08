"""
LLM-assisted repair of Access query conversions rejected by PostgreSQL.

When the statements produced by access_query_converter fail on execution, the
original Access SQL, the failed PostgreSQL SQL, the database error, the control
mapping and a compact schema summary are sent to the Anthropic Messages API,
which answers with a corrected statement set.

One request per call. Timeouts and retries belong to the caller
(asyncio.wait_for); cancellation propagates unchanged.

Usage:
    context = await build_schema_context(conn, "app")
    repaired = await repair_query_with_llm(
        api_key, "app", context, access_sql, failed_sql, str(db_error), mapping,
    )
    for stmt in repaired.statements:
        ...
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

import anthropic

from access_query_converter import SESSION_SETTING, STATE_TABLE_NAME, is_comment_only

log = logging.getLogger("llm_query_repair")

# ---- Defaults (the CLI overrides with LLM_MODEL env or --llm-model) ----
LLM_MODEL: str = "claude-sonnet-4-20250514"
LLM_MAX_TOKENS: int = 4096

LLM_ASSISTED_WARNING = "LLM-assisted conversion: regex converter failed, LLM repaired the SQL"

_COLUMNS_SQL = """
    SELECT table_name, column_name, data_type
    FROM information_schema.columns
    WHERE table_schema = %s
    ORDER BY table_name, ordinal_position
"""

_VIEWS_SQL = "SELECT table_name FROM information_schema.views WHERE table_schema = %s"


class LLMRepairError(RuntimeError):
    """The repair service failed or returned nothing usable."""


@dataclass
class RepairResult:
    statements: list[str]
    object_kind: str
    warnings: list[str] = field(default_factory=list)


# =============================================================================
# Prompt context
# =============================================================================

def _fetch_schema_rows(connection, schema: str) -> tuple[list[tuple[str, str, str]], set[str]]:
    with connection.cursor() as cur:
        cur.execute(_COLUMNS_SQL, (schema,))
        columns = [tuple(row) for row in cur.fetchall()]
        cur.execute(_VIEWS_SQL, (schema,))
        views = {row[0] for row in cur.fetchall()}
    return columns, views


def format_schema_context(columns: list[tuple[str, str, str]], views: set[str]) -> str:
    """One line per relation: 'name (view): col type, col type'."""
    tables: dict[str, list[str]] = {}
    for table_name, column_name, data_type in columns:
        tables.setdefault(table_name, []).append(f"{column_name} {data_type}")
    lines = []
    for table_name, cols in tables.items():
        suffix = " (view)" if table_name in views else ""
        lines.append(f"{table_name}{suffix}: {', '.join(cols)}")
    return "\n".join(lines)


async def build_schema_context(connection, schema: str) -> str:
    """Summarize tables, views and column types of schema for the repair prompt.

    connection is a psycopg2 connection; the blocking catalog queries run in a
    worker thread.
    """
    columns, views = await asyncio.to_thread(_fetch_schema_rows, connection, schema)
    log.debug("Schema context for %s: %d column(s), %d view(s)", schema, len(columns), len(views))
    return format_schema_context(columns, views)


def format_control_mapping(control_mapping: Optional[dict]) -> str:
    lines = []
    for key, value in (control_mapping or {}).items():
        if isinstance(value, dict):
            lines.append(f"{key} → {value.get('table')}.{value.get('column')}")
        else:
            lines.append(f"{key} → {value}")
    return "\n".join(lines) if lines else "(none)"


def build_repair_prompt(
    schema_name: str,
    schema_context: str,
    original_sql: str,
    failed_sql: str,
    db_error: str,
    control_mapping: Optional[dict] = None,
) -> tuple[str, str]:
    """Return (system_prompt, user_message) for one repair request."""
    state_table = f"{schema_name}.{STATE_TABLE_NAME}"
    system_prompt = f"""You convert Microsoft Access SQL to PostgreSQL DDL statements.

TARGET SCHEMA: {schema_name}
All table references must be schema-qualified (e.g. {schema_name}.table_name).
Use lowercase identifiers. Replace spaces in names with underscores.

RULES:
- SELECT queries -> CREATE OR REPLACE VIEW {schema_name}.viewname AS SELECT ...
- Parameterized queries -> CREATE OR REPLACE FUNCTION {schema_name}.funcname(...) RETURNS TABLE(...) or RETURNS SETOF
- UPDATE/DELETE/INSERT queries -> CREATE OR REPLACE FUNCTION ... RETURNS integer LANGUAGE plpgsql returning the affected row count
- Use table aliases: FROM {schema_name}.employees e, then reference e.column_name
- Access Nz(x) -> COALESCE(x, 0) for numeric, COALESCE(x, '') for text
- Access IIf(cond, t, f) -> CASE WHEN cond THEN t ELSE f END
- Access Date() -> CURRENT_DATE, Now() -> CURRENT_TIMESTAMP
- Access True/False -> TRUE/FALSE
- Access & (string concat) -> ||
- Access Mid(s,start,len) -> SUBSTRING(s FROM start FOR len)
- Access Left(s,n) -> LEFT(s, n), Right(s,n) -> RIGHT(s, n)
- Access Len(s) -> LENGTH(s), Trim(s) -> TRIM(s)
- Access InStr(s,sub) -> POSITION(sub IN s)
- Access Format(val, fmt) -> TO_CHAR(val, fmt) with PG format codes
- Access HAVING without GROUP BY -> use WHERE instead
- Access TOP N -> LIMIT N
- Access DISTINCTROW -> DISTINCT
- PIVOT/TRANSFORM queries -> use crosstab() from the tablefunc extension or CASE aggregation

FORM/REPORT REFERENCES:
References like [Forms]![FormName]![ControlName] or [TempVars]![VarName] must be resolved with state table subqueries:
(SELECT value FROM {state_table} WHERE session_id = current_setting('{SESSION_SETTING}', true) AND table_name = 'TABLE' AND column_name = 'COLUMN')
TempVars use table_name = '_tempvars' and the variable name as column_name.
The value column is text; cast the other side of comparisons as needed.

Control mapping (formName.controlName → tableName.columnName):
{format_control_mapping(control_mapping)}

For unresolved form references, use NULL with a comment explaining what was unresolved.

DATABASE SCHEMA:
{schema_context}

Return ONLY the SQL statement(s). No markdown code fences, no explanations, no comments outside the SQL.
If multiple statements are needed (e.g. helper function + view), separate them with semicolons."""

    user_message = f"""Original Access SQL:
{original_sql}

Our automated converter produced this PostgreSQL SQL, which failed:
{failed_sql}

PostgreSQL error:
{db_error}

Fix the SQL and return a valid CREATE OR REPLACE VIEW or CREATE OR REPLACE FUNCTION statement."""
    return system_prompt, user_message


# =============================================================================
# Response handling
# =============================================================================

_FENCE_OPEN = re.compile(r"^```(?:sql)?\s*\n?", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\n?```\s*$")
_STATEMENT_SPLIT = re.compile(r";\s*(?=(?:CREATE|DROP|ALTER|SET)\b)", re.IGNORECASE)
_CREATE_FUNCTION = re.compile(r"CREATE\s+(?:OR\s+REPLACE\s+)?FUNCTION", re.IGNORECASE)


def parse_repair_response(text: str) -> RepairResult:
    """Split the model's SQL answer into statements and classify the result.

    Raises LLMRepairError when no statement survives.
    """
    sql = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", (text or "").strip())).strip()
    statements = []
    for chunk in _STATEMENT_SPLIT.split(sql):
        stmt = chunk.strip().rstrip(";").strip()
        if stmt and not is_comment_only(stmt):
            statements.append(stmt)
    if not statements:
        raise LLMRepairError("LLM returned empty response")
    object_kind = "function" if any(_CREATE_FUNCTION.search(s) for s in statements) else "view"
    return RepairResult(statements=statements, object_kind=object_kind, warnings=[LLM_ASSISTED_WARNING])


def _response_text(message: Any) -> str:
    parts = []
    for block in getattr(message, "content", None) or []:
        if getattr(block, "type", "") == "text":
            parts.append(getattr(block, "text", ""))
    return "".join(parts)


async def repair_query_with_llm(
    api_key: str,
    schema_name: str,
    schema_context: str,
    original_sql: str,
    failed_sql: str,
    db_error: str,
    control_mapping: Optional[dict] = None,
    *,
    model: str = LLM_MODEL,
    max_tokens: int = LLM_MAX_TOKENS,
    client: Optional[anthropic.AsyncAnthropic] = None,
) -> RepairResult:
    """Ask the model for a corrected statement set. One request, no retries.

    API failures raise LLMRepairError carrying the upstream message. Pass
    client to reuse one AsyncAnthropic instance across queries.
    """
    system_prompt, user_message = build_repair_prompt(
        schema_name, schema_context, original_sql, failed_sql, db_error, control_mapping,
    )
    if client is None:
        client = anthropic.AsyncAnthropic(api_key=api_key)

    log.debug("LLM repair request: model=%s, failed SQL %d chars", model, len(failed_sql or ""))
    try:
        message = await client.messages.create(
            model=model,
            max_tokens=max_tokens,
            system=system_prompt,
            messages=[{"role": "user", "content": user_message}],
        )
    except anthropic.APIError as e:
        log.error("LLM repair API error: %s", e)
        raise LLMRepairError(f"LLM repair API error: {e}") from e

    text = _response_text(message)
    if not text.strip():
        raise LLMRepairError("LLM returned empty response")
    result = parse_repair_response(text)
    log.info("LLM repair produced %d statement(s) (%s)", len(result.statements), result.object_kind)
    return result
