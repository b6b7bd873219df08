#!/usr/bin/env python3
"""
Migrate exported Microsoft Access queries to PostgreSQL views and functions.

Use Case:
    The Access exporter dumps every saved query (name, DAO type code, SQL text,
    declared PARAMETERS) to JSON, together with the form-control -> storage
    mapping. This script converts each query with access_query_converter and
    either writes the DDL to files (--no-execute) or creates the objects on the
    target PostgreSQL database.

    Per query:
      1. Convert (function translation, syntax translation, schema qualification,
         DDL synthesis). Unsupported shapes are reported, not executed.
      2. Execute all statements in one transaction (comment-only statements are
         skipped). On failure the transaction is rolled back.
      3. If an Anthropic API key is configured, ask the LLM once for a repaired
         statement set and execute that instead.

    Output:
      <output-dir>/success/<query>.sql     created (or, with --no-execute, converted) objects
      <output-dir>/failed/<query>.sql      failed or unsupported queries, with warnings
      <output-dir>/failed/error_log.txt    tab-separated error log with run metadata

Input JSON:
    Either a list of query objects or {"queries": [...], "controlMapping": {...}}.
    Query objects: {"queryName", "queryType", "queryTypeCode", "sql",
                    "parameters": [{"name", "type"}]}

Run:
    python migrate_access_queries.py --input queries.json --schema app \\
        --pg-host localhost --pg-database mydb --pg-user postgres --pg-password secret

    # Offline: write DDL only, validate view bodies with sqlglot
    python migrate_access_queries.py --input queries.json --schema app --no-execute

    # Form references as joins against the state table instead of subqueries
    python migrate_access_queries.py --input queries.json --schema app --cross-join
"""

from __future__ import annotations

import argparse
import asyncio
import datetime
import json
import logging
import os
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from access_query_converter import (
    ConversionResult,
    QueryDescriptor,
    convert_access_query,
    is_comment_only,
    sanitize_name,
)
from llm_query_repair import LLM_MODEL, LLMRepairError, build_schema_context, repair_query_with_llm

# ---- Connection defaults (override with env or CLI) ----
PG_HOST: str = "localhost"
PG_PORT: int = 5432
PG_DATABASE: str = "postgres"
PG_USER: str = "postgres"
PG_PASSWORD: str = "postgres"

TARGET_SCHEMA: str = "public"
OUTPUT_DIR: str = "access_queries_out"
LLM_TIMEOUT_SECS: float = 120.0
STATEMENT_TIMEOUT_MS: int = 0  # 0 = server default

log = logging.getLogger("migrate_access_queries")

_ENGINE_LOGGERS = ("migrate_access_queries", "access_query_converter", "llm_query_repair")


@dataclass
class QueryOutcome:
    name: str
    object_name: str
    object_kind: str
    status: str  # ok | written | failed | skipped
    statements: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    error: str = ""
    phase: str = ""
    llm_repaired: bool = False


def _setup_logging(level_name: str, log_file: Optional[str]) -> None:
    level = getattr(logging, level_name.upper(), logging.INFO)
    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%H:%M:%S")
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    for name in _ENGINE_LOGGERS:
        logger = logging.getLogger(name)
        logger.setLevel(level)
        if not logger.handlers:
            for handler in handlers:
                handler.setFormatter(fmt)
                logger.addHandler(handler)


# =============================================================================
# Input
# =============================================================================

def load_queries(path: str) -> tuple[list[QueryDescriptor], dict]:
    """Read query descriptors (and an embedded control mapping, if any) from JSON."""
    with open(path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    if isinstance(data, list):
        raw_queries, mapping = data, {}
    elif isinstance(data, dict) and isinstance(data.get("queries"), list):
        raw_queries, mapping = data["queries"], data.get("controlMapping") or {}
    else:
        raise ValueError(f"{path}: expected a list of queries or an object with a 'queries' list")
    queries = [QueryDescriptor.from_dict(q) for q in raw_queries]
    log.info("Loaded %d query descriptor(s) from %s", len(queries), path)
    return queries, mapping


def load_json_mapping(path: str) -> dict:
    with open(path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a JSON object")
    return data


# =============================================================================
# PostgreSQL
# =============================================================================

def _connect(host: str, port: int, database: str, user: str, password: str):
    """Return a psycopg2 connection; statements run in explicit transactions."""
    import psycopg2
    log.debug("Opening connection to %s:%d/%s as user=%s", host, port, database, user)
    conn = psycopg2.connect(host=host, port=port, database=database, user=user, password=password)
    conn.autocommit = False
    return conn


def fetch_column_types(conn, schema: str) -> dict[str, str]:
    """Column type hints for parameter and return-column typing.

    Keys are "table.column" and bare "column" (first table wins).
    """
    types: dict[str, str] = {}
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT table_name, column_name, data_type
            FROM information_schema.columns
            WHERE table_schema = %s
            ORDER BY table_name, ordinal_position
            """,
            (schema,),
        )
        for table_name, column_name, data_type in cur.fetchall():
            if data_type in ("USER-DEFINED", "ARRAY"):
                continue
            types[f"{table_name}.{column_name}".lower()] = data_type
            types.setdefault(column_name.lower(), data_type)
    conn.rollback()
    log.info("Fetched %d column type hint(s) for schema %s", len(types), schema)
    return types


def fetch_schema_functions(conn, schema: str) -> set[str]:
    with conn.cursor() as cur:
        cur.execute(
            "SELECT DISTINCT routine_name FROM information_schema.routines WHERE routine_schema = %s",
            (schema,),
        )
        names = {row[0].lower() for row in cur.fetchall()}
    conn.rollback()
    return names


def execute_statements(conn, statements: list[str], statement_timeout_ms: int = 0) -> tuple[bool, str]:
    """Run statements in one transaction. Returns (success, error_message)."""
    import psycopg2

    executable = [s for s in statements if s.strip() and not is_comment_only(s)]
    if not executable:
        return False, "No executable statements"
    try:
        with conn.cursor() as cur:
            if statement_timeout_ms > 0:
                cur.execute(f"SET LOCAL statement_timeout = {int(statement_timeout_ms)}")
            for stmt in executable:
                log.debug("Executing:\n%s", stmt)
                cur.execute(stmt)
        conn.commit()
        return True, ""
    except psycopg2.Error as e:
        conn.rollback()
        return False, str(e).strip()


def validate_statements(statements: list[str]) -> list[str]:
    """Parse view bodies with sqlglot (postgres dialect); returns warnings."""
    import sqlglot
    from sqlglot.errors import ParseError

    warnings = []
    for stmt in statements:
        head, sep, body = stmt.partition(" AS\n")
        if not sep or not head.lstrip().upper().startswith("CREATE OR REPLACE VIEW"):
            continue
        try:
            sqlglot.parse_one(body, read="postgres")
        except ParseError as e:
            warnings.append(f"sqlglot could not parse view body: {str(e).splitlines()[0]}")
    return warnings


# =============================================================================
# Per-query migration
# =============================================================================

async def _repair(
    conn, api_key: str, schema: str, query: QueryDescriptor, failed_sql: str,
    db_error: str, control_mapping: dict, model: str,
):
    context = await build_schema_context(conn, schema)
    return await repair_query_with_llm(
        api_key, schema, context, query.sql, failed_sql, db_error, control_mapping, model=model,
    )


def migrate_query(
    conn,
    query: QueryDescriptor,
    schema: str,
    column_types: dict[str, str],
    control_mapping: dict,
    *,
    cross_join: bool = False,
    user_functions: Optional[set[str]] = None,
    api_key: Optional[str] = None,
    llm_model: str = LLM_MODEL,
    llm_timeout: float = LLM_TIMEOUT_SECS,
    statement_timeout_ms: int = 0,
) -> QueryOutcome:
    """Convert one query and create its objects; conn=None only converts."""
    result: ConversionResult = convert_access_query(
        query, schema, column_types, control_mapping,
        cross_join=cross_join, user_functions=user_functions,
    )
    outcome = QueryOutcome(
        name=query.name,
        object_name=result.object_name or sanitize_name(query.name),
        object_kind=result.object_kind,
        status="written",
        statements=list(result.statements),
        warnings=list(result.warnings),
    )
    if result.object_kind == "none":
        outcome.status = "skipped"
        outcome.phase = "convert"
        outcome.error = "; ".join(result.warnings) or "Nothing to convert"
        return outcome
    if conn is None:
        return outcome

    ok, err = execute_statements(conn, result.statements, statement_timeout_ms)
    if ok:
        outcome.status = "ok"
        return outcome

    log.warning("[QUERY %s] execution failed: %s", query.name, err)
    outcome.status = "failed"
    outcome.phase = "execute"
    outcome.error = err
    if not api_key:
        return outcome

    failed_sql = ";\n\n".join(result.statements)
    try:
        repaired = asyncio.run(asyncio.wait_for(
            _repair(conn, api_key, schema, query, failed_sql, err, control_mapping, llm_model),
            timeout=llm_timeout,
        ))
    except asyncio.TimeoutError:
        log.error("[QUERY %s] LLM repair timed out after %.0fs", query.name, llm_timeout)
        outcome.phase = "llm"
        outcome.error = f"{err} | LLM repair timed out after {llm_timeout:.0f}s"
        return outcome
    except LLMRepairError as e:
        log.error("[QUERY %s] %s", query.name, e)
        outcome.phase = "llm"
        outcome.error = f"{err} | {e}"
        return outcome

    ok, repair_err = execute_statements(conn, repaired.statements, statement_timeout_ms)
    if not ok:
        outcome.phase = "llm-execute"
        outcome.error = f"{err} | after LLM repair: {repair_err}"
        return outcome

    log.info("[QUERY %s] created after LLM repair", query.name)
    outcome.status = "ok"
    outcome.phase = ""
    outcome.error = ""
    outcome.llm_repaired = True
    outcome.statements = repaired.statements
    outcome.object_kind = repaired.object_kind
    outcome.warnings.extend(repaired.warnings)
    return outcome


# =============================================================================
# Output
# =============================================================================

def write_sql_file(directory: Path, outcome: QueryOutcome) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{outcome.object_name or 'unnamed'}.sql"
    lines = [f"-- Access query: {outcome.name}", f"-- Object kind: {outcome.object_kind}"]
    lines.extend(f"-- WARNING: {w}" for w in outcome.warnings)
    if outcome.error:
        lines.append("-- ERROR: " + outcome.error.replace("\n", " | "))
    lines.append("")
    lines.extend(f"{stmt};\n" for stmt in outcome.statements)
    path.write_text("\n".join(lines), encoding="utf-8")
    return path


def write_error_log(
    output_dir: str,
    outcomes: list[QueryOutcome],
    input_file: str,
    target: str,
    elapsed_secs: float,
) -> Path:
    """Tab-separated error log with a run-metadata header. Always written."""
    failed_dir = Path(output_dir) / "failed"
    failed_dir.mkdir(parents=True, exist_ok=True)
    error_log_file = failed_dir / "error_log.txt"

    problems = [o for o in outcomes if o.status in ("failed", "skipped")]
    lines: list[str] = []
    lines.append("=" * 80)
    lines.append("ACCESS QUERY MIGRATION - ERROR / STATUS LOG")
    lines.append("=" * 80)
    lines.append(f"Timestamp       : {datetime.datetime.now().isoformat()}")
    lines.append(f"Input file      : {input_file}")
    lines.append(f"Target          : {target}")
    lines.append(f"Total queries   : {len(outcomes)}")
    lines.append(f"Succeeded       : {sum(1 for o in outcomes if o.status in ('ok', 'written'))}")
    lines.append(f"LLM repaired    : {sum(1 for o in outcomes if o.llm_repaired)}")
    lines.append(f"Failed          : {sum(1 for o in outcomes if o.status == 'failed')}")
    lines.append(f"Skipped         : {sum(1 for o in outcomes if o.status == 'skipped')}")
    lines.append(f"Elapsed         : {elapsed_secs:.2f}s")
    lines.append("")

    if problems:
        lines.append("-" * 80)
        lines.append("FAILED / SKIPPED QUERIES")
        lines.append("-" * 80)
        lines.append("query_name\tobject_name\tobject_kind\terror_phase\terror_message")
        for o in problems:
            safe_err = o.error.replace("\n", " | ").replace("\t", " ")
            lines.append(f"{o.name}\t{o.object_name}\t{o.object_kind}\t{o.phase}\t{safe_err}")
        lines.append("")
    else:
        lines.append("No errors. All queries converted successfully.")
        lines.append("")

    lines.append("=" * 80)
    lines.append("END OF ERROR LOG")
    lines.append("=" * 80)
    error_log_file.write_text("\n".join(lines), encoding="utf-8")
    return error_log_file


def print_summary(outcomes: list[QueryOutcome], elapsed_secs: float) -> None:
    by_status: dict[str, int] = {}
    for o in outcomes:
        by_status[o.status] = by_status.get(o.status, 0) + 1
    n_warn = sum(1 for o in outcomes if o.warnings)
    print("\n" + "=" * 65, flush=True)
    print("SUMMARY", flush=True)
    print("=" * 65, flush=True)
    print(f"  Queries         : {len(outcomes)}", flush=True)
    for status in ("ok", "written", "failed", "skipped"):
        if by_status.get(status):
            print(f"  {status:<16}: {by_status[status]}", flush=True)
    print(f"  LLM repaired    : {sum(1 for o in outcomes if o.llm_repaired)}", flush=True)
    print(f"  With warnings   : {n_warn}", flush=True)
    print(f"  Elapsed         : {elapsed_secs:.2f}s", flush=True)
    for o in outcomes:
        if o.status in ("failed", "skipped"):
            print(f"  {o.status.upper():<8} {o.name}: {o.error.splitlines()[0] if o.error else ''}", flush=True)


# =============================================================================
# Main
# =============================================================================

def main() -> None:
    run_start = time.time()

    parser = argparse.ArgumentParser(
        description="Convert exported Access queries to PostgreSQL views and functions.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--input", required=True, help="JSON file with exported query descriptors")
    parser.add_argument("--control-mapping", default=None, help="JSON file: {\"form.control\": {\"table\", \"column\"}}")
    parser.add_argument("--column-types", default=None, help="JSON file of column type hints (used with --no-execute)")
    parser.add_argument("--schema", default=None, help=f"Target PostgreSQL schema (default: {TARGET_SCHEMA})")
    parser.add_argument("--output-dir", default=OUTPUT_DIR, help=f"Output directory (default: {OUTPUT_DIR})")
    parser.add_argument("--no-execute", action="store_true", help="Convert and write SQL files only; no database connection")
    parser.add_argument("--cross-join", action="store_true", help="Resolve form references as joins against the state table")
    parser.add_argument("--registered-functions-only", action="store_true",
                        help="Schema-qualify only calls to functions that already exist in the target schema")

    # LLM repair
    parser.add_argument("--no-llm-repair", action="store_true", help="Do not ask the LLM to repair failed queries")
    parser.add_argument("--llm-model", default=None, help=f"Model for repair (or LLM_MODEL env; default: {LLM_MODEL})")
    parser.add_argument("--llm-timeout", type=float, default=LLM_TIMEOUT_SECS, help="Seconds per repair request")

    # PostgreSQL connection
    parser.add_argument("--pg-host", default=None, help="PostgreSQL host (or PG_HOST env)")
    parser.add_argument("--pg-port", type=int, default=None, help="PostgreSQL port (or PG_PORT env)")
    parser.add_argument("--pg-database", default=None, help="PostgreSQL database (or PG_DATABASE env)")
    parser.add_argument("--pg-user", default=None, help="PostgreSQL user (or PG_USER env)")
    parser.add_argument("--pg-password", default=None, help="PostgreSQL password (or PG_PASSWORD env)")
    parser.add_argument("--statement-timeout", type=int, default=STATEMENT_TIMEOUT_MS,
                        help="Per-statement timeout in ms (0 = server default)")

    # Logging
    parser.add_argument("--log-level", default="INFO", choices=("DEBUG", "INFO", "WARNING", "ERROR"))
    parser.add_argument("--log-file", default=None, metavar="PATH")

    args = parser.parse_args()
    _setup_logging(args.log_level, args.log_file)

    # ---- Resolve configuration once (CLI > env var > module default) ----
    schema = sanitize_name(args.schema or os.environ.get("PG_SCHEMA", TARGET_SCHEMA)) or "public"
    pg_host = args.pg_host or os.environ.get("PG_HOST", PG_HOST)
    pg_port = args.pg_port if args.pg_port is not None else int(os.environ.get("PG_PORT", str(PG_PORT)))
    pg_database = args.pg_database or os.environ.get("PG_DATABASE", PG_DATABASE)
    pg_user = args.pg_user or os.environ.get("PG_USER", PG_USER)
    pg_password = args.pg_password or os.environ.get("PG_PASSWORD", PG_PASSWORD)
    api_key = None if args.no_llm_repair else os.environ.get("ANTHROPIC_API_KEY")
    llm_model = args.llm_model or os.environ.get("LLM_MODEL", LLM_MODEL)

    try:
        queries, control_mapping = load_queries(args.input)
        if args.control_mapping:
            control_mapping = {**control_mapping, **load_json_mapping(args.control_mapping)}
        column_types = load_json_mapping(args.column_types) if args.column_types else {}
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr, flush=True)
        sys.exit(1)

    if not queries:
        print("No queries found in input.", flush=True)
        sys.exit(0)

    log.info("Target schema: %s, %d control mapping entries, cross-join=%s",
             schema, len(control_mapping), args.cross_join)

    conn = None
    user_functions: Optional[set[str]] = None
    target = "(no-execute)"
    if not args.no_execute:
        target = f"{pg_host}:{pg_port}/{pg_database}"
        print(f"  Connecting to PostgreSQL: {target}...", flush=True)
        try:
            conn = _connect(pg_host, pg_port, pg_database, pg_user, pg_password)
        except Exception as e:
            print(f"Error connecting to PostgreSQL: {e}", file=sys.stderr, flush=True)
            sys.exit(1)
        column_types = {**fetch_column_types(conn, schema), **column_types}
        if args.registered_functions_only:
            user_functions = fetch_schema_functions(conn, schema)
        if api_key:
            log.info("LLM repair enabled (model=%s)", llm_model)
        else:
            log.info("LLM repair disabled (no ANTHROPIC_API_KEY or --no-llm-repair)")

    outcomes: list[QueryOutcome] = []
    out_dir = Path(args.output_dir)
    try:
        for i, query in enumerate(queries, 1):
            outcome = migrate_query(
                conn, query, schema, column_types, control_mapping,
                cross_join=args.cross_join,
                user_functions=user_functions,
                api_key=api_key,
                llm_model=llm_model,
                llm_timeout=args.llm_timeout,
                statement_timeout_ms=args.statement_timeout,
            )
            if conn is None and outcome.status == "written":
                outcome.warnings.extend(validate_statements(outcome.statements))
            subdir = "success" if outcome.status in ("ok", "written") else "failed"
            write_sql_file(out_dir / subdir, outcome)
            outcomes.append(outcome)
            suffix = " (LLM repaired)" if outcome.llm_repaired else ""
            log.info("  [%d/%d] %-7s %s -> %s.%s%s", i, len(queries), outcome.status.upper(),
                     query.name, schema, outcome.object_name, suffix)
    finally:
        if conn is not None:
            conn.close()

    elapsed = time.time() - run_start
    error_log = write_error_log(args.output_dir, outcomes, args.input, target, elapsed)
    print_summary(outcomes, elapsed)
    print(f"\n  Error log: {error_log}", flush=True)

    if any(o.status == "failed" for o in outcomes):
        sys.exit(1)


if __name__ == "__main__":
    main()
