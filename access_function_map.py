"""
Access built-in function catalog for the Access -> PostgreSQL query converter.

Pure data plus small argument transforms: each FunctionRule pairs a call-site
pattern (function name followed by an opening parenthesis) with a transform
that receives the already-split top-level arguments and returns the
PostgreSQL replacement text.

Order matters: the translation driver in access_query_converter.py walks the
rules in the order listed here. Longer names that share a prefix with a
shorter one (InStrRev / InStr, Mid$ / Mid) do not collide because every
pattern requires the opening parenthesis right after the name.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable


# -----------------------------------------------------------------------------
# Access Format() names -> PostgreSQL to_char patterns
# -----------------------------------------------------------------------------
FORMAT_MAP: dict[str, str] = {
    "General Date": "YYYY-MM-DD HH24:MI:SS",
    "Long Date": "FMDay, FMMonth DD, YYYY",
    "Medium Date": "DD-Mon-YY",
    "Short Date": "MM/DD/YYYY",
    "Long Time": "HH24:MI:SS",
    "Medium Time": "HH:MI AM",
    "Short Time": "HH24:MI",
    "mm/dd/yyyy": "MM/DD/YYYY",
    "dd/mm/yyyy": "DD/MM/YYYY",
    "yyyy-mm-dd": "YYYY-MM-DD",
    "General Number": "9999999999D99",
    "Currency": "L9G999G999D99",
    "Fixed": "9999999999D99",
    "Standard": "9G999G999D99",
    "Percent": "999D99%",
    "#,##0": "FM9G999G990",
    "#,##0.00": "FM9G999G990D00",
    "0": "FM0",
    "0.00": "FM0D00",
    "0%": "FM0%",
    "0.00%": "FM0D00%",
}

# DateAdd interval codes -> INTERVAL unit
DATEADD_UNITS: dict[str, str] = {
    "yyyy": "year", "q": "month", "m": "month", "y": "day", "d": "day",
    "w": "day", "ww": "week", "h": "hour", "n": "minute", "s": "second",
}

# DatePart interval codes -> EXTRACT field
DATEPART_FIELDS: dict[str, str] = {
    "yyyy": "YEAR", "q": "QUARTER", "m": "MONTH", "y": "DOY", "d": "DAY",
    "w": "DOW", "ww": "WEEK", "h": "HOUR", "n": "MINUTE", "s": "SECOND",
}


@dataclass(frozen=True)
class FunctionRule:
    """One catalog entry: Access function *name*, its call-site *pattern*, and *transform*."""

    name: str
    pattern: re.Pattern
    transform: Callable[[list[str]], str]


def _rule(name: str, transform: Callable[[list[str]], str]) -> FunctionRule:
    pattern = re.compile(r"(?<![\w.\"])" + re.escape(name) + r"\s*\(", re.IGNORECASE)
    return FunctionRule(name=name, pattern=pattern, transform=transform)


def _need(args: list[str], count: int, name: str) -> list[str]:
    if len(args) < count:
        raise ValueError(f"{name}() expects at least {count} argument(s), got {len(args)}")
    return args


def _unquote(arg: str) -> str:
    return arg.strip().strip("\"'")


# ---- Null handling / predicates ----

def _nz(a: list[str]) -> str:
    _need(a, 1, "Nz")
    if len(a) >= 2:
        return f"COALESCE({a[0]}, {a[1]})"
    return f"COALESCE({a[0]}, '')"


def _iif(a: list[str]) -> str:
    _need(a, 2, "IIf")
    other = a[2] if len(a) >= 3 else "NULL"
    return f"CASE WHEN {a[0]} THEN {a[1]} ELSE {other} END"


def _switch(a: list[str]) -> str:
    _need(a, 2, "Switch")
    whens = " ".join(f"WHEN {a[i]} THEN {a[i + 1]}" for i in range(0, len(a) - 1, 2))
    return f"CASE {whens} END"


def _choose(a: list[str]) -> str:
    _need(a, 2, "Choose")
    whens = " ".join(f"WHEN {i} THEN {a[i]}" for i in range(1, len(a)))
    return f"CASE {a[0]} {whens} END"


# ---- Strings ----

def _mid(a: list[str]) -> str:
    _need(a, 2, "Mid")
    if len(a) >= 3:
        return f"SUBSTRING({a[0]} FROM {a[1]} FOR {a[2]})"
    return f"SUBSTRING({a[0]} FROM {a[1]})"


def _instr(a: list[str]) -> str:
    _need(a, 2, "InStr")
    if len(a) >= 3:
        # InStr(start, string, find)
        return f"(POSITION({a[2]} IN SUBSTRING({a[1]} FROM {a[0]})) + {a[0]} - 1)"
    return f"POSITION({a[1]} IN {a[0]})"


def _strconv(a: list[str]) -> str:
    _need(a, 2, "StrConv")
    mode = a[1].strip()
    if mode == "1":
        return f"UPPER({a[0]})"
    if mode == "2":
        return f"LOWER({a[0]})"
    if mode == "3":
        return f"INITCAP({a[0]})"
    return f"({a[0]})"


# ---- Dates ----

def _dateadd(a: list[str]) -> str:
    _need(a, 3, "DateAdd")
    code = _unquote(a[0]).lower()
    unit = DATEADD_UNITS.get(code, "day")
    amount = f"({a[1]}) * 3" if code == "q" else a[1]
    return f"({a[2]} + ({amount}) * INTERVAL '1 {unit}')"


def _datediff(a: list[str]) -> str:
    _need(a, 3, "DateDiff")
    code = _unquote(a[0]).lower()
    d1, d2 = a[1], a[2]
    if code == "m":
        return (
            f"(EXTRACT(YEAR FROM {d2}::date) * 12 + EXTRACT(MONTH FROM {d2}::date)"
            f" - EXTRACT(YEAR FROM {d1}::date) * 12 - EXTRACT(MONTH FROM {d1}::date))::integer"
        )
    if code == "yyyy":
        return f"(EXTRACT(YEAR FROM {d2}::date) - EXTRACT(YEAR FROM {d1}::date))::integer"
    if code == "ww":
        return f"(({d2}::date - {d1}::date) / 7)"
    if code == "h":
        return f"(EXTRACT(EPOCH FROM {d2}::timestamp - {d1}::timestamp) / 3600)::integer"
    if code == "n":
        return f"(EXTRACT(EPOCH FROM {d2}::timestamp - {d1}::timestamp) / 60)::integer"
    if code == "s":
        return f"(EXTRACT(EPOCH FROM {d2}::timestamp - {d1}::timestamp))::integer"
    return f"({d2}::date - {d1}::date)"


def _datepart(a: list[str]) -> str:
    _need(a, 2, "DatePart")
    field = DATEPART_FIELDS.get(_unquote(a[0]).lower(), "DAY")
    return f"EXTRACT({field} FROM {a[1]})::integer"


def _extract(field: str) -> Callable[[list[str]], str]:
    def transform(a: list[str]) -> str:
        _need(a, 1, field.title())
        return f"EXTRACT({field} FROM {a[0]})::integer"
    return transform


def _format(a: list[str]) -> str:
    _need(a, 1, "Format")
    fmt = _unquote(a[1]) if len(a) >= 2 else ""
    if not fmt:
        return f"({a[0]})::text"
    pg_fmt = FORMAT_MAP.get(fmt, fmt).replace("'", "''")
    return f"to_char({a[0]}, '{pg_fmt}')"


# ---- Simple one-to-one helpers ----

def _call(pg_name: str, arity: int = 1, access_name: str = "") -> Callable[[list[str]], str]:
    def transform(a: list[str]) -> str:
        _need(a, arity, access_name or pg_name)
        return f"{pg_name}({', '.join(a[:arity])})"
    return transform


def _cast(pg_type: str, access_name: str) -> Callable[[list[str]], str]:
    def transform(a: list[str]) -> str:
        _need(a, 1, access_name)
        return f"({a[0]})::{pg_type}"
    return transform


# =============================================================================
# The catalog
# =============================================================================
FUNCTION_MAP: tuple[FunctionRule, ...] = (
    # Null handling
    _rule("Nz", _nz),
    _rule("IsNull", lambda a: f"({_need(a, 1, 'IsNull')[0]} IS NULL)"),
    _rule("IsDate", lambda a: f"({_need(a, 1, 'IsDate')[0]}::text ~ '^\\d{{4}}-\\d{{2}}-\\d{{2}}')"),
    _rule("IsNumeric", lambda a: f"({_need(a, 1, 'IsNumeric')[0]}::text ~ '^-?[0-9]+(\\.[0-9]+)?$')"),

    # Conditional
    _rule("IIf", _iif),
    _rule("Switch", _switch),
    _rule("Choose", _choose),

    # Strings
    _rule("Len", _call("LENGTH", 1, "Len")),
    _rule("Mid", _mid),
    _rule("Mid$", _mid),
    _rule("Left", _call("LEFT", 2, "Left")),
    _rule("Left$", _call("LEFT", 2, "Left$")),
    _rule("Right", _call("RIGHT", 2, "Right")),
    _rule("Right$", _call("RIGHT", 2, "Right$")),
    _rule("Trim", _call("TRIM", 1, "Trim")),
    _rule("Trim$", _call("TRIM", 1, "Trim$")),
    _rule("LTrim", _call("LTRIM", 1, "LTrim")),
    _rule("RTrim", _call("RTRIM", 1, "RTrim")),
    _rule("InStr", _instr),
    _rule(
        "InStrRev",
        lambda a: (
            f"(LENGTH({_need(a, 2, 'InStrRev')[0]}) - POSITION(REVERSE({a[1]}) IN REVERSE({a[0]})) + 1)"
        ),
    ),
    _rule("UCase", _call("UPPER", 1, "UCase")),
    _rule("LCase", _call("LOWER", 1, "LCase")),
    _rule("Replace", _call("REPLACE", 3, "Replace")),
    _rule("Str", _cast("text", "Str")),
    _rule("Str$", _cast("text", "Str$")),
    _rule("StrConv", _strconv),
    _rule("Space", lambda a: f"REPEAT(' ', {_need(a, 1, 'Space')[0]})"),
    _rule("String", lambda a: f"REPEAT({_need(a, 2, 'String')[1]}, {a[0]})"),
    _rule("StrReverse", _call("REVERSE", 1, "StrReverse")),
    _rule("Asc", _call("ASCII", 1, "Asc")),
    _rule("Chr", _call("CHR", 1, "Chr")),

    # Type conversion
    _rule("CInt", _cast("integer", "CInt")),
    _rule("CLng", _cast("bigint", "CLng")),
    _rule("CDbl", _cast("double precision", "CDbl")),
    _rule("CSng", _cast("real", "CSng")),
    _rule("CStr", _cast("text", "CStr")),
    _rule("CDate", _cast("date", "CDate")),
    _rule("CBool", _cast("boolean", "CBool")),
    _rule("CDec", _cast("numeric", "CDec")),
    _rule("CCur", _cast("numeric(19,4)", "CCur")),
    _rule("Val", _cast("numeric", "Val")),

    # Dates and times
    _rule("DateSerial", lambda a: f"make_date({', '.join(_need(a, 3, 'DateSerial')[:3])})"),
    _rule("TimeSerial", lambda a: f"make_time({', '.join(_need(a, 3, 'TimeSerial')[:3])})"),
    _rule("DateAdd", _dateadd),
    _rule("DateDiff", _datediff),
    _rule("DatePart", _datepart),
    _rule("DateValue", _cast("date", "DateValue")),
    _rule("TimeValue", _cast("time", "TimeValue")),
    _rule("Year", _extract("YEAR")),
    _rule("Month", _extract("MONTH")),
    _rule("Day", _extract("DAY")),
    _rule("Hour", _extract("HOUR")),
    _rule("Minute", _extract("MINUTE")),
    _rule("Second", _extract("SECOND")),
    _rule("Weekday", lambda a: f"(EXTRACT(DOW FROM {_need(a, 1, 'Weekday')[0]})::integer + 1)"),
    _rule("MonthName", lambda a: f"to_char(make_date(2000, {_need(a, 1, 'MonthName')[0]}, 1), 'FMMonth')"),
    _rule("WeekdayName", lambda a: f"to_char(make_date(2000, 1, {_need(a, 1, 'WeekdayName')[0]} + 1), 'FMDay')"),

    # Formatting
    _rule("Format", _format),

    # Math
    _rule("Int", _call("FLOOR", 1, "Int")),
    _rule("Fix", _call("TRUNC", 1, "Fix")),
    _rule("Abs", _call("ABS", 1, "Abs")),
    _rule("Round", lambda a: f"ROUND({', '.join(_need(a, 1, 'Round')[:2])})"),
    _rule("Sgn", _call("SIGN", 1, "Sgn")),
    _rule("Sqr", _call("SQRT", 1, "Sqr")),
    _rule("Log", _call("LN", 1, "Log")),
    _rule("Exp", _call("EXP", 1, "Exp")),

    # Aggregates without a PostgreSQL equivalent (bootstrapped on demand)
    _rule("First", _call("first_agg", 1, "First")),
    _rule("Last", _call("last_agg", 1, "Last")),
)
