"""
Tests for the Access-to-PostgreSQL transforms in access_function_map.py and access_query_converter.py.
Run with:  python -m pytest test_transforms.py -v
"""

import pytest
import re

# Import the modules under test
import access_function_map as fmap
import access_query_converter as mod


# ---------------------------------------------------------------------------
# Helper: normalize whitespace for comparison
# ---------------------------------------------------------------------------
def _ws(s: str) -> str:
    """Collapse whitespace so assertions are not sensitive to extra spaces."""
    return " ".join(s.split()).strip()


def _fn(sql: str) -> str:
    return mod.translate_functions(sql).sql


STATE = "app.session_state"


# ===========================================================================
# 1. Function catalog
# ===========================================================================
class TestNullAndConditional:
    def test_nz_with_default(self):
        assert _fn("Nz([Qty], 0)") == "COALESCE([Qty], 0)"

    def test_nz_without_default(self):
        assert _fn("Nz([Name])") == "COALESCE([Name], '')"

    def test_iif(self):
        assert _fn('IIf([A] > 0, "pos", "neg")') == 'CASE WHEN [A] > 0 THEN "pos" ELSE "neg" END'

    def test_iif_without_else(self):
        assert _fn("IIf([A], 1)") == "CASE WHEN [A] THEN 1 ELSE NULL END"

    def test_isnull(self):
        assert _fn("IsNull([Due])") == "([Due] IS NULL)"

    def test_switch(self):
        result = _fn("Switch([a] = 1, 'one', [a] = 2, 'two')")
        assert result == "CASE WHEN [a] = 1 THEN 'one' WHEN [a] = 2 THEN 'two' END"

    def test_choose(self):
        assert _fn("Choose([i], 'a', 'b')") == "CASE [i] WHEN 1 THEN 'a' WHEN 2 THEN 'b' END"

    def test_case_insensitive_name(self):
        assert _fn("nz([x], 1)") == "COALESCE([x], 1)"


class TestStringFunctions:
    def test_mid_three_args(self):
        assert _fn("Mid([Name], 2, 3)") == "SUBSTRING([Name] FROM 2 FOR 3)"

    def test_mid_two_args(self):
        assert _fn("Mid([Name], 2)") == "SUBSTRING([Name] FROM 2)"

    def test_dollar_variant(self):
        assert _fn("Mid$([Name], 2, 3)") == "SUBSTRING([Name] FROM 2 FOR 3)"

    def test_len_left_right(self):
        assert _fn("Len([s])") == "LENGTH([s])"
        assert _fn("Left([s], 2)") == "LEFT([s], 2)"
        assert _fn("Right([s], 2)") == "RIGHT([s], 2)"

    def test_instr(self):
        assert _fn("InStr([s], 'x')") == "POSITION('x' IN [s])"

    def test_instr_with_start(self):
        assert _fn("InStr(3, [s], 'x')") == "(POSITION('x' IN SUBSTRING([s] FROM 3)) + 3 - 1)"

    def test_ucase_lcase(self):
        assert _fn("UCase([s])") == "UPPER([s])"
        assert _fn("LCase([s])") == "LOWER([s])"

    def test_replace(self):
        assert _fn("Replace([s], 'a', 'b')") == "REPLACE([s], 'a', 'b')"

    def test_strconv_proper_case(self):
        assert _fn("StrConv([s], 3)") == "INITCAP([s])"

    def test_space(self):
        assert _fn("Space(3)") == "REPEAT(' ', 3)"

    def test_left_join_keyword_untouched(self):
        sql = "SELECT * FROM a LEFT JOIN b ON a.id = b.id"
        assert _fn(sql) == sql


class TestConversionFunctions:
    def test_cint(self):
        assert _fn("CInt([x])") == "([x])::integer"

    def test_ccur(self):
        assert _fn("CCur([x])") == "([x])::numeric(19,4)"

    def test_cstr(self):
        assert _fn("CStr([x])") == "([x])::text"

    def test_int_and_round(self):
        assert _fn("Int([x])") == "FLOOR([x])"
        assert _fn("Round([x], 2)") == "ROUND([x], 2)"


class TestDateFunctions:
    def test_dateadd_days(self):
        assert _fn('DateAdd("d", 7, [OrderDate])') == "([OrderDate] + (7) * INTERVAL '1 day')"

    def test_dateadd_quarter(self):
        assert _fn('DateAdd("q", 1, [d])') == "([d] + ((1) * 3) * INTERVAL '1 month')"

    def test_datediff_days(self):
        assert _fn('DateDiff("d", [A], [B])') == "([B]::date - [A]::date)"

    def test_datediff_years(self):
        result = _fn('DateDiff("yyyy", [A], [B])')
        assert result == "(EXTRACT(YEAR FROM [B]::date) - EXTRACT(YEAR FROM [A]::date))::integer"

    def test_datepart(self):
        assert _fn('DatePart("m", [d])') == "EXTRACT(MONTH FROM [d])::integer"

    def test_year(self):
        assert _fn("Year([d])") == "EXTRACT(YEAR FROM [d])::integer"

    def test_dateserial_nested_year(self):
        result = _fn("DateSerial(Year([d]), 1, 1)")
        assert result == "make_date(EXTRACT(YEAR FROM [d])::integer, 1, 1)"

    def test_format_named(self):
        assert _fn('Format([D], "Short Date")') == "to_char([D], 'MM/DD/YYYY')"

    def test_format_custom_passthrough(self):
        assert _fn("Format([D], 'YYYY')") == "to_char([D], 'YYYY')"


class TestAggregates:
    def test_first_last(self):
        assert _fn("First([Name])") == "first_agg([Name])"
        assert _fn("Last([Name])") == "last_agg([Name])"

    def test_first_not_confused_with_column(self):
        assert _fn("[First] & ' ' & [Last]") == "[First] & ' ' & [Last]"


# ===========================================================================
# 2. Fixed-point driver
# ===========================================================================
class TestTranslateFunctions:
    def test_nested_calls(self):
        result = _fn("Nz(IIf([x] > 0, [x], 0), -1)")
        assert result == "COALESCE(CASE WHEN [x] > 0 THEN [x] ELSE 0 END, -1)"

    def test_converged_flag(self):
        translation = mod.translate_functions("Nz([Qty], 0)")
        assert translation.converged is True
        assert translation.passes == 2

    def test_no_calls_single_pass(self):
        translation = mod.translate_functions("SELECT [a] FROM [t]")
        assert translation.passes == 1
        assert translation.sql == "SELECT [a] FROM [t]"

    def test_idempotent(self):
        out = _fn("Left(Trim([n]), 3) & Mid([n], 2)")
        again = mod.translate_functions(out)
        assert again.sql == out
        assert again.passes == 1

    def test_call_inside_string_untouched(self):
        sql = "SELECT 'call Nz(x)' AS s"
        assert _fn(sql) == sql

    def test_call_inside_double_quoted_string_untouched(self):
        sql = 'SELECT "Len(x)" AS s'
        assert _fn(sql) == sql

    def test_unbalanced_call_left_alone(self):
        assert _fn("Nz([a]") == "Nz([a]"

    def test_too_few_arguments_raises(self):
        with pytest.raises(ValueError, match="Replace"):
            mod.translate_functions("Replace([a], 'b')")

    def test_non_convergence_capped(self):
        grow = fmap.FunctionRule("Grow", re.compile(r"Grow\s*\(", re.I), lambda a: f"Grow({a[0]} + 1)")
        translation = mod.translate_functions("Grow(x)", rules=[grow], max_passes=5)
        assert translation.converged is False
        assert translation.passes == 5
        assert translation.sql == "Grow(x + 1 + 1 + 1 + 1 + 1)"

    def test_default_cap(self):
        grow = fmap.FunctionRule("Grow", re.compile(r"Grow\s*\(", re.I), lambda a: f"Grow({a[0]} + 1)")
        translation = mod.translate_functions("Grow(x)", rules=[grow])
        assert translation.passes == mod.MAX_FUNCTION_PASSES == 20
        assert not translation.converged

    def test_apply_function_translations(self):
        assert mod.apply_function_translations("UCase([a])") == "UPPER([a])"


# ===========================================================================
# 3. Scanner
# ===========================================================================
class TestFindClosingDelimiter:
    def test_nested_with_literal(self):
        text = "f(a, (b), ')')"
        assert mod.find_closing_delimiter(text, 1) == len(text) - 1

    def test_bracket(self):
        assert mod.find_closing_delimiter("[a(b]", 0) == 4

    def test_unbalanced(self):
        assert mod.find_closing_delimiter("f(a, (b)", 1) is None

    def test_not_a_delimiter(self):
        assert mod.find_closing_delimiter("abc", 0) is None
        assert mod.find_closing_delimiter("abc", 10) is None


class TestSplitTopLevelCommas:
    def test_quoted_and_nested_commas(self):
        args = mod.split_top_level_commas('"a,b", g(1,2), "c\\"d"')
        assert args == ['"a,b"', "g(1,2)", '"c\\"d"']

    def test_doubled_quote_and_brackets(self):
        assert mod.split_top_level_commas("'it''s, ok', [a,b]") == ["'it''s, ok'", "[a,b]"]

    def test_empty(self):
        assert mod.split_top_level_commas("") == []

    def test_trailing_empty_argument(self):
        assert mod.split_top_level_commas("a,") == ["a", ""]


class TestSanitizeName:
    def test_spaces_and_symbols(self):
        assert mod.sanitize_name("Order Details #2") == "order_details_2"

    def test_already_clean(self):
        assert mod.sanitize_name("orders") == "orders"

    def test_none(self):
        assert mod.sanitize_name(None) == ""


# ===========================================================================
# 4. Syntax translation
# ===========================================================================
class TestSyntaxTranslations:
    def test_brackets_to_identifiers(self):
        result = mod.apply_syntax_translations("SELECT [First Name] FROM [Order Details]")
        assert result == 'SELECT "first_name" FROM "order_details"'

    def test_double_quoted_string(self):
        result = mod.apply_syntax_translations('WHERE [City] = "O\'Hare"')
        assert result == "WHERE \"city\" = 'O''Hare'"

    def test_bracket_inside_string_kept(self):
        result = mod.apply_syntax_translations('WHERE [Code] = "[x]"')
        assert result == "WHERE \"code\" = '[x]'"

    def test_like_wildcards(self):
        result = mod.apply_syntax_translations('WHERE [Name] LIKE "A*b?"')
        assert result == "WHERE \"name\" LIKE 'A%b_'"

    def test_like_character_class_warns(self):
        ctx = mod.ConversionContext()
        result = mod.apply_syntax_translations('WHERE [Name] LIKE "[A-C]*"', ctx=ctx)
        assert "LIKE '[A-C]%'" in result
        assert any("character class" in w for w in ctx.warnings)

    def test_top_to_limit(self):
        result = mod.apply_syntax_translations("SELECT TOP 10 [Name] FROM [T] ORDER BY [Name];")
        assert result == 'SELECT "name" FROM "t" ORDER BY "name" LIMIT 10'

    def test_top_in_subquery_limits_subquery(self):
        ctx = mod.ConversionContext()
        result = mod.apply_syntax_translations("SELECT a FROM t WHERE b = (SELECT TOP 1 c FROM u ORDER BY c)", ctx=ctx)
        assert result == "SELECT a FROM t WHERE b = (SELECT c FROM u ORDER BY c LIMIT 1)"
        assert ctx.warnings == []

    def test_top_outer_and_subquery(self):
        result = mod.apply_syntax_translations("SELECT TOP 3 a FROM t WHERE b IN (SELECT TOP 1 c FROM u)")
        assert result == "SELECT a FROM t WHERE b IN (SELECT c FROM u LIMIT 1) LIMIT 3"

    def test_top_inside_string_untouched(self):
        result = mod.apply_syntax_translations("SELECT 'SELECT TOP 5 x' AS s FROM t")
        assert result == "SELECT 'SELECT TOP 5 x' AS s FROM t"

    def test_top_percent_warns(self):
        ctx = mod.ConversionContext()
        result = mod.apply_syntax_translations("SELECT TOP 5 PERCENT * FROM [T]", ctx=ctx)
        assert result == 'SELECT * FROM "t"'
        assert "LIMIT" not in result
        assert any("PERCENT" in w for w in ctx.warnings)

    def test_distinctrow(self):
        result = mod.apply_syntax_translations("SELECT DISTINCTROW [a] FROM [t]")
        assert result == 'SELECT DISTINCT "a" FROM "t"'

    def test_delete_star(self):
        result = mod.apply_syntax_translations("DELETE [Orders].* FROM [Orders] WHERE [Id] = 1")
        assert result == 'DELETE FROM "orders" WHERE "id" = 1'

    def test_booleans(self):
        result = mod.apply_syntax_translations("WHERE [Active] = True AND [Gone] = False")
        assert result == 'WHERE "active" = true AND "gone" = false'

    def test_date_time_functions(self):
        result = mod.apply_syntax_translations("SELECT Date(), Now(), Time()")
        assert result == "SELECT CURRENT_DATE, CURRENT_TIMESTAMP, CURRENT_TIME"

    def test_date_literals(self):
        assert mod.apply_syntax_translations("#1/5/2024#") == "'2024-01-05'::date"
        assert mod.apply_syntax_translations("#2024-01-05#") == "'2024-01-05'::date"
        assert mod.apply_syntax_translations("#1/5/2024 13:45#") == "'2024-01-05 13:45'::timestamp"

    @pytest.mark.parametrize("literal, expected", [
        ("#1/2/2020 10:30:00 AM#", "'2020-01-02 10:30:00'::timestamp"),
        ("#1/2/2020 1:05 PM#", "'2020-01-02 13:05'::timestamp"),
        ("#1/2/2020 12:00 AM#", "'2020-01-02 00:00'::timestamp"),
        ("#1/2/2020 12:15 PM#", "'2020-01-02 12:15'::timestamp"),
        ("#2020-01-02 9:30 pm#", "'2020-01-02 21:30'::timestamp"),
        ("#10:30 AM#", "'10:30'::time"),
    ])
    def test_date_time_literals_with_meridiem(self, literal, expected):
        ctx = mod.ConversionContext()
        assert mod.apply_syntax_translations(literal, ctx=ctx) == expected
        assert ctx.warnings == []

    def test_unrecognized_date_literal_warns(self):
        ctx = mod.ConversionContext()
        result = mod.apply_syntax_translations("SELECT * FROM t WHERE d = #Jan 5 2024#", ctx=ctx)
        assert result == "SELECT * FROM t WHERE d = #Jan 5 2024#"
        assert ctx.warnings == ["Unrecognized date literal #Jan 5 2024# left unconverted"]

    def test_concatenation(self):
        result = mod.apply_syntax_translations('[First] & " " & [Last]')
        assert result == "\"first\" || ' ' || \"last\""

    def test_ampersand_inside_string_kept(self):
        assert mod.apply_syntax_translations('"a & b"') == "'a & b'"

    def test_mod_operator(self):
        assert mod.apply_syntax_translations("[A] Mod 2") == '"a" % 2'


class TestConvertAccessExpression:
    def test_functions_and_syntax(self):
        result = mod.convert_access_expression("IIf(IsNull([Due]), Date(), [Due])")
        assert result == 'CASE WHEN ("due" IS NULL) THEN CURRENT_DATE ELSE "due" END'

    def test_form_reference_uses_schema_state_table(self):
        mapping = {"main.filter": {"table": "orders", "column": "status"}}
        result = mod.convert_access_expression("[Forms]![Main]![Filter]", mapping, schema="app")
        assert result == mod.state_subquery(STATE, "orders", "status")


# ===========================================================================
# 5. Reference resolver
# ===========================================================================
MAPPING = {"main.filter": {"table": "orders", "column": "status"}}


class TestResolveReferences:
    def _resolve(self, sql, mapping=MAPPING, ctx=None):
        ctx = ctx if ctx is not None else mod.ConversionContext()
        return mod.resolve_references(sql, mapping, ctx, STATE), ctx

    def test_state_subquery_shape(self):
        assert _ws(mod.state_subquery(STATE, "orders", "status")) == _ws(
            "(SELECT value FROM app.session_state WHERE session_id = current_setting('app.session_id', true) "
            "AND table_name = 'orders' AND column_name = 'status')"
        )

    @pytest.mark.parametrize("ref", [
        "[Forms]![Main]![Filter]",
        "Forms!Main!Filter",
        "Forms![Main]![Filter]",
        "Forms!Main.Filter",
        "[Forms]![Main]![Filter].Value",
    ])
    def test_three_part_variants(self, ref):
        result, ctx = self._resolve(f"x = {ref}")
        assert result == "x = " + mod.state_subquery(STATE, "orders", "status")
        assert ctx.referenced_entries == [{"table": "orders", "column": "status"}]
        assert ctx.warnings == []

    def test_mapping_variants(self):
        for target in ({"storageTable": "orders", "storageColumn": "status"}, ("orders", "status"), "orders.status"):
            result, _ = self._resolve("Forms!Main!Filter", {"main.filter": target})
            assert "table_name = 'orders' AND column_name = 'status'" in result

    def test_deterministic(self):
        first, _ = self._resolve("Forms!Main!Filter")
        second, _ = self._resolve("Forms!Main!Filter")
        assert first == second

    def test_unresolved_three_part_best_effort(self):
        result, ctx = self._resolve("Forms!Main!NoField")
        assert result == mod.state_subquery(STATE, "main", "nofield")
        assert ctx.warnings == ["Unresolved form ref: Forms!Main!NoField"]

    def test_two_part_suffix_fallback(self):
        result, ctx = self._resolve("Form!Filter")
        assert result == mod.state_subquery(STATE, "orders", "status")
        assert ctx.warnings == []

    def test_two_part_first_match_wins(self):
        mapping = {
            "a.ctrl": {"table": "t1", "column": "c1"},
            "b.ctrl": {"table": "t2", "column": "c2"},
        }
        result, _ = self._resolve("Form!Ctrl", mapping)
        assert "table_name = 't1'" in result

    def test_two_part_unresolved(self):
        result, ctx = self._resolve("x = Form!UnknownCtrl", {})
        assert result == "x = NULL /* UNRESOLVED: Form!UnknownCtrl */"
        assert ctx.warnings == ["Unresolved form ref: Form!UnknownCtrl"]

    def test_report_reference(self):
        mapping = {"summary.total": {"table": "totals", "column": "amount"}}
        result, _ = self._resolve("Reports!Summary!Total", mapping)
        assert "table_name = 'totals' AND column_name = 'amount'" in result

    def test_parent_chain(self):
        result, _ = self._resolve("Parent!Sub!Filter")
        assert result == mod.state_subquery(STATE, "orders", "status")

    @pytest.mark.parametrize("ref", ['TempVars("UserId")', "[TempVars]![UserId]", "TempVars!UserId"])
    def test_tempvars(self, ref):
        result, ctx = self._resolve(ref, {})
        assert result == mod.state_subquery(STATE, "_tempvars", "userid")
        assert ctx.warnings == []

    def test_reference_inside_string_untouched(self):
        result, _ = self._resolve("x = 'Forms!Main!Filter'")
        assert result == "x = 'Forms!Main!Filter'"

    def test_quote_in_names_escaped(self):
        result, _ = self._resolve("Forms!Main!Filter", {"main.filter": ("o'rders", "status")})
        assert "table_name = 'o''rders'" in result


class TestCrossJoinReferences:
    def test_aliases_not_reused(self):
        ctx = mod.ConversionContext(joins=mod.StateJoinCollector())
        result = mod.resolve_references("Forms!Main!Filter = Forms!Main!Filter", MAPPING, ctx, STATE)
        assert result == "ss1.value = ss2.value"
        assert [r.alias for r in ctx.joins.references] == ["ss1", "ss2"]
        assert {(r.table, r.column) for r in ctx.joins.references} == {("orders", "status")}

    def test_state_predicates(self):
        ref = mod.StateReference("ss1", "orders", "status")
        assert mod.state_predicates(ref) == (
            "ss1.table_name = 'orders' AND ss1.column_name = 'status' "
            "AND ss1.session_id = current_setting('app.session_id', true)"
        )

    def test_comparison_cast_to_text(self):
        ctx = mod.ConversionContext(joins=mod.StateJoinCollector())
        result = mod.apply_syntax_translations("WHERE [T].[Status] = Forms!Main!Filter", MAPPING, ctx, STATE)
        assert result == 'WHERE "t"."status"::text = ss1.value'

    def test_subquery_comparison_cast_to_text(self):
        result = mod.apply_syntax_translations("WHERE Forms!Main!Filter = [T].[Status]", MAPPING, state_table=STATE)
        assert result.endswith('= "t"."status"::text')


# ===========================================================================
# 6. Schema qualification
# ===========================================================================
class TestAddSchemaPrefix:
    def test_from_adds_alias(self):
        assert mod.add_schema_prefix('SELECT * FROM "orders"', "app") == 'SELECT * FROM app."orders" orders'

    def test_existing_alias_kept(self):
        assert mod.add_schema_prefix('SELECT * FROM "orders" o', "app") == 'SELECT * FROM app."orders" o'
        assert mod.add_schema_prefix('SELECT * FROM "orders" AS o', "app") == 'SELECT * FROM app."orders" AS o'

    def test_join(self):
        result = mod.add_schema_prefix('SELECT * FROM "a" INNER JOIN "b" ON "a"."id" = "b"."id"', "app")
        assert result == 'SELECT * FROM app."a" a INNER JOIN app."b" b ON "a"."id" = "b"."id"'

    def test_comma_list(self):
        result = mod.add_schema_prefix('SELECT * FROM "a", "b" WHERE "a"."id" = "b"."id"', "app")
        assert result == 'SELECT * FROM app."a" a, app."b" b WHERE "a"."id" = "b"."id"'

    def test_insert_into_with_column_list(self):
        result = mod.add_schema_prefix('INSERT INTO "log" ("who") SELECT "a" FROM "t"', "app")
        assert result == 'INSERT INTO app."log" ("who") SELECT "a" FROM app."t" t'

    def test_update(self):
        result = mod.add_schema_prefix('UPDATE "orders" SET "x" = 1', "app")
        assert result == 'UPDATE app."orders" orders SET "x" = 1'

    def test_extract_from_untouched(self):
        result = mod.add_schema_prefix('SELECT EXTRACT(YEAR FROM "d") FROM "t"', "app")
        assert result == 'SELECT EXTRACT(YEAR FROM "d") FROM app."t" t'

    @pytest.mark.parametrize("access, expected", [
        ("SELECT Mid(UCase([a]), [b]) AS m FROM [t]",
         'SELECT SUBSTRING(UPPER("a") FROM "b") AS m FROM app."t" t'),
        ("SELECT Mid(UCase([a]), [b], 2) AS m FROM [t]",
         'SELECT SUBSTRING(UPPER("a") FROM "b" FOR 2) AS m FROM app."t" t'),
    ])
    def test_substring_from_after_nested_call_untouched(self, access, expected):
        sql = mod.apply_syntax_translations(_fn(access))
        assert mod.add_schema_prefix(sql, "app") == expected

    def test_trim_from_with_string_argument_untouched(self):
        result = mod.add_schema_prefix("SELECT TRIM(BOTH ' ' FROM \"x\") FROM \"t\"", "app")
        assert result == "SELECT TRIM(BOTH ' ' FROM \"x\") FROM app.\"t\" t"

    def test_subquery_inside_substring_still_qualified(self):
        result = mod.add_schema_prefix('SELECT SUBSTRING((SELECT "c" FROM "u") FROM 2) FROM "t"', "app")
        assert result == 'SELECT SUBSTRING((SELECT "c" FROM app."u" u) FROM 2) FROM app."t" t'

    def test_set_returning_call_untouched(self):
        sql = "SELECT * FROM generate_series(1, 3) g"
        assert mod.add_schema_prefix(sql, "app") == sql

    def test_no_double_prefix(self):
        once = mod.add_schema_prefix('SELECT * FROM "t" WHERE x = (SELECT value FROM app.session_state)', "app")
        assert mod.add_schema_prefix(once, "app") == once
        assert "app.app." not in once
        assert 'app."session_state"' not in once

    def test_string_untouched(self):
        sql = "SELECT 'from here' AS s FROM \"t\""
        assert mod.add_schema_prefix(sql, "app") == "SELECT 'from here' AS s FROM app.\"t\" t"


class TestAddSchemaFunctionPrefix:
    def test_user_function_prefixed(self):
        result = mod.add_schema_function_prefix('SELECT MyFunc("a"), COALESCE("b", 0) FROM x', "app")
        assert result == 'SELECT app."myfunc"("a"), COALESCE("b", 0) FROM x'

    def test_type_modifier_untouched(self):
        sql = 'SELECT ("a")::numeric(19,4)'
        assert mod.add_schema_function_prefix(sql, "app") == sql

    def test_registry(self):
        result = mod.add_schema_function_prefix("SELECT foo(1), bar(2)", "app", {"foo"})
        assert result == 'SELECT app."foo"(1), bar(2)'

    def test_aggregates_always_prefixed(self):
        result = mod.add_schema_function_prefix('SELECT first_agg("x")', "app", set())
        assert result == 'SELECT app."first_agg"("x")'

    def test_idempotent(self):
        once = mod.add_schema_function_prefix("SELECT foo(1)", "app")
        assert mod.add_schema_function_prefix(once, "app") == once

    def test_in_list_untouched(self):
        sql = 'SELECT * FROM t WHERE "a" IN (1, 2) AND EXISTS (SELECT 1)'
        assert mod.add_schema_function_prefix(sql, "app") == sql

    def test_unqualified_names_left_alone(self):
        result = mod.add_schema_function_prefix('SELECT Nz("a"), MyFn("b")', "app", unqualified={"Nz"})
        assert result == 'SELECT Nz("a"), app."myfn"("b")'


# ===========================================================================
# 7. Cross-join injection
# ===========================================================================
SS1 = mod.StateReference("ss1", "orders", "status")
PRED1 = mod.state_predicates(SS1)


class TestInjectStateJoins:
    def test_select_with_where(self):
        sql = 'SELECT "a" FROM app."t" t WHERE "a"::text = ss1.value ORDER BY "a"'
        result = mod.inject_state_joins(sql, [SS1], STATE)
        assert result == (
            'SELECT "a" FROM app."t" t CROSS JOIN app.session_state ss1 '
            f'WHERE {PRED1} AND ("a"::text = ss1.value) ORDER BY "a"'
        )

    def test_select_without_where(self):
        sql = 'SELECT ss1.value AS v, count(*) FROM app."t" t GROUP BY ss1.value'
        result = mod.inject_state_joins(sql, [SS1], STATE)
        assert result == (
            'SELECT ss1.value AS v, count(*) FROM app."t" t CROSS JOIN app.session_state ss1 '
            f"WHERE {PRED1} GROUP BY ss1.value"
        )

    def test_select_without_from(self):
        result = mod.inject_state_joins("SELECT ss1.value AS v", [SS1], STATE)
        assert result == f"SELECT ss1.value AS v FROM app.session_state ss1 WHERE {PRED1}"

    def test_update_gets_from(self):
        sql = 'UPDATE app."t" t SET "x" = ss1.value WHERE "id" = 1'
        result = mod.inject_state_joins(sql, [SS1], STATE)
        assert result == f'UPDATE app."t" t SET "x" = ss1.value FROM app.session_state ss1 WHERE {PRED1} AND ("id" = 1)'

    def test_delete_gets_using(self):
        sql = 'DELETE FROM app."t" t WHERE "owner"::text = ss1.value'
        result = mod.inject_state_joins(sql, [SS1], STATE)
        assert result == (
            f'DELETE FROM app."t" t USING app.session_state ss1 WHERE {PRED1} AND ("owner"::text = ss1.value)'
        )

    def test_insert_values_becomes_select(self):
        sql = 'INSERT INTO app."log" ("who") VALUES (ss1.value)'
        result = mod.inject_state_joins(sql, [SS1], STATE)
        assert result == f'INSERT INTO app."log" ("who") SELECT ss1.value FROM app.session_state ss1 WHERE {PRED1}'

    def test_multi_row_values_warns(self):
        ctx = mod.ConversionContext()
        sql = "INSERT INTO app.\"log\" (\"who\") VALUES (ss1.value), ('x')"
        assert mod.inject_state_joins(sql, [SS1], STATE, ctx) == sql
        assert any("multi-row" in w for w in ctx.warnings)

    def test_union_branches_joined_separately(self):
        ss2 = mod.StateReference("ss2", "orders", "region")
        sql = 'SELECT "a" FROM app."t1" t1 WHERE "a"::text = ss1.value UNION SELECT "a" FROM app."t2" t2 WHERE "a"::text = ss2.value'
        result = mod.inject_state_joins(sql, [SS1, ss2], STATE)
        first, second = result.split(" UNION ")
        assert "CROSS JOIN app.session_state ss1" in first
        assert "ss2" not in first
        assert "CROSS JOIN app.session_state ss2" in second
        assert "ss1" not in second

    def test_no_references(self):
        assert mod.inject_state_joins("SELECT 1", [], STATE) == "SELECT 1"


# ===========================================================================
# 8. Parameters
# ===========================================================================
class TestParameters:
    @pytest.mark.parametrize("legacy,expected", [
        ("Long", "bigint"),
        ("Currency", "numeric(19,4)"),
        ("Double", "double precision"),
        ("Date", "date"),
        ("DateTime", "date"),
        ("Yes/No", "boolean"),
        ("YesNo", "boolean"),
        ("Boolean", "boolean"),
        ("Memo", "text"),
        ("Unknown", "text"),
        (None, "text"),
    ])
    def test_map_param_type(self, legacy, expected):
        assert mod.map_param_type(legacy) == expected

    def test_infer_prompt_parameters(self):
        sql = "SELECT * FROM [T] WHERE [D] >= [Enter start date:] AND [Ok?] = 1 AND x = '[Not me?]'"
        assert mod.infer_parameter_names(sql) == ["Enter start date:", "Ok?"]

    def test_resolve_dedupes_and_excludes_references(self):
        declared = [
            mod.DeclaredParameter("Start Date", "Date"),
            mod.DeclaredParameter("start_date", "Text"),
            mod.DeclaredParameter("[Forms]![Main]![Filter]", "Text"),
            mod.DeclaredParameter("TempVars!User", "Text"),
            mod.DeclaredParameter("Orders.Id", "Long"),
        ]
        params = mod.resolve_params(declared)
        assert params == [mod.ResolvedParameter("Start Date", "p_start_date", "date")]

    def test_resolve_inferred_are_text(self):
        params = mod.resolve_params([], ["Enter start date:"])
        assert params == [mod.ResolvedParameter("Enter start date:", "p_enter_start_date", "text")]

    def test_refine_from_column_hint(self):
        params = [mod.ResolvedParameter("rid", "p_rid", "text")]
        refined = mod.refine_param_types(params, 'WHERE "id" = p_rid', {"id": "integer"})
        assert refined[0].pg_type == "integer"

    def test_refine_reversed_comparison(self):
        params = [mod.ResolvedParameter("rid", "p_rid", "text")]
        refined = mod.refine_param_types(params, 'WHERE p_rid = "t"."id"', {"t.id": "bigint"})
        assert refined[0].pg_type == "bigint"

    def test_refine_keeps_declared_type(self):
        params = [mod.ResolvedParameter("rid", "p_rid", "bigint")]
        assert mod.refine_param_types(params, 'WHERE "id" = p_rid', {"id": "integer"}) == params

    def test_bind_bracketed_and_bare(self):
        params = [mod.ResolvedParameter("rid", "p_rid", "bigint")]
        result = mod.bind_parameter_references("WHERE [Id] = [rid] AND [x] = rid AND Forms![rid] = 1", params)
        assert result == "WHERE [Id] = p_rid AND [x] = p_rid AND Forms![rid] = 1"

    def test_bind_leaves_strings(self):
        params = [mod.ResolvedParameter("rid", "p_rid", "bigint")]
        assert mod.bind_parameter_references("WHERE [a] = 'rid'", params) == "WHERE [a] = 'rid'"

    def test_bind_prompt_parameter(self):
        params = [mod.ResolvedParameter("Enter start date:", "p_enter_start_date", "text")]
        result = mod.bind_parameter_references("WHERE [D] >= [Enter start date:]", params)
        assert result == "WHERE [D] >= p_enter_start_date"
