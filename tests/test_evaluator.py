"""
Expression and script evaluator tests
"""
import threading
from datetime import datetime
from unittest.mock import patch

import pytest

from process_engine.evaluator import Evaluator, Limits, get_path, set_path, has_path
from process_engine.evaluator.paths import delete_path
from process_engine.exceptions import ScriptError, ScriptMemoryError, ScriptSyntaxError


@pytest.fixture
def evaluator():
    return Evaluator(Limits(timeout_ms=2000, memory_mb=1), isolation="inline")


class TestExpressions:

    def test_arithmetic_and_precedence(self, evaluator):
        assert evaluator.eval_expression("1 + 2 * 3", {}) == 7
        assert evaluator.eval_expression("(1 + 2) * 3", {}) == 9
        assert evaluator.eval_expression("2 ** 10", {}) == 1024

    def test_exact_integer_division_stays_integer(self, evaluator):
        result = evaluator.eval_expression("10 / 2", {})
        assert result == 5
        assert isinstance(result, int)
        assert evaluator.eval_expression("7 / 2", {}) == 3.5

    def test_property_and_index_access(self, evaluator):
        variables = {"order": {"items": [{"price": 12.5}, {"price": 3}]}}
        assert evaluator.eval_expression("order.items[0].price", variables) == 12.5
        assert evaluator.eval_expression("order.items.length", variables) == 2
        assert evaluator.eval_expression("order.missing", variables) is None

    def test_boolean_operators(self, evaluator):
        variables = {"amount": 150, "region": "eu", "vip": False}
        assert evaluator.eval_predicate("amount > 100 && region == 'eu'", variables) is True
        assert evaluator.eval_predicate("amount > 100 and not vip", variables) is True
        assert evaluator.eval_predicate("vip || amount < 10", variables) is False
        assert evaluator.eval_predicate("region in ['eu', 'us']", variables) is True

    def test_ternary(self, evaluator):
        assert evaluator.eval_expression("x > 5 ? 'big' : 'small'", {"x": 9}) == "big"
        assert evaluator.eval_expression("x > 5 ? 'big' : 'small'", {"x": 1}) == "small"

    def test_lambdas_with_collection_functions(self, evaluator):
        variables = {"items": [1, 2, 3, 4]}
        assert evaluator.eval_expression("map(items, x => x * 2)", variables) == [2, 4, 6, 8]
        assert evaluator.eval_expression("filter(items, x => x % 2 == 0)", variables) == [2, 4]
        assert evaluator.eval_expression("sum(items)", variables) == 10
        assert evaluator.eval_expression("sort(['b', 'a', 'c'])", {}) == ["a", "b", "c"]

    def test_string_functions(self, evaluator):
        assert evaluator.eval_expression("upper(name) + '!'", {"name": "ada"}) == "ADA!"
        assert evaluator.eval_expression("len('hello')", {}) == 5
        assert evaluator.eval_expression("round(2.567, 2)", {}) == 2.57

    def test_now_is_frozen_to_the_given_instant(self, evaluator):
        now = datetime(2024, 3, 1, 12, 0, 0)
        assert evaluator.eval_expression("now()", {}, now) == "2024-03-01T12:00:00Z"

    def test_unknown_function_is_a_script_error(self, evaluator):
        with pytest.raises(ScriptError):
            evaluator.eval_expression("open('/etc/passwd')", {})

    def test_syntax_error_reports_position(self, evaluator):
        with pytest.raises(ScriptSyntaxError) as exc_info:
            evaluator.eval_expression("1 +", {})
        assert exc_info.value.kind == "SyntaxError"

    def test_dict_literal_keys_must_be_names_or_strings(self, evaluator):
        with pytest.raises(ScriptSyntaxError, match="Expected dict key"):
            evaluator.eval_expression("{[1]: 2}", {})
        assert evaluator.eval_expression("{a: 1, 'b c': 2}", {}) == {"a": 1, "b c": 2}

    def test_huge_exponent_is_a_memory_error(self, evaluator):
        with pytest.raises(ScriptMemoryError):
            evaluator.eval_expression("2 ** 5000", {})

    def test_sleep_is_rejected_in_expressions(self, evaluator):
        with pytest.raises(ScriptError):
            evaluator.eval_expression("sleep(1)", {})

    def test_expression_does_not_mutate_variables(self, evaluator):
        variables = {"items": [3, 1, 2]}
        evaluator.eval_expression("sort(items)", variables)
        assert variables == {"items": [3, 1, 2]}


class TestScripts:

    @pytest.mark.asyncio
    async def test_script_returns_value_and_changed_variables(self, evaluator):
        code = """
let subtotal = 0
for item in items {
    subtotal += item.price * item.qty
}
total = subtotal
return total > 100
"""
        variables = {"items": [{"price": 40, "qty": 2}, {"price": 25, "qty": 1}]}
        result = await evaluator.run_script(code, variables)

        assert result.result_value is True
        assert result.updated_vars == {"total": 105}
        # the caller's variables are untouched
        assert "total" not in variables

    @pytest.mark.asyncio
    async def test_if_else_break_and_continue(self, evaluator):
        code = """
let found = null
for value, index in values {
    if value < 0 {
        continue
    } else if value > 10 {
        found = index
        break
    }
}
return found
"""
        result = await evaluator.run_script(code, {"values": [-1, 5, 12, 30]})
        assert result.result_value == 2

    @pytest.mark.asyncio
    async def test_let_bindings_stay_local(self, evaluator):
        result = await evaluator.run_script("let temp = 5\nexported = temp + 1", {})
        assert result.result_value is None
        assert result.updated_vars == {"exported": 6}

    @pytest.mark.asyncio
    async def test_syntax_error_in_script(self, evaluator):
        with pytest.raises(ScriptSyntaxError):
            await evaluator.run_script("if x {", {"x": True})

    @pytest.mark.asyncio
    async def test_string_over_memory_ceiling(self, evaluator):
        code = """
let text = "xxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxx"
for i in range(20) {
    text = text + text
}
return len(text)
"""
        with pytest.raises(ScriptMemoryError):
            await evaluator.run_script(code, {})

    @pytest.mark.asyncio
    async def test_expressions_can_be_awaited_off_the_loop(self, evaluator):
        assert await evaluator.evaluate("1 + 2", {}) == 3
        assert await evaluator.evaluate_predicate("len(items) > 1", {"items": [1, 2]}) is True
        with patch.object(evaluator, "eval_expression", side_effect=lambda *args: threading.get_ident()):
            assert await evaluator.evaluate("x", {}) != threading.get_ident()

    def test_unknown_isolation_mode(self):
        with pytest.raises(ValueError):
            Evaluator(isolation="thread")


class TestPaths:

    def test_get_path(self):
        data = {"a": {"b": [{"c": 1}, {"c": 2}]}}
        assert get_path(data, "a.b[1].c") == 2
        assert get_path(data, "$a.b[0].c") == 1
        assert get_path(data, "a.x.y", "fallback") == "fallback"
        assert has_path(data, "a.b") is True
        assert has_path(data, "a.z") is False

    def test_set_path_creates_intermediate_dicts(self):
        data = {}
        set_path(data, "customer.address.city", "Lyon")
        assert data == {"customer": {"address": {"city": "Lyon"}}}

    def test_delete_path(self):
        data = {"a": {"b": 1, "c": 2}}
        assert delete_path(data, "a.b") is True
        assert delete_path(data, "a.b") is False
        assert data == {"a": {"c": 2}}
