"""Tests for condition and template evaluation."""

import pytest

from automation.expressions import ExpressionError, ExpressionEvaluator


@pytest.mark.unit
class TestEvaluate:
    def test_bare_comparison(self):
        assert ExpressionEvaluator.evaluate("amount > 1000", {"amount": 5000}) is True
        assert ExpressionEvaluator.evaluate("amount > 1000", {"amount": 500}) is False

    def test_brace_reference(self):
        assert ExpressionEvaluator.evaluate("{amount} > 1000", {"amount": 1500}) is True

    def test_dotted_path(self):
        variables = {"get_order": {"total": 42, "lines": [{"sku": "A"}]}}
        assert ExpressionEvaluator.evaluate("get_order.total", variables) == 42
        assert ExpressionEvaluator.evaluate("get_order.lines.0.sku", variables) == "A"

    def test_record_reference(self):
        variables = {"$record": {"status": "open"}}
        assert ExpressionEvaluator.evaluate('$record.status == "open"', variables) is True

    def test_js_operators(self):
        variables = {"a": 1, "b": 2, "ok": False}
        assert ExpressionEvaluator.evaluate("a === 1 && b !== 3", variables) is True
        assert ExpressionEvaluator.evaluate("!ok || a > 5", variables) is True

    def test_dashed_node_ids(self):
        assert ExpressionEvaluator.evaluate("get-order.total * 2", {"get-order": {"total": 21}}) == 42

    def test_undefined_name_raises(self):
        with pytest.raises(ExpressionError):
            ExpressionEvaluator.evaluate("missing > 1", {})

    def test_builtins_are_restricted(self):
        with pytest.raises(ExpressionError):
            ExpressionEvaluator.evaluate("__import__('os')", {})


@pytest.mark.unit
class TestEvaluateCondition:
    def test_missing_condition_is_true(self):
        assert ExpressionEvaluator.evaluate_condition(None, {}) is True
        assert ExpressionEvaluator.evaluate_condition("  ", {}) is True

    def test_broken_condition_is_false(self):
        assert ExpressionEvaluator.evaluate_condition("amount >", {"amount": 1}) is False

    def test_truthiness(self):
        assert ExpressionEvaluator.evaluate_condition("items", {"items": [1]}) is True
        assert ExpressionEvaluator.evaluate_condition("items", {"items": []}) is False


@pytest.mark.unit
class TestRender:
    def test_whole_reference_keeps_type(self):
        assert ExpressionEvaluator.render("{{ amount * 2 }}", {"amount": 21}) == 42
        assert ExpressionEvaluator.render("{order}", {"order": {"id": 7}}) == {"id": 7}

    def test_interpolation(self):
        rendered = ExpressionEvaluator.render("Order {order.id} for {{ customer }}", {"order": {"id": 7}, "customer": "Ann"})
        assert rendered == "Order 7 for Ann"

    def test_unresolved_reference_left_untouched(self):
        assert ExpressionEvaluator.render("Hello {nobody}", {}) == "Hello {nobody}"

    def test_non_strings_pass_through(self):
        assert ExpressionEvaluator.render(5, {}) == 5

    def test_resolve_config_recurses(self):
        config = {"url": "https://api.test/orders/{order_id}", "body": {"ids": ["{order_id}"]}}
        resolved = ExpressionEvaluator.resolve_config(config, {"order_id": 9})
        assert resolved == {"url": "https://api.test/orders/9", "body": {"ids": [9]}}
