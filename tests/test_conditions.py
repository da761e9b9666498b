"""Tests for the shared condition evaluator."""
import pytest

from models.schemas import Condition, ConditionGroup
from utils.conditions import (
    UNDEFINED, evaluate_condition, evaluate_conditions, evaluate_group, get_nested_value,
)


def cond(field, operator, value=None):
    return Condition(field=field, operator=operator, value=value)


class TestGetNestedValue:
    def test_flat_key(self):
        assert get_nested_value({"name": "Alice"}, "name") == "Alice"

    def test_nested_key(self):
        data = {"order": {"status": "shipped", "items": 3}}
        assert get_nested_value(data, "order.status") == "shipped"
        assert get_nested_value(data, "order.items") == 3

    def test_flat_dotted_key_wins(self):
        data = {"order.total": 5, "order": {"total": 9}}
        assert get_nested_value(data, "order.total") == 5

    def test_list_index(self):
        data = {"order": {"products": [{"sku": "A1"}, {"sku": "B2"}]}}
        assert get_nested_value(data, "order.products.1.sku") == "B2"

    def test_missing_key_is_undefined(self):
        assert get_nested_value({"a": 1}, "b") is UNDEFINED
        assert get_nested_value({"a": {"b": 1}}, "a.c") is UNDEFINED

    def test_none_is_undefined(self):
        assert get_nested_value({"a": None}, "a") is UNDEFINED

    def test_falsy_values_are_defined(self):
        assert get_nested_value({"a": 0}, "a") == 0
        assert get_nested_value({"a": ""}, "a") == ""
        assert get_nested_value({"a": False}, "a") is False


class TestEvaluateCondition:
    def test_equals(self):
        assert evaluate_condition(cond("status", "equals", "active"), {"status": "active"})
        assert not evaluate_condition(cond("status", "equals", "active"), {"status": "closed"})

    def test_not_equals(self):
        assert evaluate_condition(cond("status", "not_equals", "closed"), {"status": "active"})

    def test_greater_and_less_than(self):
        data = {"order": {"total_value": 150000}}
        assert evaluate_condition(cond("order.total_value", "greater_than", 100000), data)
        assert not evaluate_condition(cond("order.total_value", "less_than", 100000), data)

    def test_contains_text_is_case_insensitive(self):
        data = {"message": {"content": "Quiero el PACK grande"}}
        assert evaluate_condition(cond("message.content", "contains", "pack"), data)

    def test_contains_list_membership(self):
        assert evaluate_condition(cond("tags", "contains", "vip"), {"tags": ["new", "vip"]})
        assert not evaluate_condition(cond("tags", "contains", "gold"), {"tags": ["vip"]})

    def test_in_set(self):
        data = {"city": "Bogota"}
        assert evaluate_condition(cond("city", "in_set", ["Cali", "Bogota"]), data)
        assert not evaluate_condition(cond("city", "in_set", ["Cali"]), data)

    def test_legacy_operator_aliases(self):
        assert evaluate_condition(cond("n", "gt", 1), {"n": 2})
        assert evaluate_condition(cond("n", "eq", 2), {"n": 2})
        assert evaluate_condition(cond("n", "exists"), {"n": 2})

    def test_string_number_mismatch_coerces_to_string(self):
        assert evaluate_condition(cond("total", "equals", 100), {"total": "100"})
        assert evaluate_condition(cond("total", "equals", "100"), {"total": 100.0})

    def test_bool_coerces_to_lowercase_text(self):
        assert evaluate_condition(cond("paid", "equals", "true"), {"paid": True})

    def test_uncomparable_types_do_not_raise(self):
        assert evaluate_condition(cond("x", "greater_than", 1), {"x": {"a": 1}}) in (True, False)
        assert evaluate_condition(cond("x", "less_than", [1]), {"x": None}) is False


class TestUndefinedSemantics:
    @pytest.mark.parametrize("operator,value", [
        ("equals", ""),
        ("not_equals", "x"),
        ("contains", "x"),
        ("greater_than", 0),
        ("less_than", 0),
        ("in_set", ["x"]),
        ("is_set", None),
    ])
    def test_absent_variable_fails_every_operator_but_is_not_set(self, operator, value):
        assert not evaluate_condition(cond("missing.path", operator, value), {})

    def test_absent_variable_satisfies_is_not_set(self):
        assert evaluate_condition(cond("missing.path", "is_not_set"), {})

    def test_empty_string_is_set(self):
        assert evaluate_condition(cond("note", "is_set"), {"note": ""})
        assert not evaluate_condition(cond("note", "is_not_set"), {"note": ""})


class TestEvaluateGroup:
    def test_and_requires_all(self):
        group = ConditionGroup(logic="AND", conditions=[
            cond("a", "equals", 1), cond("b", "equals", 2),
        ])
        assert evaluate_group(group, {"a": 1, "b": 2})
        assert not evaluate_group(group, {"a": 1, "b": 3})

    def test_or_requires_any(self):
        group = ConditionGroup(logic="OR", conditions=[
            cond("a", "equals", 1), cond("b", "equals", 2),
        ])
        assert evaluate_group(group, {"a": 0, "b": 2})
        assert not evaluate_group(group, {"a": 0, "b": 0})

    def test_nested_groups_from_stored_shape(self):
        group = ConditionGroup.model_validate({
            "operator": "or",
            "conditions": [
                {"field": "order.total_value", "operator": "gt", "value": 100000},
                {"logic": "AND", "conditions": [
                    {"field": "contact.tags", "operator": "contains", "value": "vip"},
                    {"field": "order.stage_id", "operator": "equals", "value": "won"},
                ]},
            ],
        })
        assert group.depth() == 2
        data = {"order": {"total_value": 10, "stage_id": "won"}, "contact": {"tags": ["vip"]}}
        assert evaluate_group(group, data)

    def test_empty_group_matches(self):
        assert evaluate_group(ConditionGroup(), {})

    def test_no_tree_matches(self):
        assert evaluate_conditions(None, {})

    def test_and_short_circuits(self, monkeypatch):
        import utils.conditions as conditions
        seen = []
        original = conditions.evaluate_condition

        def spy(condition, data):
            seen.append(condition.field)
            return original(condition, data)

        monkeypatch.setattr(conditions, "evaluate_condition", spy)
        group = ConditionGroup(logic="AND", conditions=[
            cond("a", "equals", 1), cond("b", "equals", 2), cond("c", "equals", 3),
        ])
        assert not conditions.evaluate_group(group, {"a": 0})
        assert seen == ["a"]

    def test_or_short_circuits(self, monkeypatch):
        import utils.conditions as conditions
        seen = []
        original = conditions.evaluate_condition

        def spy(condition, data):
            seen.append(condition.field)
            return original(condition, data)

        monkeypatch.setattr(conditions, "evaluate_condition", spy)
        group = ConditionGroup(logic="OR", conditions=[
            cond("a", "equals", 1), cond("b", "equals", 2),
        ])
        assert conditions.evaluate_group(group, {"a": 1})
        assert seen == ["a"]

    def test_fanout(self):
        group = ConditionGroup(conditions=[cond(f"f{i}", "is_set") for i in range(7)])
        assert group.max_fanout() == 7
