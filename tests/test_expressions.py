"""Tests for condition expressions."""

import pytest

from board_rules.errors import ConditionSyntaxError
from board_rules.expressions import UNDEFINED, compile_expression, evaluate
from board_rules.models import Entity, EntityKind


def test_string_equality() -> None:
    """Test comparing a field to a string literal."""
    assert evaluate("item.column == 'New'", {"column": "New"})
    assert not evaluate("item.column == 'New'", {"column": "Done"})
    assert evaluate('item.column != "New"', {"column": "Done"})


def test_strict_operators_behave_like_equality() -> None:
    """Test === and !== compare values."""
    assert evaluate("item.column === 'Done'", {"column": "Done"})
    assert evaluate("item.column !== 'Done'", {"column": "Review"})


def test_boolean_connectives() -> None:
    """Test &&, || and ! with precedence."""
    context = {"column": "Parked", "closed": False}
    assert evaluate("item.column == 'New' || item.column == 'Parked' || item.column == 'Backlog'", context)
    assert evaluate("!item.closed && item.column == 'Parked'", context)
    assert not evaluate("item.closed || item.column == 'New' && item.closed", context)
    assert evaluate("!(item.column == 'New' || item.closed)", context)


def test_not_binds_tighter_than_equality() -> None:
    """Test ! applies to its operand before comparing."""
    expression = compile_expression("!item.closed == false")
    assert type(expression.root).__name__ == "Compare"
    assert evaluate("!item.closed == false", {"closed": True})
    assert not evaluate("!item.closed == false", {"closed": False})
    assert evaluate("!(item.closed == false)", {"closed": True})


def test_equality_does_not_cross_types() -> None:
    """Test booleans never equal numbers and strings never equal numbers."""
    context = {"closed": True, "number": 1, "count": 1.0, "label": "1"}
    assert not evaluate("item.closed == 1", context)
    assert evaluate("item.closed != 1", context)
    assert not evaluate("item.number == true", context)
    assert not evaluate("item.label == 1", context)
    assert evaluate("item.number == 1.0", context)
    assert evaluate("item.count === item.number", context)
    assert evaluate("item.closed == true", context)


def test_keyword_connectives() -> None:
    """Test and, or and not as aliases."""
    context = {"column": "New", "merged": False}
    assert evaluate("item.column == 'New' and not item.merged", context)
    assert evaluate("item.merged or item.column == 'New'", context)


def test_null_checks() -> None:
    """Test == null and != null."""
    assert evaluate("item.sprint == null", {"sprint": None})
    assert evaluate("item.sprint != null", {"sprint": "S1"})
    assert not evaluate("item.sprint == null", {"sprint": "S1"})


def test_missing_field_is_undefined() -> None:
    """Test unknown paths only match null or undefined."""
    assert evaluate("item.missing == null", {})
    assert evaluate("item.missing == undefined", {})
    assert not evaluate("item.missing == 'x'", {})
    assert not evaluate("item.missing != 'x'", {})
    assert not evaluate("item.pr.column == item.column", {"column": "New"})


def test_missing_field_is_falsy() -> None:
    """Test bare undefined operands are falsy."""
    assert not evaluate("item.pr.closed", {})
    assert evaluate("!item.pr.closed", {})


def test_nested_paths() -> None:
    """Test nested pull request fields."""
    context = {"column": "Review", "pr": {"column": "Done", "closed": True, "merged": True}}
    assert evaluate("!item.pr.closed || item.pr.merged", context)
    assert not evaluate("item.column === item.pr.column", context)


def test_closed_unmerged_pull_request_condition() -> None:
    """Test the inheritance guard is false for closed, unmerged pull requests."""
    assert not evaluate("!item.pr.closed || item.pr.merged", {"pr": {"closed": True, "merged": False}})


def test_assignees_compare_as_sets() -> None:
    """Test assignee lists compare without regard to order."""
    context = {"assignees": ["bob", "alice"], "pr": {"assignees": frozenset({"alice", "bob"})}}
    assert evaluate("item.assignees === item.pr.assignees", context)
    context["pr"]["assignees"] = frozenset({"alice"})
    assert not evaluate("item.assignees === item.pr.assignees", context)


def test_number_and_boolean_literals() -> None:
    """Test number and boolean literals."""
    assert evaluate("item.number == 42", {"number": 42})
    assert evaluate("item.merged == true", {"merged": True})
    assert evaluate("item.merged == false", {"merged": False})


def test_evaluate_entity() -> None:
    """Test evaluating directly against an entity."""
    entity = Entity(id="I_1", kind=EntityKind.ISSUE, column="New", sprint="S1")
    assert evaluate("item.type == 'Issue' && item.sprint != null", entity)


def test_compile_is_memoized() -> None:
    """Test the same source parses to the same expression."""
    assert compile_expression("item.column == 'New'") is compile_expression("  item.column == 'New'  ")


def test_escaped_quotes() -> None:
    """Test escaped quotes inside string literals."""
    assert evaluate(r"item.title == 'it\'s'", {"title": "it's"})


@pytest.mark.parametrize(
    "source",
    [
        "",
        "item.column ==",
        "(item.column == 'New'",
        "item.column == 'New')",
        "column == 'New'",
        "item.column = 'New'",
        "item.column == 'New'; import os",
        "__import__('os')",
        "item.a == item.b == item.c",
        "'unterminated",
    ],
)
def test_syntax_errors(source: str) -> None:
    """Test malformed or unsafe expressions are rejected."""
    with pytest.raises(ConditionSyntaxError):
        compile_expression(source)


def test_syntax_error_reports_position() -> None:
    """Test syntax errors carry the expression and position."""
    with pytest.raises(ConditionSyntaxError) as excinfo:
        compile_expression("item.column == 'New' &&")
    assert excinfo.value.expression == "item.column == 'New' &&"
    assert "position" in str(excinfo.value)


def test_undefined_is_falsy() -> None:
    """Test the undefined sentinel."""
    assert not UNDEFINED
    assert repr(UNDEFINED) == "undefined"
