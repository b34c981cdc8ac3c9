"""Tests for action handlers and the registry."""

import pytest

from board_rules.actions import ActionContext, ActionRegistry, default_registry
from board_rules.errors import ActionHandlerError, ConfigValidationError
from board_rules.models import Entity, EntityKind, Field


def dispatch(name: str, entity: Entity, linked_pr: Entity | None = None, current_sprint: str | None = None, **params):
    context = ActionContext(
        entity=entity,
        linked_pr=linked_pr,
        params=params,
        current_sprint=current_sprint,
        rule_name="test_rule",
        action_name=name,
    )
    return default_registry().dispatch(name, context)


def test_registry_names() -> None:
    """Test the built-in action set."""
    assert default_registry().names() == {
        "add_item",
        "set_column",
        "reopen",
        "remove_sprint",
        "set_sprint",
        "inherit_column",
        "inherit_assignees",
        "add_assignee",
    }


def test_registry_rejects_duplicates() -> None:
    """Test an action name can only be registered once."""
    registry = ActionRegistry()
    registry.register("noop", lambda ctx: [])
    with pytest.raises(ValueError):
        registry.register("noop", lambda ctx: [])


def test_registry_check_unknown_action() -> None:
    """Test unknown actions fail the configuration check."""
    with pytest.raises(ConfigValidationError, match="Unknown action"):
        default_registry().check("explode", {})


def test_add_item_for_new_pull_request() -> None:
    """Test adding a pull request that is not on the board."""
    entity = Entity(id="PR_1", kind=EntityKind.PULL_REQUEST, on_board=False)
    intents = dispatch("add_item", entity)
    assert [(i.field, i.to_value) for i in intents] == [(Field.ITEM, True), (Field.COLUMN, "InProgress")]
    assert intents[0].rule_name == "test_rule"


def test_add_item_for_issue_uses_new() -> None:
    """Test issues start in New."""
    entity = Entity(id="I_1", kind=EntityKind.ISSUE, on_board=False)
    intents = dispatch("add_item", entity)
    assert intents[1].to_value == "New"


def test_add_item_with_explicit_column() -> None:
    """Test the configured value overrides the default column."""
    entity = Entity(id="PR_1", kind=EntityKind.PULL_REQUEST, on_board=False)
    assert dispatch("add_item", entity, value="Backlog")[1].to_value == "Backlog"


def test_add_item_already_on_board() -> None:
    """Test items already placed produce nothing."""
    entity = Entity(id="PR_1", kind=EntityKind.PULL_REQUEST, column="Review")
    assert dispatch("add_item", entity) == []


def test_set_column() -> None:
    """Test setting a column proposes the configured value."""
    entity = Entity(id="PR_1", kind=EntityKind.PULL_REQUEST, column="Review")
    [intent] = dispatch("set_column", entity, value="Done")
    assert (intent.field, intent.from_value, intent.to_value) == (Field.COLUMN, "Review", "Done")


def test_set_column_over_proposes() -> None:
    """Test handlers may propose values already in place."""
    entity = Entity(id="PR_1", kind=EntityKind.PULL_REQUEST, column="Done")
    assert len(dispatch("set_column", entity, value="Done")) == 1


def test_set_column_without_value_is_handler_error() -> None:
    """Test handler failures are wrapped with entity and action."""
    entity = Entity(id="PR_1", kind=EntityKind.PULL_REQUEST)
    with pytest.raises(ActionHandlerError) as excinfo:
        dispatch("set_column", entity)
    assert excinfo.value.entity_id == "PR_1"
    assert excinfo.value.action_name == "set_column"


def test_reopen_carries_marker() -> None:
    """Test reopen marks its intent."""
    entity = Entity(id="I_1", kind=EntityKind.ISSUE, column="Done")
    [intent] = dispatch("reopen", entity)
    assert intent.to_value == "New"
    assert intent.markers == {"reopen"}


def test_remove_sprint() -> None:
    """Test sprint removal only when a sprint is set."""
    assert dispatch("remove_sprint", Entity(id="I_1", kind=EntityKind.ISSUE, sprint=None)) == []
    [intent] = dispatch("remove_sprint", Entity(id="I_1", kind=EntityKind.ISSUE, sprint="S1"))
    assert (intent.field, intent.to_value) == (Field.SPRINT, None)


def test_set_sprint_uses_current_sprint() -> None:
    """Test set_sprint proposes the active sprint."""
    entity = Entity(id="PR_1", kind=EntityKind.PULL_REQUEST, column="InProgress")
    [intent] = dispatch("set_sprint", entity, current_sprint="S2")
    assert intent.to_value == "S2"
    assert dispatch("set_sprint", entity) == []
    assert dispatch("set_sprint", Entity(id="PR_1", kind=EntityKind.PULL_REQUEST, sprint="S2"), current_sprint="S2") == []


def test_inherit_column() -> None:
    """Test linked issues take the pull request's column."""
    pr = Entity(id="PR_1", kind=EntityKind.PULL_REQUEST, column="Done")
    issue = Entity(id="I_1", kind=EntityKind.LINKED_ISSUE, column="Review", linked_to="PR_1")
    [intent] = dispatch("inherit_column", issue, linked_pr=pr)
    assert (intent.target_entity_id, intent.to_value) == ("I_1", "Done")


def test_inherit_column_same_column() -> None:
    """Test nothing is proposed when columns already match."""
    pr = Entity(id="PR_1", kind=EntityKind.PULL_REQUEST, column="Done")
    issue = Entity(id="I_1", kind=EntityKind.LINKED_ISSUE, column="Done", linked_to="PR_1")
    assert dispatch("inherit_column", issue, linked_pr=pr) == []


def test_inherit_column_requires_linked_issue() -> None:
    """Test inheritance fails for entities without a pull request."""
    with pytest.raises(ActionHandlerError, match="not a linked issue"):
        dispatch("inherit_column", Entity(id="I_1", kind=EntityKind.ISSUE))
    with pytest.raises(ActionHandlerError, match="not found"):
        dispatch("inherit_column", Entity(id="I_1", kind=EntityKind.LINKED_ISSUE, linked_to="PR_9"))


def test_inherit_assignees_replaces_exactly() -> None:
    """Test assignees are replaced with the pull request's."""
    pr = Entity(id="PR_1", kind=EntityKind.PULL_REQUEST, assignees={"alice", "bob"})
    issue = Entity(id="I_1", kind=EntityKind.LINKED_ISSUE, assignees={"carol"}, linked_to="PR_1")
    [intent] = dispatch("inherit_assignees", issue, linked_pr=pr)
    assert intent.to_value == {"alice", "bob"}


def test_inherit_assignees_never_empties() -> None:
    """Test an empty pull request assignee set is not copied."""
    pr = Entity(id="PR_1", kind=EntityKind.PULL_REQUEST)
    issue = Entity(id="I_1", kind=EntityKind.LINKED_ISSUE, assignees={"carol"}, linked_to="PR_1")
    assert dispatch("inherit_assignees", issue, linked_pr=pr) == []


def test_add_assignee_author() -> None:
    """Test item.author resolves to the entity's author."""
    entity = Entity(id="PR_1", kind=EntityKind.PULL_REQUEST, author="alice", assignees={"bob"})
    [intent] = dispatch("add_assignee", entity, value="item.author")
    assert intent.to_value == {"alice", "bob"}
    assert dispatch("add_assignee", entity, value="bob") == []
