"""Action handlers that turn rule actions into mutation intents.

Handlers never talk to the board. Each one looks at an :class:`ActionContext`
and returns zero or more :class:`MutationIntent` proposals; the transition
validator decides which of them survive.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from board_rules.errors import ActionHandlerError, ConfigValidationError
from board_rules.models import Entity, EntityKind, Field, MutationIntent

logger = structlog.get_logger()

DEFAULT_PR_COLUMN = "InProgress"
DEFAULT_ISSUE_COLUMN = "New"
REOPEN_MARKER = "reopen"


@dataclass(frozen=True)
class ActionContext:
    """Everything a handler may look at for one entity."""

    entity: Entity
    linked_pr: Entity | None = None
    params: Mapping[str, Any] = field(default_factory=dict)
    current_sprint: str | None = None
    rule_name: str = ""
    action_name: str = ""

    def propose(self, target: Field, to_value: Any, markers: frozenset[str] = frozenset()) -> MutationIntent:
        """Build an intent for this context's entity."""
        return MutationIntent(
            target_entity_id=self.entity.id,
            field=target,
            from_value=self.entity.get(target),
            to_value=to_value,
            action_name=self.action_name,
            rule_name=self.rule_name,
            markers=markers,
        )

    def require_linked_pr(self) -> Entity:
        """Return the owning pull request or fail for this entity."""
        if self.entity.kind is not EntityKind.LINKED_ISSUE:
            raise ActionHandlerError(self.entity.id, self.action_name, "entity is not a linked issue")
        if self.linked_pr is None:
            raise ActionHandlerError(
                self.entity.id, self.action_name, f"linked pull request {self.entity.linked_to!r} not found"
            )
        return self.linked_pr


Handler = Callable[[ActionContext], list[MutationIntent]]


@dataclass(frozen=True)
class ActionDefinition:
    """A registered action."""

    name: str
    handler: Handler
    requires_value: bool = False
    description: str = ""


class ActionRegistry:
    """Closed lookup table from action names to handlers."""

    def __init__(self) -> None:
        self._actions: dict[str, ActionDefinition] = {}

    def register(self, name: str, handler: Handler, requires_value: bool = False, description: str = "") -> None:
        """Register a handler under an action name."""
        if name in self._actions:
            raise ValueError(f"Action already registered: {name}")
        self._actions[name] = ActionDefinition(name, handler, requires_value, description or (handler.__doc__ or ""))

    def names(self) -> frozenset[str]:
        return frozenset(self._actions)

    def __contains__(self, name: object) -> bool:
        return name in self._actions

    def definitions(self) -> list[ActionDefinition]:
        return list(self._actions.values())

    def check(self, name: str, params: Mapping[str, Any]) -> None:
        """Validate an action reference from configuration.

        Raises:
            ConfigValidationError: If the action is unknown or misses its value
        """
        definition = self._actions.get(name)
        if definition is None:
            raise ConfigValidationError(
                f"Unknown action: '{name}'. Known actions: {', '.join(sorted(self._actions))}"
            )
        if definition.requires_value and params.get("value") in (None, ""):
            raise ConfigValidationError(f"Action '{name}' requires a value")

    def dispatch(self, name: str, context: ActionContext) -> list[MutationIntent]:
        """Run the handler registered for ``name``.

        Raises:
            ActionHandlerError: If the handler fails on this entity's data
        """
        definition = self._actions.get(name)
        if definition is None:
            raise ConfigValidationError(f"Unknown action: '{name}'")
        try:
            intents = definition.handler(context)
        except ActionHandlerError:
            raise
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ActionHandlerError(context.entity.id, name, str(e)) from e
        logger.debug("Action handled", action_name=name, entity_id=context.entity.id, intents=len(intents))
        return list(intents)


def add_item(ctx: ActionContext) -> list[MutationIntent]:
    """Add the entity to the board with an initial column."""
    entity = ctx.entity
    intents = []
    if not entity.on_board:
        intents.append(ctx.propose(Field.ITEM, True))
    if entity.column is None:
        default = DEFAULT_PR_COLUMN if entity.kind is EntityKind.PULL_REQUEST else DEFAULT_ISSUE_COLUMN
        intents.append(ctx.propose(Field.COLUMN, ctx.params.get("value") or default))
    return intents


def set_column(ctx: ActionContext) -> list[MutationIntent]:
    """Move the entity to a column."""
    return [ctx.propose(Field.COLUMN, str(ctx.params["value"]))]


def reopen(ctx: ActionContext) -> list[MutationIntent]:
    """Move the entity back to an open column, allowing transitions out of Done."""
    target = ctx.params.get("value") or DEFAULT_ISSUE_COLUMN
    return [ctx.propose(Field.COLUMN, str(target), markers=frozenset({REOPEN_MARKER}))]


def remove_sprint(ctx: ActionContext) -> list[MutationIntent]:
    """Clear the sprint when one is set."""
    if ctx.entity.sprint is None:
        return []
    return [ctx.propose(Field.SPRINT, None)]


def set_sprint(ctx: ActionContext) -> list[MutationIntent]:
    """Assign the current sprint (or an explicit one)."""
    value = ctx.params.get("value")
    target = ctx.current_sprint if value in (None, "", "current") else str(value)
    if target is None:
        logger.debug("No active sprint; skipping", entity_id=ctx.entity.id)
        return []
    if ctx.entity.sprint == target:
        return []
    return [ctx.propose(Field.SPRINT, target)]


def inherit_column(ctx: ActionContext) -> list[MutationIntent]:
    """Copy the owning pull request's column to the linked issue."""
    pr = ctx.require_linked_pr()
    if pr.column is None or pr.column == ctx.entity.column:
        return []
    return [ctx.propose(Field.COLUMN, pr.column)]


def inherit_assignees(ctx: ActionContext) -> list[MutationIntent]:
    """Replace the linked issue's assignees with the pull request's.

    An empty source set never clears the destination.
    """
    pr = ctx.require_linked_pr()
    if not pr.assignees or pr.assignees == ctx.entity.assignees:
        return []
    return [ctx.propose(Field.ASSIGNEES, frozenset(pr.assignees))]


def add_assignee(ctx: ActionContext) -> list[MutationIntent]:
    """Add a user (``item.author`` for the entity's author) to the assignees."""
    value = ctx.params["value"]
    if value in ("item.author", "${item.author}"):
        value = ctx.entity.author
    if not value:
        logger.debug("No valid assignee found", entity_id=ctx.entity.id)
        return []
    if value in ctx.entity.assignees:
        return []
    return [ctx.propose(Field.ASSIGNEES, ctx.entity.assignees | {str(value)})]


def default_registry() -> ActionRegistry:
    """Return a registry with the built-in actions."""
    registry = ActionRegistry()
    registry.register("add_item", add_item)
    registry.register("set_column", set_column, requires_value=True)
    registry.register("reopen", reopen)
    registry.register("remove_sprint", remove_sprint)
    registry.register("set_sprint", set_sprint)
    registry.register("inherit_column", inherit_column)
    registry.register("inherit_assignees", inherit_assignees)
    registry.register("add_assignee", add_assignee, requires_value=True)
    return registry
