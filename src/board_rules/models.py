"""Data models for board rules."""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from board_rules.errors import BoardRulesError


class EntityKind(str, Enum):
    """Kinds of entities under board automation."""

    PULL_REQUEST = "PullRequest"
    ISSUE = "Issue"
    LINKED_ISSUE = "LinkedIssue"


class Field(str, Enum):
    """Board fields a mutation can target, in execution order."""

    ITEM = "item"
    COLUMN = "column"
    SPRINT = "sprint"
    ASSIGNEES = "assignees"


FIELD_ORDER = list(Field)


class Outcome(str, Enum):
    """Outcome of validating or executing an intent."""

    ACCEPTED = "accepted"
    REJECTED = "rejected"
    NOOP = "noop"
    SUPERSEDED = "superseded"
    APPLIED = "applied"
    FAILED = "failed"
    DRY_RUN = "dry_run"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Entity:
    """Snapshot of a pull request, issue or linked issue on the board."""

    id: str
    kind: EntityKind
    column: str | None = None
    sprint: str | None = None
    assignees: frozenset[str] = frozenset()
    closed: bool = False
    merged: bool = False
    linked_to: str | None = None
    number: int | None = None
    repository: str | None = None
    author: str | None = None
    on_board: bool = True

    def __post_init__(self) -> None:
        if not isinstance(self.assignees, frozenset):
            object.__setattr__(self, "assignees", frozenset(self.assignees))

    @property
    def label(self) -> str:
        """Human readable identifier used in logs and summaries."""
        if self.number is not None:
            return f"{self.kind.value} #{self.number}"
        return f"{self.kind.value} {self.id}"

    def get(self, target: Field) -> Any:
        """Return the current value of a mutable board field."""
        if target is Field.ITEM:
            return self.on_board
        if target is Field.COLUMN:
            return self.column
        if target is Field.SPRINT:
            return self.sprint
        if target is Field.ASSIGNEES:
            return self.assignees
        raise ValueError(f"Unknown field: {target}")

    def apply(self, intent: "MutationIntent") -> "Entity":
        """Return a copy of this entity with the intent's value applied."""
        if intent.target_entity_id != self.id:
            raise ValueError(f"Intent targets {intent.target_entity_id}, not {self.id}")
        if intent.field is Field.ITEM:
            return replace(self, on_board=bool(intent.to_value))
        if intent.field is Field.ASSIGNEES:
            return replace(self, assignees=frozenset(intent.to_value or ()))
        return replace(self, **{intent.field.value: intent.to_value})

    def to_context(self, linked_pr: "Entity | None" = None) -> dict[str, Any]:
        """Render the entity as an expression context.

        Args:
            linked_pr: Owning pull request for linked issues, exposed as ``item.pr``

        Returns:
            Dictionary of field values
        """
        context: dict[str, Any] = {
            "id": self.id,
            "type": self.kind.value,
            "column": self.column,
            "sprint": self.sprint,
            "assignees": self.assignees,
            "closed": self.closed,
            "merged": self.merged,
            "state": self.state,
            "number": self.number,
            "repository": self.repository,
            "author": self.author,
            "on_board": self.on_board,
        }
        if linked_pr is not None:
            context["pr"] = linked_pr.to_context()
        return context

    @property
    def state(self) -> str:
        """GitHub style state string."""
        if self.merged:
            return "MERGED"
        return "CLOSED" if self.closed else "OPEN"


@dataclass(frozen=True)
class MutationIntent:
    """A proposed field change, not yet applied."""

    target_entity_id: str
    field: Field
    from_value: Any
    to_value: Any
    action_name: str
    rule_name: str = ""
    markers: frozenset[str] = frozenset()

    @property
    def key(self) -> tuple[str, Field]:
        """Deduplication key."""
        return (self.target_entity_id, self.field)

    def describe(self) -> str:
        """Short description for logs."""
        return f"{self.field.value}: {_render(self.from_value)} -> {_render(self.to_value)}"


@dataclass(frozen=True)
class Verdict:
    """Validator decision for a single intent."""

    intent: MutationIntent
    outcome: Outcome
    error: BoardRulesError | None = None

    @property
    def accepted(self) -> bool:
        return self.outcome is Outcome.ACCEPTED

    @property
    def reason(self) -> str | None:
        return str(self.error) if self.error else None


@dataclass(frozen=True)
class ExecutionResult:
    """Executor outcome for a single intent."""

    intent: MutationIntent
    outcome: Outcome
    attempts: int = 0
    error: BoardRulesError | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.outcome in (Outcome.APPLIED, Outcome.DRY_RUN)


def _render(value: Any) -> str:
    if value is None:
        return "None"
    if isinstance(value, frozenset):
        return "[" + ", ".join(sorted(value)) + "]"
    return str(value)
