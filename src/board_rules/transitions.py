"""State transition validation and no-op detection.

The validator is the single place that decides whether an intent reaches the
board. Handlers may propose freely; here each intent is checked for drift
(already at the target value), board invariants and column transition
legality.
"""

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from board_rules.errors import ConfigValidationError, IllegalTransition, InvariantViolation
from board_rules.models import Entity, EntityKind, Field, MutationIntent, Outcome, Verdict

logger = structlog.get_logger()

NO_COLUMN = "None"
DEFAULT_COLUMNS = ("New", "Parked", "Backlog", "InProgress", "Review", "Done")
INACTIVE_COLUMNS = frozenset({"New", "Parked", "Backlog"})


@dataclass(frozen=True)
class Transition:
    """A legal column move, optionally requiring intent markers."""

    from_column: str
    to_column: str
    requires: frozenset[str] = frozenset()


DEFAULT_TRANSITIONS = (
    Transition(NO_COLUMN, "New"),
    Transition(NO_COLUMN, "Backlog"),
    Transition(NO_COLUMN, "InProgress"),
    Transition("New", "InProgress"),
    Transition("New", "Parked"),
    Transition("New", "Backlog"),
    Transition("Backlog", "New"),
    Transition("Backlog", "Parked"),
    Transition("Backlog", "InProgress"),
    Transition("Parked", "New"),
    Transition("Parked", "Backlog"),
    Transition("Parked", "InProgress"),
    Transition("InProgress", "Review"),
    Transition("InProgress", "Done"),
    Transition("InProgress", "Backlog"),
    Transition("InProgress", "Parked"),
    Transition("Review", "InProgress"),
    Transition("Review", "Done"),
    Transition("Done", "New", requires=frozenset({"reopen"})),
    Transition("Done", "InProgress", requires=frozenset({"reopen"})),
)


def _column_name(column: str | None) -> str:
    return NO_COLUMN if column is None else column


class TransitionTable:
    """Adjacency table of legal column transitions."""

    def __init__(self, transitions: Iterable[Transition]) -> None:
        self._edges: dict[tuple[str, str], Transition] = {}
        for transition in transitions:
            self._edges[(transition.from_column, transition.to_column)] = transition

    @classmethod
    def default(cls) -> "TransitionTable":
        return cls(DEFAULT_TRANSITIONS)

    @classmethod
    def from_definitions(cls, definitions: Iterable[Mapping[str, Any]]) -> "TransitionTable":
        """Build a table from ``{from, to, requires}`` mappings.

        ``from`` may be a single column or a list; ``None``/``null`` means an
        item without a column.

        Raises:
            ConfigValidationError: If an entry is malformed
        """
        transitions = []
        for definition in definitions:
            if not isinstance(definition, Mapping) or "from" not in definition or "to" not in definition:
                raise ConfigValidationError(f"Transition must define 'from' and 'to': {definition!r}")
            sources = definition["from"]
            if not isinstance(sources, list):
                sources = [sources]
            requires = definition.get("requires") or []
            if isinstance(requires, str):
                requires = [requires]
            for source in sources:
                transitions.append(
                    Transition(
                        from_column=_column_name(source),
                        to_column=str(definition["to"]),
                        requires=frozenset(str(r) for r in requires),
                    )
                )
        return cls(transitions)

    @property
    def columns(self) -> list[str]:
        seen: dict[str, None] = {}
        for source, target in self._edges:
            if source != NO_COLUMN:
                seen.setdefault(source)
            seen.setdefault(target)
        return list(seen)

    def allowed_from(self, column: str | None) -> list[str]:
        source = _column_name(column)
        return [target for (start, target) in self._edges if start == source]

    def check(self, from_column: str | None, to_column: str, markers: frozenset[str] = frozenset()) -> None:
        """Check a column move.

        Raises:
            IllegalTransition: If the move is not declared or lacks a required marker
        """
        transition = self._edges.get((_column_name(from_column), to_column))
        if transition is None:
            raise IllegalTransition(from_column, to_column)
        missing = transition.requires - markers
        if missing:
            raise IllegalTransition(
                from_column,
                to_column,
                f'Transition from "{_column_name(from_column)}" to "{to_column}" requires '
                f"marker(s): {', '.join(sorted(missing))}",
            )

    def __len__(self) -> int:
        return len(self._edges)


def _same(current: Any, proposed: Any) -> bool:
    if isinstance(current, frozenset) or isinstance(proposed, frozenset):
        return frozenset(current or ()) == frozenset(proposed or ())
    return current == proposed


class TransitionValidator:
    """Accepts, rejects or drops mutation intents."""

    def __init__(self, table: TransitionTable | None = None, inactive_columns: Iterable[str] = INACTIVE_COLUMNS) -> None:
        self.table = table or TransitionTable.default()
        self.inactive_columns = frozenset(inactive_columns)

    def validate(
        self,
        intent: MutationIntent,
        entity: Entity,
        linked_pr: Entity | None = None,
        pending: Sequence[MutationIntent] = (),
    ) -> Verdict:
        """Validate one intent against the entity's current state.

        Args:
            intent: Intent to check
            entity: Current snapshot of the target entity
            linked_pr: Owning pull request when the entity is a linked issue
            pending: Other intents for the same entity assumed to be applied alongside this one

        Returns:
            Verdict with outcome accepted, rejected or noop
        """
        verdict = self._verdict(intent, entity, linked_pr, pending)
        self._log(verdict)
        return verdict

    def validate_all(
        self,
        intents: Sequence[MutationIntent],
        entities: Mapping[str, Entity],
        linked_prs: Mapping[str, Entity] | None = None,
    ) -> list[Verdict]:
        """Validate a pass worth of intents, returning verdicts in input order.

        Intents are reconciled first: only the last intent per
        ``(target_entity_id, field)`` is validated, earlier ones are marked
        superseded. Invariants are then checked against the entity projected
        with the intents that are themselves accepted, repeating until the
        accepted set no longer shrinks.
        """
        linked_prs = linked_prs or {}
        latest: dict[tuple[str, Field], int] = {}
        for index, intent in enumerate(intents):
            latest[intent.key] = index

        verdicts: dict[int, Verdict] = {}
        by_entity: dict[str, list[int]] = {}
        for index, intent in enumerate(intents):
            if latest[intent.key] != index:
                verdicts[index] = Verdict(intent, Outcome.SUPERSEDED)
            else:
                by_entity.setdefault(intent.target_entity_id, []).append(index)

        for entity_id, indices in by_entity.items():
            entity = entities[entity_id]
            linked_pr = linked_prs.get(entity_id)
            candidates = []
            for index in indices:
                verdicts[index] = self._verdict(intents[index], entity, linked_pr, check_sprint=False)
                if verdicts[index].accepted:
                    candidates.append(index)
            while candidates:
                pending = [intents[index] for index in candidates]
                for index in candidates:
                    verdicts[index] = self._verdict(intents[index], entity, linked_pr, pending)
                accepted = [index for index in candidates if verdicts[index].accepted]
                if accepted == candidates:
                    break
                candidates = accepted

        ordered = [verdicts[index] for index in range(len(intents))]
        for verdict in ordered:
            self._log(verdict)
        return ordered

    def _verdict(
        self,
        intent: MutationIntent,
        entity: Entity,
        linked_pr: Entity | None,
        pending: Sequence[MutationIntent] = (),
        check_sprint: bool = True,
    ) -> Verdict:
        if intent.target_entity_id != entity.id:
            raise ValueError(f"Intent targets {intent.target_entity_id}, not {entity.id}")

        if _same(entity.get(intent.field), intent.to_value):
            return Verdict(intent, Outcome.NOOP)
        try:
            if check_sprint:
                self._check_sprint(intent, entity, pending)
            self._check_inheritance(intent, entity, linked_pr)
            if intent.field is Field.COLUMN:
                self.table.check(entity.column, intent.to_value, intent.markers)
        except (IllegalTransition, InvariantViolation) as e:
            return Verdict(intent, Outcome.REJECTED, e)
        return Verdict(intent, Outcome.ACCEPTED)

    def _check_sprint(self, intent: MutationIntent, entity: Entity, pending: Sequence[MutationIntent]) -> None:
        if intent.field not in (Field.COLUMN, Field.SPRINT):
            return
        projected = entity
        for other in pending:
            if other.target_entity_id == entity.id and other.key != intent.key:
                projected = projected.apply(other)
        projected = projected.apply(intent)
        if projected.column in self.inactive_columns and projected.sprint is not None:
            raise InvariantViolation(
                f"Sprint must be empty in column {projected.column} (sprint {projected.sprint} would remain)"
            )

    def _check_inheritance(self, intent: MutationIntent, entity: Entity, linked_pr: Entity | None) -> None:
        if (
            intent.field is Field.COLUMN
            and intent.action_name == "inherit_column"
            and entity.kind is EntityKind.LINKED_ISSUE
            and linked_pr is not None
            and linked_pr.closed
            and not linked_pr.merged
        ):
            raise InvariantViolation("Linked issues do not inherit columns from closed, unmerged pull requests")

        if (
            intent.field is Field.ASSIGNEES
            and intent.action_name.startswith("inherit")
            and entity.assignees
            and not intent.to_value
        ):
            raise InvariantViolation("Inheritance must not clear a non-empty assignee set")

    def _log(self, verdict: Verdict) -> None:
        intent = verdict.intent
        log = logger.warning if verdict.outcome is Outcome.REJECTED else logger.info
        log(
            "Intent validated",
            rule_name=intent.rule_name,
            action_name=intent.action_name,
            entity_id=intent.target_entity_id,
            outcome=verdict.outcome.value,
            change=intent.describe(),
            reason=verdict.reason,
        )
