"""Rule processor: matches rules to entities and collects validated intents."""

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import structlog

from board_rules.actions import ActionContext, ActionRegistry, default_registry
from board_rules.errors import ActionHandlerError
from board_rules.models import Entity, EntityKind, MutationIntent, Outcome, Verdict
from board_rules.rules import InvalidRule, Rule, RuleSet
from board_rules.transitions import TransitionValidator

logger = structlog.get_logger()


@dataclass
class EntityEvaluation:
    """Rules and intents collected for one entity."""

    entity: Entity
    intents: list[MutationIntent] = field(default_factory=list)
    matched_rules: list[str] = field(default_factory=list)
    skipped_rules: list[str] = field(default_factory=list)
    errors: list[ActionHandlerError] = field(default_factory=list)


@dataclass
class ProcessingReport:
    """Result of one processing pass, before execution."""

    evaluations: list[EntityEvaluation] = field(default_factory=list)
    verdicts: list[Verdict] = field(default_factory=list)
    invalid_rules: tuple[InvalidRule, ...] = ()

    @property
    def intents(self) -> list[MutationIntent]:
        return [intent for evaluation in self.evaluations for intent in evaluation.intents]

    @property
    def accepted(self) -> list[MutationIntent]:
        return [v.intent for v in self.verdicts if v.outcome is Outcome.ACCEPTED]

    @property
    def rejected(self) -> list[Verdict]:
        return [v for v in self.verdicts if v.outcome is Outcome.REJECTED]

    @property
    def noops(self) -> list[Verdict]:
        return [v for v in self.verdicts if v.outcome is Outcome.NOOP]

    @property
    def superseded(self) -> list[Verdict]:
        """Intents overridden by a later rule for the same entity field."""
        return [v for v in self.verdicts if v.outcome is Outcome.SUPERSEDED]

    @property
    def errors(self) -> list[ActionHandlerError]:
        return [e for evaluation in self.evaluations for e in evaluation.errors]


class RuleProcessor:
    """Evaluates a rule set against entity snapshots.

    Evaluation is synchronous and side-effect free: conditions and skip guards
    always see the entity as it was fetched, never the effect of intents
    proposed earlier in the same pass.
    """

    def __init__(
        self,
        rules: RuleSet,
        registry: ActionRegistry | None = None,
        validator: TransitionValidator | None = None,
        current_sprint: str | None = None,
        monitored_users: Iterable[str] = (),
    ) -> None:
        """Initialize the processor.

        Args:
            rules: Rules to evaluate, in declared order
            registry: Action registry used to dispatch rule actions
            validator: Validator applied to every collected intent
            current_sprint: Identifier of the active sprint, if any
            monitored_users: Logins exposed to conditions as ``item.author_monitored``
                and ``item.assignee_monitored``
        """
        self.rules = rules
        self.registry = registry or default_registry()
        self.validator = validator or TransitionValidator()
        self.current_sprint = current_sprint
        self.monitored_users = frozenset(monitored_users)

    def build_context(self, entity: Entity, linked_pr: Entity | None = None) -> dict[str, Any]:
        """Render the expression context for an entity."""
        context = entity.to_context(linked_pr)
        if self.monitored_users:
            context["author_monitored"] = entity.author in self.monitored_users
            context["assignee_monitored"] = bool(entity.assignees & self.monitored_users)
        return context

    def _rule_fires(self, rule: Rule, context: dict[str, Any]) -> bool:
        if rule.trigger.condition is not None and not rule.trigger.condition.evaluate(context):
            return False
        if rule.skip_if is not None and rule.skip_if.evaluate(context):
            return False
        return True

    def evaluate_entity(self, entity: Entity, linked_pr: Entity | None = None) -> EntityEvaluation:
        """Collect intents from every applicable rule for one entity.

        An ``ActionHandlerError`` stops the entity's remaining actions; it is
        recorded on the evaluation rather than raised.
        """
        evaluation = EntityEvaluation(entity=entity)
        context = self.build_context(entity, linked_pr)

        for rule in self.rules.select_applicable(entity):
            if not self._rule_fires(rule, context):
                evaluation.skipped_rules.append(rule.name)
                logger.debug("Rule not fired", rule_name=rule.name, entity_id=entity.id)
                continue

            evaluation.matched_rules.append(rule.name)
            try:
                for spec in rule.actions:
                    action_context = ActionContext(
                        entity=entity,
                        linked_pr=linked_pr,
                        params=spec.params,
                        current_sprint=self.current_sprint,
                        rule_name=rule.name,
                        action_name=spec.name,
                    )
                    evaluation.intents.extend(self.registry.dispatch(spec.name, action_context))
            except ActionHandlerError as e:
                logger.error(
                    "Action failed; skipping remaining actions for entity",
                    rule_name=rule.name,
                    action_name=e.action_name,
                    entity_id=entity.id,
                    error=str(e),
                )
                evaluation.errors.append(e)
                break

        return evaluation

    def process(self, entities: Iterable[Entity]) -> ProcessingReport:
        """Evaluate and validate a full entity snapshot.

        Args:
            entities: Entity snapshot; ids must be unique

        Returns:
            Report with per-entity evaluations and a verdict for every intent
        """
        index: dict[str, Entity] = {}
        for entity in entities:
            if entity.id in index:
                raise ValueError(f"Duplicate entity id: {entity.id}")
            index[entity.id] = entity

        linked_prs: dict[str, Entity] = {}
        for entity in index.values():
            if entity.kind is not EntityKind.LINKED_ISSUE or entity.linked_to is None:
                continue
            pr = index.get(entity.linked_to)
            if pr is None:
                logger.warning("Linked pull request not in snapshot", entity_id=entity.id, linked_to=entity.linked_to)
                continue
            linked_prs[entity.id] = pr

        report = ProcessingReport(invalid_rules=self.rules.invalid)
        for entity in index.values():
            report.evaluations.append(self.evaluate_entity(entity, linked_prs.get(entity.id)))

        report.verdicts = self.validator.validate_all(report.intents, index, linked_prs)
        logger.info(
            "Processing pass complete",
            entities=len(index),
            intents=len(report.verdicts),
            accepted=len(report.accepted),
            rejected=len(report.rejected),
            noop=len(report.noops),
            superseded=len(report.superseded),
            errors=len(report.errors),
        )
        return report
