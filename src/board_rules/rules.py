"""Rule model: immutable, validated rule definitions."""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from board_rules.actions import ActionRegistry
from board_rules.errors import ConditionSyntaxError, ConfigValidationError
from board_rules.expressions import Expression, compile_expression
from board_rules.models import Entity, EntityKind

logger = structlog.get_logger()

_KIND_ALIASES = {
    "pullrequest": EntityKind.PULL_REQUEST,
    "pull_request": EntityKind.PULL_REQUEST,
    "pr": EntityKind.PULL_REQUEST,
    "issue": EntityKind.ISSUE,
    "linkedissue": EntityKind.LINKED_ISSUE,
    "linked_issue": EntityKind.LINKED_ISSUE,
}


@dataclass(frozen=True)
class Trigger:
    """Entity kinds and optional condition that make a rule eligible."""

    types: frozenset[EntityKind]
    condition: Expression | None = None


@dataclass(frozen=True)
class ActionSpec:
    """An action reference with its parameters."""

    name: str
    params: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Rule:
    """A single automation rule."""

    name: str
    trigger: Trigger
    actions: tuple[ActionSpec, ...]
    skip_if: Expression | None = None
    group: str = ""
    description: str = ""

    def applies_to(self, entity: Entity) -> bool:
        return entity.kind in self.trigger.types


@dataclass(frozen=True)
class InvalidRule:
    """A rule skipped because one of its expressions does not parse."""

    name: str
    error: ConditionSyntaxError
    group: str = ""


def parse_kinds(raw: Any) -> frozenset[EntityKind]:
    """Parse a trigger type (``"PullRequest|Issue"``, a list, or a single kind).

    Raises:
        ConfigValidationError: If a kind is unknown
    """
    if isinstance(raw, str):
        names = [part.strip() for part in raw.split("|")]
    elif isinstance(raw, (list, tuple, set, frozenset)):
        names = [str(part).strip() for part in raw]
    else:
        raise ConfigValidationError(f"Trigger type must be a string or a list, got {raw!r}")

    kinds = set()
    for name in names:
        kind = _KIND_ALIASES.get(name.lower())
        if kind is None:
            known = ", ".join(k.value for k in EntityKind)
            raise ConfigValidationError(f"Unknown trigger type: '{name}'. Known types: {known}")
        kinds.add(kind)
    if not kinds:
        raise ConfigValidationError("Trigger type must name at least one entity kind")
    return frozenset(kinds)


def parse_actions(
    raw: Any, registry: ActionRegistry, default_params: Mapping[str, Any] | None = None
) -> tuple[ActionSpec, ...]:
    """Parse the ``action`` entry of a rule into action specs.

    Accepts a name, a ``{name: value}`` mapping, a ``{name: ..., value: ...}``
    mapping, or a list of those. Bare names take ``default_params`` (the
    rule-level ``value``).
    """
    entries = raw if isinstance(raw, list) else [raw]
    specs = []
    for entry in entries:
        if isinstance(entry, str):
            spec = ActionSpec(entry.strip(), dict(default_params or {}))
        elif isinstance(entry, Mapping) and "name" in entry:
            params = {k: v for k, v in entry.items() if k != "name"}
            spec = ActionSpec(str(entry["name"]), params)
        elif isinstance(entry, Mapping) and len(entry) == 1:
            name, value = next(iter(entry.items()))
            if isinstance(value, Mapping):
                params = dict(value)
            elif value is None:
                params = {}
            else:
                params = {"value": value}
            spec = ActionSpec(str(name), params)
        else:
            raise ConfigValidationError(f"Invalid action entry: {entry!r}")
        registry.check(spec.name, spec.params)
        specs.append(spec)
    if not specs:
        raise ConfigValidationError("Rule must define at least one action")
    return tuple(specs)


def _optional_expression(raw: Any) -> Expression | None:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return None
    if isinstance(raw, bool):
        return compile_expression("true" if raw else "false")
    return compile_expression(raw)


def build_rule(definition: Mapping[str, Any], registry: ActionRegistry, group: str = "") -> Rule:
    """Build a rule from a raw configuration mapping.

    Raises:
        ConfigValidationError: If the rule names unknown kinds or actions
        ConditionSyntaxError: If the condition or skip_if does not parse
    """
    if not isinstance(definition, Mapping):
        raise ConfigValidationError(f"Rule must be a mapping, got {type(definition).__name__}")
    name = definition.get("name")
    if not name:
        raise ConfigValidationError(f"Rule without a name in group '{group}'")

    trigger_raw = definition.get("trigger")
    if not isinstance(trigger_raw, Mapping) or "type" not in trigger_raw:
        raise ConfigValidationError(f"Rule '{name}' must define trigger.type")
    if "action" not in definition:
        raise ConfigValidationError(f"Rule '{name}' must define an action")

    kinds = parse_kinds(trigger_raw["type"])
    default_params = {"value": definition["value"]} if definition.get("value") is not None else None
    actions = parse_actions(definition["action"], registry, default_params)
    condition = _optional_expression(trigger_raw.get("condition"))
    skip_if = _optional_expression(definition.get("skip_if"))

    return Rule(
        name=str(name),
        trigger=Trigger(types=kinds, condition=condition),
        actions=actions,
        skip_if=skip_if,
        group=group,
        description=str(definition.get("description", "")),
    )


class RuleSet:
    """Ordered, read-only collection of rules for one run."""

    def __init__(self, rules: Iterable[Rule], invalid: Iterable[InvalidRule] = ()) -> None:
        self.rules: tuple[Rule, ...] = tuple(rules)
        self.invalid: tuple[InvalidRule, ...] = tuple(invalid)
        names = [rule.name for rule in self.rules] + [rule.name for rule in self.invalid]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigValidationError(f"Duplicate rule names: {', '.join(duplicates)}")

    @classmethod
    def from_definitions(
        cls,
        definitions: Iterable[tuple[str, Mapping[str, Any]] | Mapping[str, Any]],
        registry: ActionRegistry,
    ) -> "RuleSet":
        """Build a rule set, skipping rules whose expressions do not parse.

        Args:
            definitions: Raw rule mappings, optionally paired with their group name
            registry: Registry used to check action names

        Raises:
            ConfigValidationError: On unknown actions, trigger kinds or duplicates
        """
        rules = []
        invalid = []
        for item in definitions:
            group, definition = item if isinstance(item, tuple) else ("", item)
            try:
                rules.append(build_rule(definition, registry, group=group))
            except ConditionSyntaxError as e:
                name = str(definition.get("name", "<unnamed>"))
                logger.error("Rule skipped: invalid condition", rule_name=name, group=group, error=str(e))
                invalid.append(InvalidRule(name=name, error=e, group=group))
        logger.debug("Rule set built", rules=len(rules), invalid=len(invalid))
        return cls(rules, invalid)

    def select_applicable(self, entity: Entity) -> list[Rule]:
        """Rules whose trigger kinds include the entity's kind, in declared order."""
        return [rule for rule in self.rules if rule.applies_to(entity)]

    def __iter__(self):
        return iter(self.rules)

    def __len__(self) -> int:
        return len(self.rules)
