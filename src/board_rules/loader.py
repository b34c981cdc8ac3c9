"""Rules file discovery and loading."""

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog
import yaml

from board_rules.actions import ActionRegistry, default_registry
from board_rules.errors import ConfigValidationError
from board_rules.rules import RuleSet
from board_rules.transitions import TransitionTable

logger = structlog.get_logger()

RULES_RELATIVE_PATH = Path("config") / "rules.yml"
MAX_PARENT_SEARCH = 8


@dataclass
class RulesConfig:
    """Everything a rules file declares."""

    rules: RuleSet
    transitions: TransitionTable
    monitored_users: list[str] = field(default_factory=list)
    source: Path | None = None


def _absolute(path: Path, cwd: Path) -> Path:
    return path if path.is_absolute() else cwd / path


def resolve_rules_path(
    explicit: str | os.PathLike[str] | None = None,
    cwd: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Path:
    """Find the rules file.

    Order: ``explicit``, the ``CONFIG_FILE`` environment variable (relative
    paths resolve against ``cwd``), ``./config/rules.yml``, then
    ``config/rules.yml`` in up to eight parent directories.

    Raises:
        ConfigValidationError: If no rules file exists
    """
    cwd = cwd or Path.cwd()
    environ = os.environ if environ is None else environ

    if explicit:
        path = _absolute(Path(explicit), cwd)
        if not path.exists():
            raise ConfigValidationError(f"Rules file not found: {path}")
        return path

    from_env = environ.get("CONFIG_FILE")
    if from_env:
        path = _absolute(Path(from_env), cwd)
        if path.exists():
            return path
        logger.warning("CONFIG_FILE does not exist, searching defaults", path=str(path))

    current = cwd
    for _ in range(MAX_PARENT_SEARCH + 1):
        path = current / RULES_RELATIVE_PATH
        if path.exists():
            return path
        if current.parent == current:
            break
        current = current.parent

    raise ConfigValidationError(f"No {RULES_RELATIVE_PATH} found in {cwd} or its parents")


def read_rules_file(path: Path) -> dict[str, Any]:
    """Parse a rules file with ``yaml.safe_load``.

    Raises:
        ConfigValidationError: If the file cannot be read or is not a mapping
    """
    try:
        with open(path, "r") as f:
            document = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigValidationError(f"Failed to load rules from {path}: {e}") from e
    if not isinstance(document, dict):
        raise ConfigValidationError(f"Rules file {path} must contain a mapping")
    return document


def monitored_users_from(automation: Mapping[str, Any]) -> list[str]:
    """Read ``user_scope.monitored_users`` (a list, or the legacy ``{type: static, name}`` form)."""
    user_scope = automation.get("user_scope") or {}
    raw = user_scope.get("monitored_users")
    if isinstance(raw, list) and all(isinstance(user, str) for user in raw):
        return list(raw)
    if isinstance(raw, Mapping) and raw.get("type") == "static" and raw.get("name"):
        logger.warning("Legacy monitored_users mapping; use a list of logins instead")
        return [str(raw["name"])]
    return []


def _grouped(rules: Any, origin: str) -> list[tuple[str, Mapping[str, Any]]]:
    if rules is None:
        return []
    if isinstance(rules, list):
        return [("", rule) for rule in rules]
    if not isinstance(rules, Mapping):
        raise ConfigValidationError(f"{origin} must be a mapping of rule groups or a list of rules")
    definitions = []
    for group, entries in rules.items():
        if entries is None:
            continue
        if not isinstance(entries, list):
            raise ConfigValidationError(f"{origin}.{group} must be a list of rules")
        definitions.extend((str(group), entry) for entry in entries)
    return definitions


def collect_definitions(
    document: Mapping[str, Any], monitored_users: list[str] | None = None
) -> tuple[list[tuple[str, Mapping[str, Any]]], list[str]]:
    """Merge scoped rule groups into one ordered list.

    ``automation.user_scope.rules`` are included only when monitored users are
    configured; ``automation.repository_scope.rules`` always are, followed by
    any top-level ``rules``.

    Returns:
        ``(group, definition)`` pairs and the monitored users
    """
    definitions: list[tuple[str, Mapping[str, Any]]] = []
    users = list(monitored_users or [])

    automation = document.get("automation")
    if automation is not None:
        if not isinstance(automation, Mapping):
            raise ConfigValidationError("automation must be a mapping")
        users = monitored_users_from(automation) or users
        user_rules = (automation.get("user_scope") or {}).get("rules")
        if users:
            definitions.extend(_grouped(user_rules, "automation.user_scope.rules"))
        elif user_rules:
            logger.warning("No monitored users configured; skipping user scope rules")
        repository_rules = (automation.get("repository_scope") or {}).get("rules")
        definitions.extend(_grouped(repository_rules, "automation.repository_scope.rules"))

    definitions.extend(_grouped(document.get("rules"), "rules"))
    return definitions, users


def collect_transitions(document: Mapping[str, Any], definitions: list[tuple[str, Mapping[str, Any]]]) -> TransitionTable:
    """Build the transition table from ``transitions`` and per-rule ``validTransitions``.

    Falls back to the default table when nothing is declared.
    """
    declared = list(document.get("transitions") or [])
    for _, definition in definitions:
        if isinstance(definition, Mapping):
            declared.extend(definition.get("validTransitions") or [])
    if not declared:
        return TransitionTable.default()
    return TransitionTable.from_definitions(declared)


def load_rules(
    path: str | os.PathLike[str] | None = None,
    registry: ActionRegistry | None = None,
    monitored_users: list[str] | None = None,
) -> RulesConfig:
    """Load and validate a rules file.

    Args:
        path: Explicit rules file; discovered when omitted
        registry: Registry used to validate action names
        monitored_users: Used when the file declares no ``monitored_users``

    Raises:
        ConfigValidationError: If the file is missing or declares unknown actions or kinds
    """
    source = resolve_rules_path(path)
    document = read_rules_file(source)
    return load_rules_document(document, registry, monitored_users, source)


def load_rules_document(
    document: Mapping[str, Any],
    registry: ActionRegistry | None = None,
    monitored_users: list[str] | None = None,
    source: Path | None = None,
) -> RulesConfig:
    """Validate an already parsed rules document."""
    registry = registry or default_registry()
    definitions, users = collect_definitions(document, monitored_users)
    rules = RuleSet.from_definitions(definitions, registry)
    transitions = collect_transitions(document, definitions)
    logger.info(
        "Rules loaded",
        source=str(source) if source else None,
        rules=len(rules),
        invalid=len(rules.invalid),
        transitions=len(transitions),
        monitored_users=users,
    )
    return RulesConfig(rules=rules, transitions=transitions, monitored_users=users, source=source)
