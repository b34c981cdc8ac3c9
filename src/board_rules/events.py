"""Entities from GitHub Actions event payloads."""

import json
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

import structlog

from board_rules.models import Entity, EntityKind

logger = structlog.get_logger()


def _repository(payload: Mapping[str, Any]) -> str:
    repository = payload.get("repository") or {}
    return repository.get("full_name") or repository.get("nameWithOwner") or "unknown/unknown"


def _logins(users: Any) -> frozenset[str]:
    if not isinstance(users, list):
        return frozenset()
    return frozenset(user["login"] for user in users if user and user.get("login"))


def _entity(kind: EntityKind, node: Mapping[str, Any], payload: Mapping[str, Any]) -> Entity | None:
    node_id = node.get("node_id") or node.get("id")
    if not node_id:
        return None
    user = node.get("user") or {}
    return Entity(
        id=str(node_id),
        kind=kind,
        assignees=_logins(node.get("assignees")),
        closed=node.get("state") == "closed",
        merged=bool(node.get("merged")),
        number=node.get("number"),
        repository=_repository(payload),
        author=user.get("login"),
        on_board=False,
    )


def from_pull_request(payload: Mapping[str, Any]) -> Entity | None:
    pr = payload.get("pull_request")
    return _entity(EntityKind.PULL_REQUEST, pr, payload) if pr else None


def from_issue(payload: Mapping[str, Any]) -> Entity | None:
    issue = payload.get("issue")
    if not issue:
        return None
    # issue_comment events on pull requests carry the PR as an issue
    kind = EntityKind.PULL_REQUEST if issue.get("pull_request") else EntityKind.ISSUE
    return _entity(kind, issue, payload)


EVENT_TRANSFORMERS: dict[str, Callable[[Mapping[str, Any]], Entity | None]] = {
    "pull_request": from_pull_request,
    "pull_request_target": from_pull_request,
    "issues": from_issue,
    "issue_comment": from_issue,
}


def load_event_entities(event_name: str | None, event_path: str | Path | None) -> list[Entity]:
    """Read the entity an Actions event is about.

    The entity is reported as not yet on the board; callers merge it with the
    board snapshot, which wins when the item already exists.

    Raises:
        ValueError: If the payload file cannot be read or parsed
    """
    if not event_name or not event_path:
        return []
    transformer = EVENT_TRANSFORMERS.get(event_name)
    if transformer is None:
        logger.debug("Event type carries no board items", event_name=event_name)
        return []

    try:
        with open(event_path, "r") as f:
            payload = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ValueError(f"Failed to load event payload from {event_path}: {e}") from e

    entity = transformer(payload)
    if entity is None:
        logger.debug("Event payload did not yield a usable item", event_name=event_name)
        return []
    logger.info("Loaded event item", event_name=event_name, entity_id=entity.id, label=entity.label)
    return [entity]
