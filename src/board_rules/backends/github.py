"""GitHub Projects (v2) board client using PyGithub's GraphQL requester."""

import asyncio
from collections.abc import Callable, Sequence
from datetime import date, datetime, timedelta, timezone
from typing import Any

import structlog
from github import Auth, Github
from github.GithubException import GithubException, RateLimitExceededException

from board_rules.client import BoardClient, EntitySource, MutationResult
from board_rules.errors import BoardRulesError
from board_rules.models import Entity, EntityKind, Field, MutationIntent
from board_rules.ratelimit import RateLimitStatus

logger = structlog.get_logger()

PAGE_SIZE = 100
SEARCH_PAGE_SIZE = 50

PROJECT_QUERY = """
query($owner: String!, $number: Int!) {
  %(owner_type)s(login: $owner) {
    projectV2(number: $number) {
      id
      fields(first: 50) {
        nodes {
          ... on ProjectV2SingleSelectField { id name options { id name } }
          ... on ProjectV2IterationField {
            id
            name
            configuration { iterations { id title startDate duration } }
          }
        }
      }
    }
  }
}
"""

ITEMS_QUERY = """
query($projectId: ID!, $cursor: String) {
  node(id: $projectId) {
    ... on ProjectV2 {
      items(first: %(page_size)d, after: $cursor) {
        pageInfo { hasNextPage endCursor }
        nodes {
          id
          fieldValues(first: 20) {
            nodes {
              ... on ProjectV2ItemFieldSingleSelectValue {
                name
                field { ... on ProjectV2FieldCommon { name } }
              }
              ... on ProjectV2ItemFieldIterationValue {
                iterationId
                field { ... on ProjectV2FieldCommon { name } }
              }
            }
          }
          content {
            __typename
            ... on PullRequest {
              id number state merged
              author { login }
              repository { nameWithOwner }
              assignees(first: 20) { nodes { login } }
              closingIssuesReferences(first: 10) { nodes { id } }
            }
            ... on Issue {
              id number state
              author { login }
              repository { nameWithOwner }
              assignees(first: 20) { nodes { login } }
            }
          }
        }
      }
    }
  }
}
"""

ADD_ITEM_MUTATION = """
mutation($projectId: ID!, $contentId: ID!) {
  addProjectV2ItemById(input: {projectId: $projectId, contentId: $contentId}) { item { id } }
}
"""

RATE_LIMIT_QUERY = """
query { rateLimit { remaining limit resetAt cost } }
"""

SEARCH_QUERY = """
query($searchQuery: String!) {
  search(query: $searchQuery, type: ISSUE, first: %(page_size)d) {
    nodes {
      __typename
      ... on PullRequest {
        id number state merged
        author { login }
        repository { nameWithOwner }
        assignees(first: 20) { nodes { login } }
      }
      ... on Issue {
        id number state
        author { login }
        repository { nameWithOwner }
        assignees(first: 20) { nodes { login } }
      }
    }
  }
}
"""

USER_QUERY = """
query($login: String!) { user(login: $login) { id } }
"""

ADD_ASSIGNEES_MUTATION = """
mutation($assignableId: ID!, $assigneeIds: [ID!]!) {
  addAssigneesToAssignable(input: {assignableId: $assignableId, assigneeIds: $assigneeIds}) { clientMutationId }
}
"""

REMOVE_ASSIGNEES_MUTATION = """
mutation($assignableId: ID!, $assigneeIds: [ID!]!) {
  removeAssigneesFromAssignable(input: {assignableId: $assignableId, assigneeIds: $assigneeIds}) { clientMutationId }
}
"""


class GraphQLError(BoardRulesError):
    """Raised when a GraphQL response carries errors."""

    code = "GRAPHQL_ERROR"

    def __init__(self, errors: list[dict[str, Any]]) -> None:
        super().__init__("; ".join(str(error.get("message", error)) for error in errors))
        self.errors = errors

    @property
    def rate_limited(self) -> bool:
        return any(error.get("type") == "RATE_LIMITED" for error in self.errors)

    def failed_aliases(self) -> set[str]:
        """Top-level aliases named in error paths."""
        return {str(error["path"][0]) for error in self.errors if error.get("path")}


def _retry_after(e: GithubException) -> float | None:
    headers = e.headers or {}
    value = headers.get("retry-after") or headers.get("Retry-After")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


def _content_entity(content: dict[str, Any], kind: EntityKind, **fields: Any) -> Entity:
    """Build an entity from a pull request or issue node."""
    return Entity(
        id=content["id"],
        kind=kind,
        assignees=frozenset(a["login"] for a in (content.get("assignees") or {}).get("nodes", [])),
        closed=content.get("state") in ("CLOSED", "MERGED"),
        merged=bool(content.get("merged")),
        number=content.get("number"),
        repository=(content.get("repository") or {}).get("nameWithOwner"),
        author=(content.get("author") or {}).get("login"),
        **fields,
    )


class GitHubProjectClient(BoardClient, EntitySource):
    """Board client and entity source for one GitHub project.

    Entities are keyed by their content node id (the pull request or issue),
    so event payloads and board items refer to the same entity.
    """

    def __init__(
        self,
        owner: str,
        project_number: int,
        token: str | None = None,
        owner_type: str = "organization",
        status_field: str = "Status",
        sprint_field: str = "Sprint",
    ) -> None:
        """Initialize GitHub project client.

        Args:
            owner: Organization or user owning the project
            project_number: Project number from the project URL
            token: GitHub token with project scope
            owner_type: ``organization`` or ``user``
            status_field: Single select field holding the column
            sprint_field: Iteration field holding the sprint
        """
        if not token:
            raise ValueError("GitHub token required")
        if owner_type not in ("organization", "user"):
            raise ValueError(f"Unknown owner type: {owner_type}")

        self.owner = owner
        self.project_number = project_number
        self.owner_type = owner_type
        self.status_field = status_field
        self.sprint_field = sprint_field

        logger.debug("Initializing GitHub project client", owner=owner, project=project_number)
        self.client = Github(auth=Auth.Token(token))

        self.project_id: str | None = None
        self._status_field_id: str | None = None
        self._status_options: dict[str, str] = {}
        self._sprint_field_id: str | None = None
        self._iterations: list[dict[str, Any]] = []
        self._item_ids: dict[str, str] = {}
        self._user_ids: dict[str, str] = {}

    def graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        """Run a GraphQL request and return its ``data``.

        Raises:
            GraphQLError: If the response carries errors
            GithubException: On HTTP failures, including rate limiting
        """
        requester = self.client._Github__requester
        _, response = requester.requestJsonAndCheck("POST", "/graphql", input={"query": query, "variables": variables})
        response = response or {}
        if response.get("errors"):
            raise GraphQLError(response["errors"])
        return response.get("data") or {}

    def load_project(self) -> None:
        """Resolve the project id and its Status and Sprint fields."""
        if self.project_id is not None:
            return
        data = self.graphql(
            PROJECT_QUERY % {"owner_type": self.owner_type},
            {"owner": self.owner, "number": self.project_number},
        )
        project = (data.get(self.owner_type) or {}).get("projectV2")
        if not project:
            raise ValueError(f"Project {self.owner}/{self.project_number} not found")

        self.project_id = project["id"]
        for node in project["fields"]["nodes"]:
            if not node:
                continue
            if node.get("name") == self.status_field and "options" in node:
                self._status_field_id = node["id"]
                self._status_options = {option["name"]: option["id"] for option in node["options"]}
            elif node.get("name") == self.sprint_field and "configuration" in node:
                self._sprint_field_id = node["id"]
                self._iterations = list(node["configuration"]["iterations"])
        logger.info(
            "GitHub project loaded",
            project_id=self.project_id,
            columns=list(self._status_options),
            iterations=len(self._iterations),
        )

    def current_iteration(self, today: date | None = None) -> str | None:
        """Id of the iteration whose date range contains ``today``."""
        today = today or date.today()
        for iteration in self._iterations:
            start = date.fromisoformat(iteration["startDate"])
            if start <= today < start + timedelta(days=int(iteration["duration"])):
                return iteration["id"]
        return None

    async def current_sprint(self) -> str | None:
        await asyncio.to_thread(self.load_project)
        return self.current_iteration()

    def _field_values(self, item: dict[str, Any]) -> tuple[str | None, str | None]:
        column = sprint = None
        for value in item.get("fieldValues", {}).get("nodes", []):
            name = ((value or {}).get("field") or {}).get("name")
            if name == self.status_field:
                column = value.get("name")
            elif name == self.sprint_field:
                sprint = value.get("iterationId")
        return column, sprint

    def fetch_items(self) -> list[dict[str, Any]]:
        """Fetch every project item, following pagination."""
        self.load_project()
        items: list[dict[str, Any]] = []
        cursor = None
        while True:
            data = self.graphql(ITEMS_QUERY % {"page_size": PAGE_SIZE}, {"projectId": self.project_id, "cursor": cursor})
            page = data["node"]["items"]
            items.extend(node for node in page["nodes"] if node)
            if not page["pageInfo"]["hasNextPage"]:
                break
            cursor = page["pageInfo"]["endCursor"]
        logger.debug("Fetched project items", count=len(items))
        return items

    def build_entities(self, items: list[dict[str, Any]]) -> list[Entity]:
        """Convert project items into entities.

        Issues closed by a pull request on the board become ``LinkedIssue``
        entities pointing at that pull request.
        """
        closing: dict[str, str] = {}
        for item in items:
            content = item.get("content") or {}
            if content.get("__typename") == "PullRequest":
                for issue in (content.get("closingIssuesReferences") or {}).get("nodes", []):
                    closing.setdefault(issue["id"], content["id"])

        entities = []
        for item in items:
            content = item.get("content") or {}
            typename = content.get("__typename")
            if typename not in ("PullRequest", "Issue"):
                continue
            self._item_ids[content["id"]] = item["id"]
            column, sprint = self._field_values(item)

            kind = EntityKind.PULL_REQUEST
            linked_to = None
            if typename == "Issue":
                linked_to = closing.get(content["id"])
                kind = EntityKind.LINKED_ISSUE if linked_to else EntityKind.ISSUE

            entities.append(_content_entity(content, kind, column=column, sprint=sprint, linked_to=linked_to))
        return entities

    async def fetch_entities(self) -> list[Entity]:
        items = await asyncio.to_thread(self.fetch_items)
        entities = self.build_entities(items)
        logger.info("Fetched board entities", count=len(entities))
        return entities

    def rate_limit_status(self) -> RateLimitStatus | None:
        """Query the remaining GraphQL budget.

        A failed query is logged and reported as an unknown budget.
        """
        try:
            data = self.graphql(RATE_LIMIT_QUERY, {})
        except (GithubException, GraphQLError) as e:
            logger.warning("Rate limit query failed", error=str(e))
            return None
        limit = data.get("rateLimit") or {}
        if limit.get("remaining") is None:
            return None
        return RateLimitStatus(
            remaining=int(limit["remaining"]),
            limit=int(limit.get("limit") or 0),
            reset_at=limit.get("resetAt"),
        )

    async def rate_limit(self) -> RateLimitStatus | None:
        return await asyncio.to_thread(self.rate_limit_status)

    def search_queries(self, repositories: Sequence[str], users: Sequence[str], since: datetime) -> list[str]:
        """Search strings for recent items: per repository, then per user as author and assignee."""
        stamp = since.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        queries = []
        for repository in repositories:
            name = repository if "/" in repository else f"{self.owner}/{repository}"
            queries.append(f"repo:{name} updated:>{stamp}")
        for user in users:
            queries.append(f"author:{user} updated:>{stamp}")
            queries.append(f"assignee:{user} created:>{stamp}")
        return queries

    def search_recent(self, repositories: Sequence[str], users: Sequence[str], since: datetime) -> list[dict[str, Any]]:
        """Run every recent-item search, keeping the first node seen per id."""
        found: dict[str, dict[str, Any]] = {}
        for query in self.search_queries(repositories, users, since):
            data = self.graphql(SEARCH_QUERY % {"page_size": SEARCH_PAGE_SIZE}, {"searchQuery": query})
            for node in (data.get("search") or {}).get("nodes", []):
                if node and node.get("__typename") in ("PullRequest", "Issue"):
                    found.setdefault(node["id"], node)
        logger.debug("Searched recent items", count=len(found))
        return list(found.values())

    async def fetch_recent(
        self, repositories: Sequence[str], users: Sequence[str], since: datetime
    ) -> list[Entity]:
        nodes = await asyncio.to_thread(self.search_recent, repositories, users, since)
        entities = []
        for node in nodes:
            kind = EntityKind.PULL_REQUEST if node["__typename"] == "PullRequest" else EntityKind.ISSUE
            entities.append(_content_entity(node, kind, on_board=False))
        logger.info("Fetched recent items", count=len(entities))
        return entities


    def supports_batch(self, field: Field) -> bool:
        return field in (Field.COLUMN, Field.SPRINT)

    def _field_mutation(self, alias: str, intent: MutationIntent) -> tuple[str, dict[str, Any]]:
        """Build one aliased field mutation and its variables."""
        item_id = self._item_ids.get(intent.target_entity_id)
        if item_id is None:
            raise ValueError(f"{intent.target_entity_id} is not on the board")
        if intent.field is Field.COLUMN:
            field_id = self._status_field_id
            value = None
            if intent.to_value is not None:
                option = self._status_options.get(intent.to_value)
                if option is None:
                    raise ValueError(f"Unknown column: {intent.to_value}")
                value = {"singleSelectOptionId": option}
        elif intent.field is Field.SPRINT:
            field_id = self._sprint_field_id
            value = {"iterationId": intent.to_value} if intent.to_value is not None else None
        else:
            raise ValueError(f"Field {intent.field.value} is not a project field")
        if field_id is None:
            raise ValueError(f"Project has no field for {intent.field.value}")

        variables = {f"{alias}_item": item_id, f"{alias}_field": field_id}
        target = f"projectId: $projectId, itemId: ${alias}_item, fieldId: ${alias}_field"
        if value is None:
            return f"{alias}: clearProjectV2ItemFieldValue(input: {{{target}}}) {{ clientMutationId }}", variables
        variables[f"{alias}_value"] = value
        target = f"{target}, value: ${alias}_value"
        return f"{alias}: updateProjectV2ItemFieldValue(input: {{{target}}}) {{ clientMutationId }}", variables

    def _apply_fields(self, intents: list[MutationIntent]) -> list[MutationResult]:
        """Send field updates as one aliased mutation document."""
        self.load_project()
        bodies = []
        declarations = ["$projectId: ID!"]
        variables: dict[str, Any] = {"projectId": self.project_id}
        results: dict[int, MutationResult] = {}
        for index, intent in enumerate(intents):
            alias = f"m{index}"
            try:
                body, extra = self._field_mutation(alias, intent)
            except ValueError as e:
                results[index] = MutationResult.failed(intent, str(e))
                continue
            bodies.append(body)
            for name, value in extra.items():
                kind = "ProjectV2FieldValue!" if name.endswith("_value") else "ID!"
                declarations.append(f"${name}: {kind}")
            variables.update(extra)

        if bodies:
            document = f"mutation({', '.join(declarations)}) {{\n  " + "\n  ".join(bodies) + "\n}"
            try:
                self.graphql(document, variables)
            except GraphQLError as e:
                failed = e.failed_aliases()
                for index, intent in enumerate(intents):
                    if index in results:
                        continue
                    if e.rate_limited:
                        results[index] = MutationResult.rate_limited(intent)
                    elif not failed or f"m{index}" in failed:
                        results[index] = MutationResult.failed(intent, str(e))
        return [results.get(index, MutationResult.ok(intent)) for index, intent in enumerate(intents)]

    def _user_id(self, login: str) -> str:
        if login not in self._user_ids:
            user = self.graphql(USER_QUERY, {"login": login}).get("user")
            if not user:
                raise ValueError(f"Unknown user: {login}")
            self._user_ids[login] = user["id"]
        return self._user_ids[login]

    def _apply_one(self, intent: MutationIntent) -> MutationResult:
        self.load_project()
        if intent.field is Field.ITEM:
            data = self.graphql(ADD_ITEM_MUTATION, {"projectId": self.project_id, "contentId": intent.target_entity_id})
            self._item_ids[intent.target_entity_id] = data["addProjectV2ItemById"]["item"]["id"]
            return MutationResult.ok(intent)
        if intent.field is Field.ASSIGNEES:
            before = frozenset(intent.from_value or ())
            after = frozenset(intent.to_value or ())
            changes = ((ADD_ASSIGNEES_MUTATION, after - before), (REMOVE_ASSIGNEES_MUTATION, before - after))
            for mutation, logins in changes:
                if logins:
                    ids = [self._user_id(login) for login in sorted(logins)]
                    self.graphql(mutation, {"assignableId": intent.target_entity_id, "assigneeIds": ids})
            return MutationResult.ok(intent)
        return self._apply_fields([intent])[0]

    def _guarded(self, intents: list[MutationIntent], call: Callable[[], list[MutationResult]]) -> list[MutationResult]:
        try:
            return call()
        except RateLimitExceededException as e:
            logger.warning("GitHub rate limit reached", intents=len(intents))
            return [MutationResult.rate_limited(intent, _retry_after(e)) for intent in intents]
        except GraphQLError as e:
            if e.rate_limited:
                return [MutationResult.rate_limited(intent) for intent in intents]
            return [MutationResult.failed(intent, str(e)) for intent in intents]
        except (GithubException, ValueError, KeyError) as e:
            logger.error("GitHub mutation failed", intents=len(intents), error=str(e))
            return [MutationResult.failed(intent, str(e)) for intent in intents]

    async def apply_mutation(self, intent: MutationIntent) -> MutationResult:
        logger.debug("Applying mutation", entity_id=intent.target_entity_id, change=intent.describe())
        results = await asyncio.to_thread(self._guarded, [intent], lambda: [self._apply_one(intent)])
        return results[0]

    async def batch_apply(self, intents: list[MutationIntent]) -> list[MutationResult]:
        if not all(self.supports_batch(intent.field) for intent in intents):
            return [await self.apply_mutation(intent) for intent in intents]
        logger.debug("Applying mutation batch", intents=len(intents))
        return await asyncio.to_thread(self._guarded, intents, lambda: self._apply_fields(intents))
