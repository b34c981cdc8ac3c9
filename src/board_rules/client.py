"""Board API client interface."""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from board_rules.models import Entity, Field, MutationIntent
from board_rules.ratelimit import RateLimitStatus


class MutationStatus(str, Enum):
    """Status of a single mutation as reported by the board API."""

    OK = "ok"
    RATE_LIMITED = "rate_limited"
    ERROR = "error"


@dataclass(frozen=True)
class MutationResult:
    """Board API response for one intent."""

    intent: MutationIntent
    status: MutationStatus
    error: str | None = None
    retry_after: float | None = None

    @classmethod
    def ok(cls, intent: MutationIntent) -> "MutationResult":
        return cls(intent, MutationStatus.OK)

    @classmethod
    def rate_limited(cls, intent: MutationIntent, retry_after: float | None = None) -> "MutationResult":
        return cls(intent, MutationStatus.RATE_LIMITED, "rate limited", retry_after)

    @classmethod
    def failed(cls, intent: MutationIntent, error: str) -> "MutationResult":
        return cls(intent, MutationStatus.ERROR, error)


class BoardClient(ABC):
    """Abstract base class for board API clients."""

    @abstractmethod
    async def apply_mutation(self, intent: MutationIntent) -> MutationResult:
        """Apply a single intent."""
        pass

    async def batch_apply(self, intents: list[MutationIntent]) -> list[MutationResult]:
        """Apply several intents in one call, returning results in input order.

        The default issues one call per intent.
        """
        return [await self.apply_mutation(intent) for intent in intents]

    def supports_batch(self, field: Field) -> bool:
        """Whether ``batch_apply`` sends intents for ``field`` as one request."""
        return False


class EntitySource(ABC):
    """Supplies the current board snapshot."""

    @abstractmethod
    async def fetch_entities(self) -> list[Entity]:
        """Fetch every entity on the board, including linked issues."""
        pass

    async def current_sprint(self) -> str | None:
        """Identifier of the active sprint, if the board has one."""
        return None

    async def rate_limit(self) -> RateLimitStatus | None:
        """Remaining API budget, or None when it cannot be determined."""
        return None

    async def fetch_recent(
        self, repositories: Sequence[str], users: Sequence[str], since: datetime
    ) -> list[Entity]:
        """Fetch pull requests and issues active since ``since`` that may not be on the board.

        Args:
            repositories: Repositories to search, ``owner/name`` or a bare name
            users: Logins whose authored or assigned items are searched
            since: Lower bound on activity

        Returns:
            Entities marked ``on_board=False``
        """
        return []
