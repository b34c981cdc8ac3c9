"""Shared fixtures for board-rules tests."""

from collections.abc import Iterable

import pytest

from board_rules.client import BoardClient, MutationResult
from board_rules.models import Field, MutationIntent


class FakeClock:
    """Manual clock whose sleep advances time instead of waiting."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


class RecordingClient(BoardClient):
    """Board client that records calls and answers from a script."""

    def __init__(
        self,
        batch_fields: Iterable[Field] = (),
        throttle: dict[str, int] | None = None,
        fail: Iterable[str] = (),
        clock: FakeClock | None = None,
    ) -> None:
        self.batch_fields = frozenset(batch_fields)
        self.throttle = dict(throttle or {})
        self.fail = set(fail)
        self.clock = clock
        self.calls: list[list[MutationIntent]] = []
        self.call_times: list[float] = []

    def _record(self, intents: list[MutationIntent]) -> None:
        self.calls.append(intents)
        if self.clock is not None:
            self.call_times.append(self.clock())

    def _respond(self, intent: MutationIntent) -> MutationResult:
        remaining = self.throttle.get(intent.target_entity_id, 0)
        if remaining:
            self.throttle[intent.target_entity_id] = remaining - 1
            return MutationResult.rate_limited(intent)
        if intent.target_entity_id in self.fail:
            return MutationResult.failed(intent, "boom")
        return MutationResult.ok(intent)

    async def apply_mutation(self, intent: MutationIntent) -> MutationResult:
        self._record([intent])
        return self._respond(intent)

    async def batch_apply(self, intents: list[MutationIntent]) -> list[MutationResult]:
        self._record(list(intents))
        return [self._respond(intent) for intent in intents]

    def supports_batch(self, field: Field) -> bool:
        return field in self.batch_fields

    @property
    def intents(self) -> list[MutationIntent]:
        return [intent for call in self.calls for intent in call]


@pytest.fixture
def clock() -> FakeClock:
    """Create a manual clock."""
    return FakeClock()


@pytest.fixture
def client(clock: FakeClock) -> RecordingClient:
    """Create a recording board client tied to the manual clock."""
    return RecordingClient(clock=clock)
