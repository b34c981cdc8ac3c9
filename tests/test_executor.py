"""Tests for the batch executor."""

import asyncio

import pytest

from board_rules.errors import ExecutionFailed
from board_rules.executor import BatchExecutor
from board_rules.models import Field, MutationIntent, Outcome
from board_rules.ratelimit import TokenBucket
from board_rules.retry import RetryConfig

from conftest import RecordingClient


def column(entity_id: str, to_value: str = "Done") -> MutationIntent:
    return MutationIntent(entity_id, Field.COLUMN, "Review", to_value, "set_column", "rule")


def make_executor(client, clock, rate: float = 100, burst: int = 10, **kwargs) -> BatchExecutor:
    limiter = TokenBucket(rate=rate, burst=burst, clock=clock, sleep=clock.sleep)
    return BatchExecutor(client, limiter, sleep=clock.sleep, **kwargs)


def test_deduplicate_keeps_last() -> None:
    """Test the last intent per entity and field wins."""
    first = column("I_1", "Review")
    other = column("I_2")
    last = column("I_1", "Done")
    assert BatchExecutor.deduplicate([first, other, last]) == [other, last]


def test_plan_orders_fields_and_chunks_batches(client, clock) -> None:
    """Test calls follow field order and batchable fields are chunked."""
    client.batch_fields = frozenset({Field.COLUMN})
    executor = make_executor(client, clock, batch_size=2)
    sprint = MutationIntent("I_9", Field.SPRINT, "S1", None, "remove_sprint")
    item = MutationIntent("I_8", Field.ITEM, False, True, "add_item")
    columns = [column(f"I_{n}") for n in range(5)]

    plan = executor.plan([sprint, *columns, item])

    assert [len(call) for call in plan] == [1, 2, 2, 1, 1]
    assert plan[0] == [item]
    assert plan[-1] == [sprint]


def test_batch_size_must_be_positive(client, clock) -> None:
    """Test a zero batch size is rejected."""
    with pytest.raises(ValueError):
        make_executor(client, clock, batch_size=0)


@pytest.mark.asyncio
async def test_execute_applies_intents(client, clock) -> None:
    """Test accepted intents are applied once each."""
    executor = make_executor(client, clock)
    results = await executor.execute([column("I_1"), column("I_2")])
    assert [r.outcome for r in results] == [Outcome.APPLIED, Outcome.APPLIED]
    assert [r.attempts for r in results] == [1, 1]
    assert len(client.calls) == 2


@pytest.mark.asyncio
async def test_dry_run_makes_no_calls(client, clock) -> None:
    """Test dry runs report the plan without touching the client or the budget."""
    executor = make_executor(client, clock, burst=2, dry_run=True)
    results = await executor.execute([column("I_1"), column("I_2"), column("I_3")])
    assert [r.outcome for r in results] == [Outcome.DRY_RUN] * 3
    assert client.calls == []
    assert executor.limiter.available == 2.0


@pytest.mark.asyncio
async def test_throttled_call_retried(client, clock) -> None:
    """Test a throttled mutation is retried after backoff and then succeeds."""
    client.throttle = {"I_1": 1}
    executor = make_executor(client, clock)

    [result] = await executor.execute([column("I_1")])

    assert result.outcome is Outcome.APPLIED
    assert result.attempts == 2
    assert clock.sleeps == [1.0]
    assert len(client.calls) == 2


@pytest.mark.asyncio
async def test_throttling_exhausts_retries(client, clock) -> None:
    """Test persistent throttling fails after max_attempts with exponential delays."""
    client.throttle = {"I_1": 100}
    executor = make_executor(client, clock, retry=RetryConfig(max_attempts=5))

    [result] = await executor.execute([column("I_1")])

    assert result.outcome is Outcome.FAILED
    assert result.attempts == 5
    assert isinstance(result.error, ExecutionFailed)
    assert "5 attempts" in str(result.error)
    assert clock.sleeps == [1.0, 2.0, 4.0, 8.0]
    assert len(client.calls) == 5


@pytest.mark.asyncio
async def test_batch_partial_failure(client, clock) -> None:
    """Test one failed intent in a batch does not fail its siblings."""
    client.batch_fields = frozenset({Field.COLUMN})
    client.fail = {"I_2"}
    executor = make_executor(client, clock)

    results = await executor.execute([column("I_1"), column("I_2"), column("I_3")])

    assert len(client.calls) == 1
    assert {r.intent.target_entity_id: r.outcome for r in results} == {
        "I_1": Outcome.APPLIED,
        "I_2": Outcome.FAILED,
        "I_3": Outcome.APPLIED,
    }
    failed = next(r for r in results if r.outcome is Outcome.FAILED)
    assert str(failed.error) == "boom"


@pytest.mark.asyncio
async def test_batch_retries_only_throttled_intents(client, clock) -> None:
    """Test a partly throttled batch resubmits just the throttled intents."""
    client.batch_fields = frozenset({Field.COLUMN})
    client.throttle = {"I_2": 1}
    executor = make_executor(client, clock)

    results = await executor.execute([column("I_1"), column("I_2")])

    assert [len(call) for call in client.calls] == [2, 1]
    assert client.calls[1][0].target_entity_id == "I_2"
    assert all(r.outcome is Outcome.APPLIED for r in results)


class ExplodingClient(RecordingClient):
    async def apply_mutation(self, intent: MutationIntent):
        self._record([intent])
        raise ConnectionError("network down")


@pytest.mark.asyncio
async def test_client_exception_fails_call(clock) -> None:
    """Test a client exception fails the call's intents and the run continues."""
    client = ExplodingClient(clock=clock)
    executor = make_executor(client, clock)

    results = await executor.execute([column("I_1"), column("I_2")])

    assert [r.outcome for r in results] == [Outcome.FAILED, Outcome.FAILED]
    assert "network down" in str(results[0].error)
    assert len(client.calls) == 2


@pytest.mark.asyncio
async def test_cancel_before_start(client, clock) -> None:
    """Test a set cancel event stops every call."""
    cancel = asyncio.Event()
    cancel.set()
    executor = make_executor(client, clock)

    results = await executor.execute([column("I_1"), column("I_2")], cancel)

    assert [r.outcome for r in results] == [Outcome.CANCELLED, Outcome.CANCELLED]
    assert client.calls == []


class CancellingClient(RecordingClient):
    def __init__(self, cancel: asyncio.Event, **kwargs) -> None:
        super().__init__(**kwargs)
        self.cancel = cancel

    async def apply_mutation(self, intent: MutationIntent):
        result = await super().apply_mutation(intent)
        self.cancel.set()
        return result


@pytest.mark.asyncio
async def test_cancel_during_run(clock) -> None:
    """Test the call in flight completes and later work is cancelled."""
    cancel = asyncio.Event()
    client = CancellingClient(cancel, throttle={"I_1": 1}, clock=clock)
    executor = make_executor(client, clock)

    results = await executor.execute([column("I_1"), column("I_2")], cancel)

    assert [(r.intent.target_entity_id, r.outcome) for r in results] == [
        ("I_1", Outcome.CANCELLED),
        ("I_2", Outcome.CANCELLED),
    ]
    assert len(client.calls) == 1
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_rate_budget_suspends_calls(client, clock) -> None:
    """Test calls beyond the burst wait for the bucket rather than failing."""
    executor = make_executor(client, clock, rate=1, burst=2)

    results = await executor.execute([column("I_1"), column("I_2"), column("I_3")])

    assert all(r.outcome is Outcome.APPLIED for r in results)
    assert client.call_times == [0.0, 0.0, 1.0]


@pytest.mark.asyncio
async def test_cancel_during_backoff_stops_retry(client, clock) -> None:
    """Test cancellation that arrives while backing off prevents the retry call."""
    cancel = asyncio.Event()
    client.throttle = {"I_1": 1}

    async def sleep(delay: float) -> None:
        await clock.sleep(delay)
        cancel.set()

    limiter = TokenBucket(rate=100, burst=10, clock=clock, sleep=clock.sleep)
    executor = BatchExecutor(client, limiter, sleep=sleep)

    [result] = await executor.execute([column("I_1")], cancel)

    assert result.outcome is Outcome.CANCELLED
    assert result.attempts == 1
    assert clock.sleeps == [1.0]
    assert len(client.calls) == 1
