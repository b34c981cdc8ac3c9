"""Rate-limited batch executor for accepted mutation intents."""

import asyncio
from collections.abc import Awaitable, Callable, Iterable

import structlog

from board_rules.client import BoardClient, MutationResult, MutationStatus
from board_rules.errors import ExecutionFailed
from board_rules.models import FIELD_ORDER, ExecutionResult, Field, MutationIntent, Outcome
from board_rules.ratelimit import TokenBucket
from board_rules.retry import RetryConfig, calculate_delay

logger = structlog.get_logger()

DEFAULT_BATCH_SIZE = 20


class BatchExecutor:
    """Applies intents through a board client under a shared rate budget.

    Dry-run is decided here and nowhere else: a dry run walks the same plan
    and stops right before the client call.
    """

    def __init__(
        self,
        client: BoardClient,
        limiter: TokenBucket,
        retry: RetryConfig | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        dry_run: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.client = client
        self.limiter = limiter
        self.retry = retry or RetryConfig()
        self.batch_size = batch_size
        self.dry_run = dry_run
        self._sleep = sleep

    @staticmethod
    def deduplicate(intents: Iterable[MutationIntent]) -> list[MutationIntent]:
        """Keep the last intent per ``(target_entity_id, field)``."""
        latest: dict[tuple[str, Field], MutationIntent] = {}
        for intent in intents:
            latest.pop(intent.key, None)
            latest[intent.key] = intent
        return list(latest.values())

    def plan(self, intents: Iterable[MutationIntent]) -> list[list[MutationIntent]]:
        """Group deduplicated intents into calls, field by field.

        Fields the client can batch are chunked by ``batch_size``; every other
        intent becomes its own call.
        """
        by_field: dict[Field, list[MutationIntent]] = {f: [] for f in FIELD_ORDER}
        for intent in self.deduplicate(intents):
            by_field[intent.field].append(intent)

        calls: list[list[MutationIntent]] = []
        for target, group in by_field.items():
            if not group:
                continue
            if self.client.supports_batch(target):
                calls.extend(group[i : i + self.batch_size] for i in range(0, len(group), self.batch_size))
            else:
                calls.extend([intent] for intent in group)
        return calls

    async def execute(
        self, intents: Iterable[MutationIntent], cancel: asyncio.Event | None = None
    ) -> list[ExecutionResult]:
        """Apply intents and report one result per deduplicated intent.

        Args:
            intents: Accepted intents, in rule evaluation order
            cancel: When set, no new calls are started; remaining intents are cancelled

        Returns:
            Results in execution order
        """
        results: list[ExecutionResult] = []
        for call in self.plan(intents):
            if cancel is not None and cancel.is_set():
                results.extend(self._record(ExecutionResult(intent, Outcome.CANCELLED)) for intent in call)
                continue
            if self.dry_run:
                results.extend(self._record(ExecutionResult(intent, Outcome.DRY_RUN)) for intent in call)
                continue
            results.extend(await self._submit(call, cancel))
        return results

    async def _call(self, call: list[MutationIntent]) -> list[MutationResult]:
        await self.limiter.acquire()
        if len(call) == 1 and not self.client.supports_batch(call[0].field):
            return [await self.client.apply_mutation(call[0])]
        responses = await self.client.batch_apply(call)
        if len(responses) != len(call):
            raise ExecutionFailed(f"Client returned {len(responses)} results for {len(call)} intents")
        return responses

    async def _submit(self, call: list[MutationIntent], cancel: asyncio.Event | None) -> list[ExecutionResult]:
        results: list[ExecutionResult] = []
        pending = call
        attempt = 0
        while pending:
            attempt += 1
            try:
                responses = await self._call(pending)
            except Exception as e:
                logger.exception("Board call failed", intents=len(pending), attempt=attempt)
                error = e if isinstance(e, ExecutionFailed) else ExecutionFailed(str(e), attempt)
                results.extend(
                    self._record(ExecutionResult(intent, Outcome.FAILED, attempt, error)) for intent in pending
                )
                break

            throttled: list[MutationResult] = []
            for response in responses:
                if response.status is MutationStatus.OK:
                    results.append(self._record(ExecutionResult(response.intent, Outcome.APPLIED, attempt)))
                elif response.status is MutationStatus.RATE_LIMITED and attempt < self.retry.max_attempts:
                    throttled.append(response)
                else:
                    if response.status is MutationStatus.RATE_LIMITED:
                        message = f"Rate limited; gave up after {attempt} attempts"
                    else:
                        message = response.error or "mutation failed"
                    error = ExecutionFailed(message, attempt)
                    results.append(self._record(ExecutionResult(response.intent, Outcome.FAILED, attempt, error)))

            pending = [response.intent for response in throttled]
            if not pending or self._cancelled(pending, attempt, cancel, results):
                break

            hints = [r.retry_after for r in throttled if r.retry_after is not None]
            delay = calculate_delay(attempt, self.retry, max(hints) if hints else None)
            logger.warning("Board API throttled, backing off", intents=len(pending), attempt=attempt, delay=delay)
            await self._sleep(delay)
            # cancellation may arrive during the backoff
            if self._cancelled(pending, attempt, cancel, results):
                break

        return results

    def _cancelled(
        self,
        pending: list[MutationIntent],
        attempt: int,
        cancel: asyncio.Event | None,
        results: list[ExecutionResult],
    ) -> bool:
        if cancel is None or not cancel.is_set():
            return False
        results.extend(self._record(ExecutionResult(intent, Outcome.CANCELLED, attempt)) for intent in pending)
        return True

    def _record(self, result: ExecutionResult) -> ExecutionResult:
        intent = result.intent
        log = logger.error if result.outcome is Outcome.FAILED else logger.info
        log(
            "Mutation executed",
            rule_name=intent.rule_name,
            action_name=intent.action_name,
            entity_id=intent.target_entity_id,
            outcome=result.outcome.value,
            change=intent.describe(),
            attempts=result.attempts,
            error=str(result.error) if result.error else None,
        )
        return result
