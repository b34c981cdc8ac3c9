"""Run orchestration: process, validate, execute and summarize."""

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from board_rules.actions import ActionRegistry, default_registry
from board_rules.client import BoardClient, EntitySource
from board_rules.config import Settings
from board_rules.executor import BatchExecutor
from board_rules.loader import RulesConfig
from board_rules.models import Entity, ExecutionResult, Outcome, Verdict
from board_rules.processor import ProcessingReport, RuleProcessor
from board_rules.ratelimit import TokenBucket, should_proceed
from board_rules.transitions import TransitionValidator

logger = structlog.get_logger()


@dataclass
class RunSummary:
    """Audit record of one run."""

    report: ProcessingReport
    results: list[ExecutionResult] = field(default_factory=list)
    dry_run: bool = False
    skipped: str | None = None

    def _results(self, outcome: Outcome) -> list[ExecutionResult]:
        return [r for r in self.results if r.outcome is outcome]

    @property
    def applied(self) -> list[ExecutionResult]:
        return self._results(Outcome.APPLIED)

    @property
    def planned(self) -> list[ExecutionResult]:
        """Mutations a dry run would have applied."""
        return self._results(Outcome.DRY_RUN)

    @property
    def failed(self) -> list[ExecutionResult]:
        return self._results(Outcome.FAILED)

    @property
    def cancelled(self) -> list[ExecutionResult]:
        return self._results(Outcome.CANCELLED)

    @property
    def rejected(self) -> list[Verdict]:
        return self.report.rejected

    @property
    def noops(self) -> list[Verdict]:
        return self.report.noops

    @property
    def superseded(self) -> list[Verdict]:
        return self.report.superseded

    def counts(self) -> dict[str, int]:
        return {
            "entities": len(self.report.evaluations),
            "intents": len(self.report.verdicts),
            "applied": len(self.applied),
            "dry_run": len(self.planned),
            "rejected": len(self.rejected),
            "noop": len(self.noops),
            "superseded": len(self.superseded),
            "failed": len(self.failed),
            "cancelled": len(self.cancelled),
            "handler_errors": len(self.report.errors),
            "invalid_rules": len(self.report.invalid_rules),
        }

    def per_entity(self) -> dict[str, dict[str, Any]]:
        """Detail keyed by entity id, for entities that matched a rule or produced an intent."""
        detail: dict[str, dict[str, Any]] = {}
        for evaluation in self.report.evaluations:
            if not (evaluation.matched_rules or evaluation.intents or evaluation.errors):
                continue
            detail[evaluation.entity.id] = {
                "label": evaluation.entity.label,
                "matched_rules": list(evaluation.matched_rules),
                "executed": [],
                "rejected": [],
                "noop": [],
                "superseded": [],
                "errors": [str(e) for e in evaluation.errors],
            }
        for verdict in self.report.verdicts:
            entry = detail.get(verdict.intent.target_entity_id)
            if entry is None:
                continue
            if verdict.outcome is Outcome.REJECTED:
                entry["rejected"].append({"change": verdict.intent.describe(), "reason": verdict.reason})
            elif verdict.outcome is Outcome.NOOP:
                entry["noop"].append(verdict.intent.describe())
            elif verdict.outcome is Outcome.SUPERSEDED:
                entry["superseded"].append(
                    {"change": verdict.intent.describe(), "rule_name": verdict.intent.rule_name}
                )
        for result in self.results:
            entry = detail.get(result.intent.target_entity_id)
            if entry is None:
                continue
            entry["executed"].append(
                {
                    "change": result.intent.describe(),
                    "outcome": result.outcome.value,
                    "attempts": result.attempts,
                    "error": str(result.error) if result.error else None,
                }
            )
        return detail

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "skipped": self.skipped,
            "counts": self.counts(),
            "invalid_rules": [{"name": r.name, "error": str(r.error)} for r in self.report.invalid_rules],
            "entities": self.per_entity(),
        }


def merge_entities(snapshot: Iterable[Entity], extra: Iterable[Entity]) -> list[Entity]:
    """Add entities from ``extra`` whose ids are not already in ``snapshot``."""
    merged = {entity.id: entity for entity in snapshot}
    for entity in extra:
        merged.setdefault(entity.id, entity)
    return list(merged.values())


async def collect_entities(
    source: EntitySource,
    settings: Settings,
    monitored_users: Sequence[str] = (),
    extra: Iterable[Entity] = (),
    now: datetime | None = None,
) -> list[Entity] | None:
    """Gather the run's entities: the board, then ``extra``, then recent off-board items.

    Recent items are searched only when repositories or monitored users are
    configured. Earlier sources win when ids collide.

    Returns:
        Entities, or None when the API budget is below ``settings.min_remaining``
    """
    if settings.min_remaining:
        status = await source.rate_limit()
        if not should_proceed(status, settings.min_remaining):
            return None

    entities = merge_entities(await source.fetch_entities(), extra)
    if settings.repositories or monitored_users:
        since = (now or datetime.now(timezone.utc)) - timedelta(hours=settings.recent_hours)
        recent = await source.fetch_recent(settings.repositories, list(monitored_users), since)
        entities = merge_entities(entities, recent)
    return entities


class BoardAutomation:
    """Runs a rule set against a board snapshot."""

    def __init__(
        self,
        rules: RulesConfig,
        client: BoardClient,
        settings: Settings | None = None,
        registry: ActionRegistry | None = None,
        limiter: TokenBucket | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.rules = rules
        self.client = client
        self.settings = settings or Settings()
        self.registry = registry or default_registry()
        self.validator = TransitionValidator(rules.transitions)
        self.limiter = limiter or TokenBucket(self.settings.requests_per_second, self.settings.burst, sleep=sleep)
        self.executor = BatchExecutor(
            client,
            self.limiter,
            retry=self.settings.retry,
            batch_size=self.settings.batch_size,
            dry_run=self.settings.dry_run,
            sleep=sleep,
        )

    def process(self, entities: Iterable[Entity], current_sprint: str | None = None) -> ProcessingReport:
        """Evaluate and validate without executing anything."""
        processor = RuleProcessor(
            self.rules.rules,
            registry=self.registry,
            validator=self.validator,
            current_sprint=current_sprint,
            monitored_users=self.rules.monitored_users,
        )
        return processor.process(entities)

    async def run(
        self,
        entities: Iterable[Entity],
        cancel: asyncio.Event | None = None,
        current_sprint: str | None = None,
    ) -> RunSummary:
        """Process entities and execute accepted intents.

        Args:
            entities: Board snapshot
            cancel: Run-level cancellation signal
            current_sprint: Active sprint for ``set_sprint``

        Returns:
            Run summary
        """
        report = self.process(entities, current_sprint)
        results = await self.executor.execute(report.accepted, cancel)
        summary = RunSummary(report=report, results=results, dry_run=self.settings.dry_run)
        logger.info("Run complete", **summary.counts())
        return summary
