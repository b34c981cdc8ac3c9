"""CLI for board-rules."""

import asyncio
import json
import os
import signal
import sys
from typing import Annotated, Literal

import structlog
from cyclopts import App, Parameter

from board_rules.backends import GitHubProjectClient
from board_rules.config import Settings, load_settings
from board_rules.config_commands import config_app
from board_rules.engine import BoardAutomation, RunSummary, collect_entities
from board_rules.events import load_event_entities
from board_rules.loader import RulesConfig, load_rules
from board_rules.processor import ProcessingReport
from board_rules.rules_commands import rules_app

logger = structlog.get_logger()

app = App(
    help="board-rules - Rule-driven GitHub project board automation",
)

app.command(rules_app)
app.command(config_app)


def configure_logging(log_level: str) -> None:
    """Configure structlog with the specified log level, writing to stderr."""
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(min_level=log_level.lower()),
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
    )


def get_client(settings: Settings) -> GitHubProjectClient:
    """Get the configured GitHub project client."""
    if not settings.project_owner or not settings.project_number:
        raise ValueError(
            "GitHub project not configured. Set it using:\n"
            "  board-rules config set github.project_url https://github.com/orgs/<org>/projects/<number>\n"
            "or export PROJECT_URL"
        )
    if not settings.github_token:
        raise ValueError(
            "GitHub token not configured. Export GITHUB_TOKEN or run:\n"
            "  board-rules config set github.token <token>"
        )
    return GitHubProjectClient(
        owner=settings.project_owner,
        project_number=settings.project_number,
        token=settings.github_token,
        owner_type=settings.project_owner_type,
    )


def load_configured_rules(settings: Settings) -> RulesConfig:
    """Load the rules file named by the settings, or discover it."""
    fallback_users = [settings.github_author] if settings.github_author else None
    return load_rules(settings.rules_file, monitored_users=fallback_users)


async def run_automation(
    settings: Settings,
    rules: RulesConfig,
    event_name: str | None = None,
    event_path: str | None = None,
) -> RunSummary:
    """Fetch the board, run the rules and execute accepted mutations."""
    client = get_client(settings)
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.set)
        loop.add_signal_handler(signal.SIGTERM, cancel.set)
    except NotImplementedError:
        logger.debug("Signal handlers unavailable; cancellation disabled")

    events = load_event_entities(event_name, event_path)
    entities = await collect_entities(client, settings, rules.monitored_users, events)
    if entities is None:
        logger.warning("Skipping run: rate limit budget too low", min_remaining=settings.min_remaining)
        report = ProcessingReport(invalid_rules=rules.rules.invalid)
        return RunSummary(report=report, dry_run=settings.dry_run, skipped="rate_limit")
    current_sprint = await client.current_sprint()

    automation = BoardAutomation(rules, client, settings)
    return await automation.run(entities, cancel=cancel, current_sprint=current_sprint)


def print_summary(summary: RunSummary) -> None:
    """Print a human readable run summary."""
    counts = summary.counts()
    mode = " (dry run)" if summary.dry_run else ""
    if summary.skipped:
        print(f"Run skipped ({summary.skipped})")
        return
    print(f"Processed {counts['entities']} entity(ies){mode}")
    print(
        f"  applied: {counts['applied']}  dry-run: {counts['dry_run']}  rejected: {counts['rejected']}  "
        f"no-op: {counts['noop']}  superseded: {counts['superseded']}  "
        f"failed: {counts['failed']}  cancelled: {counts['cancelled']}"
    )
    for invalid in summary.report.invalid_rules:
        print(f"  invalid rule {invalid.name}: {invalid.error}")

    for detail in summary.per_entity().values():
        print(f"\n{detail['label']}")
        if detail["matched_rules"]:
            print(f"  rules: {', '.join(detail['matched_rules'])}")
        for executed in detail["executed"]:
            error = f" ({executed['error']})" if executed["error"] else ""
            print(f"  {executed['outcome']}: {executed['change']}{error}")
        for rejected in detail["rejected"]:
            print(f"  rejected: {rejected['change']} ({rejected['reason']})")
        for change in detail["noop"]:
            print(f"  no-op: {change}")
        for superseded in detail["superseded"]:
            print(f"  superseded: {superseded['change']} (rule {superseded['rule_name']})")
        for error in detail["errors"]:
            print(f"  error: {error}")


@app.command
def run(
    dry_run: bool = False,
    event_name: str | None = None,
    event_path: str | None = None,
    rules_file: str | None = None,
    json_output: bool = False,
) -> None:
    """Run the board rules once.

    Args:
        dry_run: Evaluate and validate, but do not mutate the board
        event_name: GitHub Actions event name (defaults to GITHUB_EVENT_NAME)
        event_path: Path to the event payload (defaults to GITHUB_EVENT_PATH)
        rules_file: Rules file (defaults to CONFIG_FILE or config/rules.yml)
        json_output: Print the summary as JSON
    """
    settings = load_settings(dry_run=True if dry_run else None, rules_file=rules_file)
    rules = load_configured_rules(settings)

    summary = asyncio.run(
        run_automation(
            settings,
            rules,
            event_name=event_name or os.environ.get("GITHUB_EVENT_NAME"),
            event_path=event_path or os.environ.get("GITHUB_EVENT_PATH"),
        )
    )

    if json_output:
        print(json.dumps(summary.to_dict(), indent=2))
    else:
        print_summary(summary)

    if summary.failed:
        raise SystemExit(1)


@app.command
def validate(rules_file: str | None = None) -> None:
    """Validate a rules file without touching the board."""
    settings = load_settings(rules_file=rules_file)
    rules = load_configured_rules(settings)

    print(f"Rules file: {rules.source}")
    print(f"Valid rules: {len(rules.rules)}")
    print(f"Transitions: {len(rules.transitions)}")
    if rules.monitored_users:
        print(f"Monitored users: {', '.join(rules.monitored_users)}")
    if rules.rules.invalid:
        print(f"Invalid rules: {len(rules.rules.invalid)}")
        for invalid in rules.rules.invalid:
            print(f"  {invalid.name}: {invalid.error}")
        raise SystemExit(1)


@app.meta.default
def main(
    *tokens: Annotated[str, Parameter(show=False, allow_leading_hyphen=True)],
    log_level: Literal["debug", "info", "warning", "error", "critical"] = "warning",
) -> None:
    """Main entry point with global options."""
    configure_logging(log_level)
    app(tokens)


if __name__ == "__main__":
    app.meta()
