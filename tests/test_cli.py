"""Tests for CLI commands."""

import json
from pathlib import Path

import pytest
import yaml
from structlog.testing import capture_logs

from board_rules import cli, config_commands, rules_commands
from board_rules.client import EntitySource
from board_rules.errors import ConfigValidationError
from board_rules.ratelimit import RateLimitStatus
from board_rules.models import Entity, EntityKind

from conftest import RecordingClient

RULES = {
    "rules": [
        {
            "name": "remove_sprint_from_inactive",
            "trigger": {"type": "Issue", "condition": "item.column == 'New'"},
            "action": "remove_sprint",
        }
    ]
}


class FakeBoard(RecordingClient, EntitySource):
    remaining: int | None = None
    fetched = 0

    async def fetch_entities(self) -> list[Entity]:
        self.fetched += 1
        return [Entity(id="I_1", kind=EntityKind.ISSUE, column="New", sprint="S1", number=7)]

    async def rate_limit(self) -> RateLimitStatus | None:
        if self.remaining is None:
            return None
        return RateLimitStatus(remaining=self.remaining, limit=5000)


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Run commands from an isolated directory with an isolated home."""
    home = tmp_path / "home"
    home.mkdir()
    project = tmp_path / "project"
    (project / "config").mkdir(parents=True)
    (project / "config" / "rules.yml").write_text(yaml.safe_dump(RULES))
    monkeypatch.setattr(Path, "home", lambda: home)
    monkeypatch.chdir(project)
    for name in ("CONFIG_FILE", "DRY_RUN", "GITHUB_TOKEN", "PROJECT_URL", "PROJECT_ID", "GITHUB_AUTHOR"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("GITHUB_EVENT_NAME", raising=False)
    monkeypatch.delenv("GITHUB_EVENT_PATH", raising=False)
    return project


@pytest.fixture
def board(workspace: Path, monkeypatch: pytest.MonkeyPatch) -> FakeBoard:
    """Replace the GitHub client with an in-memory board."""
    fake = FakeBoard()
    monkeypatch.setattr(cli, "get_client", lambda settings: fake)
    return fake


def test_validate(workspace: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Test validating the discovered rules file."""
    cli.validate()
    output = capsys.readouterr().out
    assert "Valid rules: 1" in output
    assert str(workspace / "config" / "rules.yml") in output


def test_validate_invalid_rule(workspace: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Test invalid conditions fail validation."""
    broken = {"name": "broken", "trigger": {"type": "Issue", "condition": "item.column ="}, "action": "reopen"}
    path = workspace / "broken.yml"
    path.write_text(yaml.safe_dump({"rules": [broken]}))

    with pytest.raises(SystemExit) as excinfo:
        cli.validate(rules_file=str(path))

    assert excinfo.value.code == 1
    assert "broken" in capsys.readouterr().out


def test_run(board: FakeBoard, capsys: pytest.CaptureFixture[str]) -> None:
    """Test a run applies accepted mutations and prints a summary."""
    cli.run()

    assert [intent.target_entity_id for intent in board.intents] == ["I_1"]
    output = capsys.readouterr().out
    assert "applied: 1" in output
    assert "Issue #7" in output


def test_run_dry_run_json(board: FakeBoard, capsys: pytest.CaptureFixture[str]) -> None:
    """Test a dry run with JSON output."""
    with capture_logs():
        cli.run(dry_run=True, json_output=True)

    assert board.calls == []
    payload = json.loads(capsys.readouterr().out)
    assert payload["dry_run"] is True
    assert payload["counts"]["dry_run"] == 1


def test_run_failure_exit_code(board: FakeBoard) -> None:
    """Test failed mutations make the command exit non-zero."""
    board.fail = {"I_1"}
    with pytest.raises(SystemExit) as excinfo:
        cli.run()
    assert excinfo.value.code == 1


def test_get_client_requires_project(workspace: Path) -> None:
    """Test a helpful error when the project is not configured."""
    with pytest.raises(ValueError, match="project not configured"):
        cli.get_client(cli.load_settings())


def test_rules_check(capsys: pytest.CaptureFixture[str]) -> None:
    """Test evaluating a condition from the command line."""
    rules_commands.check("item.column == 'New' && !item.pr.merged", item='{"column": "New", "pr": {"merged": false}}')
    rules_commands.check("item.sprint != null")
    assert capsys.readouterr().out.split() == ["true", "false"]


def test_rules_list(workspace: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Test listing the configured rules."""
    rules_commands.list_rules()
    output = capsys.readouterr().out
    assert "remove_sprint_from_inactive (Issue) -> remove_sprint" in output
    assert "when: item.column == 'New'" in output


def test_config_commands_mask_token(workspace: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Test config commands store values and never print the token."""
    config_commands.set("github.token", "secret-token")
    config_commands.set("rate_limit.burst", "4")
    config_commands.get("github.token")
    config_commands.list_config()
    config_commands.unset("rate_limit.burst")
    config_commands.get("rate_limit.burst")

    output = capsys.readouterr().out
    assert "secret-token" not in output
    assert "github.token = ********" in output
    assert "rate_limit.burst = 4" in output
    assert "rate_limit.burst is not set" in output


def test_run_skipped_on_low_rate_budget(board: FakeBoard, capsys: pytest.CaptureFixture[str]) -> None:
    """Test a low API budget skips the run before the board is fetched."""
    board.remaining = 50

    cli.run()

    assert board.fetched == 0
    assert board.calls == []
    assert "Run skipped (rate_limit)" in capsys.readouterr().out


def test_config_set_validates(workspace: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Test config set refuses unknown keys and malformed values and stores typed values."""
    with pytest.raises(ConfigValidationError, match="Unknown setting"):
        config_commands.set("rate_limit.burts", "4")
    with pytest.raises(ConfigValidationError, match="must be a number"):
        config_commands.set("rate_limit.burst", "abc")

    config_commands.set("discovery.repositories", "widgets,acme/gadgets")

    stored = yaml.safe_load((workspace / ".board-rules" / "config.yaml").read_text())
    assert stored == {"discovery.repositories": ["widgets", "acme/gadgets"]}
    assert "Set discovery.repositories = widgets, acme/gadgets (local)" in capsys.readouterr().out


def test_config_keys_and_unknown_entries(workspace: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """Test listing known keys and flagging hand-edited unknown ones."""
    config_dir = workspace / ".board-rules"
    config_dir.mkdir()
    (config_dir / "config.yaml").write_text(yaml.safe_dump({"rate_limit.burts": 4}))

    config_commands.keys()
    config_commands.list_config()

    output = capsys.readouterr().out
    assert "rate_limit.min_remaining" in output.splitlines()
    assert "rate_limit.burts = 4  (unknown key, ignored)" in output
