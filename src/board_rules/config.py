"""Settings for board-rules using YAML files and environment overrides."""

import os
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import structlog
import yaml

from board_rules.errors import ConfigValidationError
from board_rules.retry import RetryConfig

logger = structlog.get_logger()

CONFIG_DIR_NAME = ".board-rules"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}
_PROJECT_URL_RE = re.compile(r"github\.com/(?P<kind>orgs|users)/(?P<owner>[^/]+)/projects/(?P<number>\d+)")


class Config:
    """Configuration manager using YAML file storage.

    Local settings live in ``.board-rules/config.yaml`` in the current
    directory, global settings in ``~/.board-rules/config.yaml``. Reads check
    local settings first, then global ones. Keys are stored flat
    (``rate_limit.burst``).
    """

    def __init__(self, use_global: bool = False, config_dir: Path | None = None) -> None:
        """Initialize configuration manager.

        Args:
            use_global: If True, use global config only. If False, use local config with global fallback.
            config_dir: Custom directory to store config file (overrides use_global)
        """
        if config_dir is not None:
            self.config_dir = Path(config_dir)
            self.is_global = use_global
        elif use_global:
            self.config_dir = Path.home() / CONFIG_DIR_NAME
            self.is_global = True
        else:
            self.config_dir = Path.cwd() / CONFIG_DIR_NAME
            self.is_global = False

        self.config_file = self.config_dir / "config.yaml"
        self._config: dict[str, Any] = self._load(self.config_file)

        self._global_config: dict[str, Any] = {}
        if not self.is_global:
            global_config_file = Path.home() / CONFIG_DIR_NAME / "config.yaml"
            if global_config_file != self.config_file and global_config_file.exists():
                try:
                    self._global_config = self._load(global_config_file)
                except ConfigValidationError as e:
                    logger.warning("Failed to load global config", error=str(e))

        logger.debug("Config initialized", config_file=str(self.config_file), is_global=self.is_global)

    @staticmethod
    def _load(path: Path) -> dict[str, Any]:
        """Load configuration from a YAML file.

        Returns:
            Configuration dictionary
        """
        if not path.exists():
            logger.debug("Config file does not exist, initializing empty config", config_file=str(path))
            return {}

        try:
            with open(path, "r") as f:
                config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error("Failed to load config", config_file=str(path), error=str(e))
            raise ConfigValidationError(f"Failed to load config from {path}: {e}") from e

        if not isinstance(config, dict):
            raise ConfigValidationError(f"Config file {path} must contain a mapping")
        logger.debug("Config loaded successfully", keys=list(config.keys()))
        return config

    def _save(self) -> None:
        """Save configuration to the YAML file, creating its directory."""
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            with open(self.config_file, "w") as f:
                yaml.safe_dump(self._config, f, default_flow_style=False, sort_keys=False)
        except OSError as e:
            logger.error("Failed to save config", error=str(e))
            raise ConfigValidationError(f"Failed to save config to {self.config_file}: {e}") from e
        logger.debug("Config saved successfully")

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value, falling back to global config for local instances."""
        if key in self._config:
            logger.debug("Getting config value from local", key=key)
            return self._config[key]

        if not self.is_global and key in self._global_config:
            logger.debug("Getting config value from global", key=key)
            return self._global_config[key]

        logger.debug("Config value not found", key=key)
        return default

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value."""
        logger.debug("Setting config value", key=key)
        self._config[key] = value
        self._save()

    def unset(self, key: str) -> None:
        """Remove a configuration value."""
        logger.debug("Unsetting config value", key=key)
        if key in self._config:
            del self._config[key]
            self._save()

    def list(self) -> dict[str, Any]:
        """List all configuration settings.

        For local config, merges global config with local config (local takes precedence).
        """
        if self.is_global:
            return self._config.copy()
        merged = self._global_config.copy()
        merged.update(self._config)
        return merged


def get_config(use_global: bool = False) -> Config:
    """Get a configuration instance.

    Args:
        use_global: If True, return global config. If False, return local config with global fallback.

    Returns:
        Config instance
    """
    return Config(use_global=use_global)


@dataclass(frozen=True)
class Settings:
    """Typed run settings."""

    dry_run: bool = False
    requests_per_second: float = 5.0
    burst: int = 10
    min_remaining: int = 200
    batch_size: int = 20
    retry: RetryConfig = field(default_factory=RetryConfig)
    project_owner: str | None = None
    project_owner_type: str = "organization"
    project_number: int | None = None
    project_id: str | None = None
    github_token: str | None = field(default=None, repr=False)
    github_author: str | None = None
    rules_file: str | None = None
    repositories: tuple[str, ...] = ()
    recent_hours: int = 24


def parse_bool(value: Any, key: str = "value") -> bool:
    """Parse a boolean setting given as a bool or a string."""
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ConfigValidationError(f"{key} must be a boolean, got {value!r}")


def _to_number(key: str, raw: Any, kind: type, allow_zero: bool = False) -> Any:
    if isinstance(raw, bool):
        raise ConfigValidationError(f"{key} must be a number, got {raw!r}")
    try:
        value = kind(raw)
    except (TypeError, ValueError) as e:
        raise ConfigValidationError(f"{key} must be a number, got {raw!r}") from e
    if value < 0 or (value == 0 and not allow_zero):
        raise ConfigValidationError(f"{key} must be positive, got {raw!r}")
    return value


def _number(values: Mapping[str, Any], key: str, default: Any, kind: type, allow_zero: bool = False) -> Any:
    raw = values.get(key)
    if raw is None or raw == "":
        return default
    return _to_number(key, raw, kind, allow_zero)


def _text(key: str, raw: Any) -> str:
    text = str(raw).strip()
    if not text:
        raise ConfigValidationError(f"{key} must not be empty")
    return text


def _owner_type(key: str, raw: Any) -> str:
    if raw not in ("organization", "user"):
        raise ConfigValidationError(f"{key} must be 'organization' or 'user', got {raw!r}")
    return raw


def _project_url(key: str, raw: Any) -> str:
    parse_project_url(str(raw))
    return str(raw)


def _repositories(key: str, raw: Any) -> list[str]:
    if raw is None or raw == "":
        return []
    if isinstance(raw, str):
        raw = raw.split(",")
    if not isinstance(raw, list):
        raise ConfigValidationError(f"{key} must be a list or a comma separated string, got {raw!r}")
    return [name.strip() for name in (str(r) for r in raw) if name.strip()]


SETTING_KEYS: dict[str, Callable[[str, Any], Any]] = {
    "dry_run": lambda key, raw: parse_bool(raw, key),
    "batch_size": lambda key, raw: _to_number(key, raw, int),
    "rules_file": _text,
    "rate_limit.requests_per_second": lambda key, raw: _to_number(key, raw, float),
    "rate_limit.burst": lambda key, raw: _to_number(key, raw, int),
    "rate_limit.min_remaining": lambda key, raw: _to_number(key, raw, int, allow_zero=True),
    "retry.max_attempts": lambda key, raw: _to_number(key, raw, int),
    "retry.base_delay": lambda key, raw: _to_number(key, raw, float),
    "retry.max_delay": lambda key, raw: _to_number(key, raw, float),
    "retry.jitter": lambda key, raw: parse_bool(raw, key),
    "github.token": _text,
    "github.owner": _text,
    "github.owner_type": _owner_type,
    "github.project": lambda key, raw: _to_number(key, raw, int),
    "github.project_url": _project_url,
    "github.project_id": _text,
    "github.author": _text,
    "discovery.repositories": _repositories,
    "discovery.hours": lambda key, raw: _to_number(key, raw, int),
}


def coerce_setting(key: str, value: Any) -> Any:
    """Check a setting key and convert its value to the stored type.

    Raises:
        ConfigValidationError: If the key is unknown or the value is invalid
    """
    coerce = SETTING_KEYS.get(key)
    if coerce is None:
        raise ConfigValidationError(f"Unknown setting {key!r}. Known settings: {', '.join(sorted(SETTING_KEYS))}")
    return coerce(key, value)


def parse_project_url(url: str) -> tuple[str, str, int]:
    """Split a project URL into ``(owner_type, owner, number)``.

    Raises:
        ConfigValidationError: If the URL is not a GitHub project URL
    """
    match = _PROJECT_URL_RE.search(url)
    if match is None:
        raise ConfigValidationError(f"Not a GitHub project URL: {url}")
    owner_type = "organization" if match["kind"] == "orgs" else "user"
    return owner_type, match["owner"], int(match["number"])


def load_settings(config: Config | None = None, environ: Mapping[str, str] | None = None, **overrides: Any) -> Settings:
    """Build settings from config files, environment and explicit overrides.

    Precedence, lowest first: config files, environment (``DRY_RUN``,
    ``GITHUB_TOKEN``, ``PROJECT_URL``, ``PROJECT_ID``, ``GITHUB_AUTHOR``,
    ``CONFIG_FILE``), then keyword overrides that are not None.

    Raises:
        ConfigValidationError: If a value has the wrong type
    """
    config = config if config is not None else get_config()
    environ = os.environ if environ is None else environ
    values: dict[str, Any] = dict(config.list())

    env_keys = {
        "DRY_RUN": "dry_run",
        "GITHUB_TOKEN": "github.token",
        "PROJECT_URL": "github.project_url",
        "PROJECT_ID": "github.project_id",
        "GITHUB_AUTHOR": "github.author",
        "CONFIG_FILE": "rules_file",
    }
    for env_key, key in env_keys.items():
        if environ.get(env_key):
            values[key] = environ[env_key]

    owner_type = values.get("github.owner_type", "organization")
    owner = values.get("github.owner")
    if values.get("github.project_url"):
        owner_type, owner, values["github.project"] = parse_project_url(str(values["github.project_url"]))
    owner_type = _owner_type("github.owner_type", owner_type)

    retry = RetryConfig(
        max_attempts=_number(values, "retry.max_attempts", 5, int),
        base_delay=_number(values, "retry.base_delay", 1.0, float),
        max_delay=_number(values, "retry.max_delay", 60.0, float),
        jitter=parse_bool(values.get("retry.jitter", False), "retry.jitter"),
    )

    settings = Settings(
        dry_run=parse_bool(values.get("dry_run", False), "dry_run"),
        requests_per_second=_number(values, "rate_limit.requests_per_second", 5.0, float),
        burst=_number(values, "rate_limit.burst", 10, int),
        min_remaining=_number(values, "rate_limit.min_remaining", 200, int, allow_zero=True),
        batch_size=_number(values, "batch_size", 20, int),
        retry=retry,
        project_owner=owner,
        project_owner_type=owner_type,
        project_number=_number(values, "github.project", None, int),
        project_id=values.get("github.project_id"),
        github_token=values.get("github.token"),
        github_author=values.get("github.author"),
        rules_file=values.get("rules_file"),
        repositories=tuple(_repositories("discovery.repositories", values.get("discovery.repositories"))),
        recent_hours=_number(values, "discovery.hours", 24, int),
    )
    changes = {k: v for k, v in overrides.items() if v is not None}
    if changes:
        settings = replace(settings, **changes)
    logger.debug("Settings loaded", dry_run=settings.dry_run, owner=settings.project_owner, project=settings.project_number)
    return settings
