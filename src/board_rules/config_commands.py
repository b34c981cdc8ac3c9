"""Configuration commands for board-rules CLI."""

from cyclopts import App

from board_rules.config import SETTING_KEYS, coerce_setting, get_config

config_app = App(name="config", help="Manage configuration")

SECRET_KEYS = {"github.token"}


def _display(key: str, value: object) -> str:
    if key in SECRET_KEYS and value:
        return "********"
    if isinstance(value, list):
        return ", ".join(str(v) for v in value)
    return str(value)


@config_app.command
def set(key: str, value: str, global_: bool = False) -> None:
    """Set a configuration setting.

    Args:
        key: Configuration key, e.g. rate_limit.burst or github.project_url
        value: Configuration value
        global_: If True, set in global config. If False, set in local config.

    Raises:
        ConfigValidationError: If the key is unknown or the value does not fit it
    """
    stored = coerce_setting(key, value)
    config = get_config(use_global=global_)
    config.set(key, stored)
    scope = "global" if global_ else "local"
    print(f"Set {key} = {_display(key, stored)} ({scope})")


@config_app.command
def unset(key: str, global_: bool = False) -> None:
    """Unset a configuration setting.

    Args:
        key: Configuration key
        global_: If True, unset from global config. If False, unset from local config.
    """
    config = get_config(use_global=global_)
    config.unset(key)
    scope = "global" if global_ else "local"
    print(f"Unset {key} ({scope})")


@config_app.command
def get(key: str, global_: bool = False) -> None:
    """Get the value of a configuration setting.

    Args:
        key: Configuration key
        global_: If True, get from global config only. If False, get with global fallback.
    """
    config = get_config(use_global=global_)
    value = config.get(key)
    if value is None:
        print(f"{key} is not set")
    else:
        print(f"{key} = {_display(key, value)}")


@config_app.command(name="list")
def list_config(global_: bool = False) -> None:
    """List all configuration settings.

    Args:
        global_: If True, list global config only. If False, list merged config.
    """
    config = get_config(use_global=global_)
    settings = config.list()

    if not settings:
        scope = "global" if global_ else "local"
        print(f"No {scope} configuration settings")
        return

    scope = "Global" if global_ else "Configuration"
    print(f"{scope} settings:\n")
    for key, value in settings.items():
        unknown = "" if key in SETTING_KEYS else "  (unknown key, ignored)"
        print(f"{key} = {_display(key, value)}{unknown}")


@config_app.command
def keys() -> None:
    """List the settings board-rules understands."""
    for key in sorted(SETTING_KEYS):
        print(key)
