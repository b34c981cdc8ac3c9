"""Board client implementations."""

from board_rules.backends.github import GitHubProjectClient

__all__ = ["GitHubProjectClient"]
