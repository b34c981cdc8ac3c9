"""Rule-driven project board automation."""

__version__ = "0.1.0"
