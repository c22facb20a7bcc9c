"""Root router exports."""

from . import health, logs, runs

__all__ = ["health", "runs", "logs"]
