"""Connector package."""

from . import folder, relay, sql, web

__all__ = ["folder", "relay", "sql", "web"]
