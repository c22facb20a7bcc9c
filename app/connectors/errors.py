"""Exceptions raised by connectors and the run dispatcher."""

from __future__ import annotations


class ConnectorError(Exception):
    """Base class for ingestion engine errors."""


class ConfigurationError(ConnectorError, ValueError):
    """A source definition is incomplete, invalid or of an unknown type."""


class SourceNotFoundError(ConnectorError, LookupError):
    """No source definition exists for the requested id."""


class AlreadyRunningError(ConnectorError):
    """A run is already active for the source."""


class SourceUnavailableError(ConnectorError):
    """The backing system of a source could not be reached or read."""


class ExtractionError(ConnectorError):
    """Text could not be extracted from a single item."""


class ExtractionUnavailableError(ExtractionError):
    """The optional library needed for an extraction strategy is not installed."""
