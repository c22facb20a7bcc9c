"""Connector protocol definitions, run records and registry."""

from __future__ import annotations

import asyncio
import enum
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Protocol, Union
from uuid import uuid4

from pydantic import BaseModel, Field

from connectors.config import SourceDefinition, SourceType
from connectors.errors import ConfigurationError

LOG_LIMIT = 1000
LOG_RETAIN = 500
MIN_CONTENT_CHARS = 50
MAX_CONTENT_CHARS = 50_000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExtractedDocument(BaseModel):
    external_id: str
    title: str
    content: str
    url: str | None = None
    attributes: dict[str, object] = Field(default_factory=dict)
    last_modified: datetime | None = None
    content_type: str | None = None


class RunStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class RunRecord(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    source_id: str
    status: RunStatus = RunStatus.RUNNING
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None
    documents_added: int = 0
    documents_updated: int = 0
    documents_removed: int = 0
    progress: int = 0
    processed_items: int = 0
    total_items: int | None = None
    current_item: str | None = None
    error_message: str | None = None
    log: list[str] = Field(default_factory=list)

    def append_log(self, message: str, at: datetime | None = None) -> str:
        """Append a timestamped line, trimming the buffer to the newest entries."""
        entry = f"[{(at or _utcnow()).isoformat()}] {message}"
        if len(self.log) >= LOG_LIMIT:
            del self.log[: len(self.log) - (LOG_RETAIN - 1)]
        self.log.append(entry)
        return entry

    def set_progress(self, processed: int, total: int, current: str | None = None) -> None:
        self.processed_items = processed
        self.total_items = total
        if total > 0:
            # Half-up rounding, clamped for totals that lag behind the work done.
            self.progress = max(0, min(100, math.floor(processed * 100 / total + 0.5)))
        else:
            self.progress = 0
        if current is not None:
            self.current_item = current

    def finish(self, status: RunStatus, error_message: str | None = None) -> None:
        if self.status.is_terminal:
            raise RuntimeError(f"Run {self.id} already finished as {self.status.value}")
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        self.status = status
        self.error_message = error_message
        self.completed_at = _utcnow()
        self.progress = 100


@dataclass(frozen=True)
class RunStarted:
    record: RunRecord


@dataclass(frozen=True)
class LogAppended:
    entry: str


@dataclass(frozen=True)
class ProgressUpdated:
    record: RunRecord


@dataclass(frozen=True)
class DocumentEmitted:
    document: ExtractedDocument
    is_update: bool


@dataclass(frozen=True)
class DocumentDeleted:
    external_id: str


@dataclass(frozen=True)
class SyncRecorded:
    status: str
    message: str | None
    watermark: datetime


@dataclass(frozen=True)
class RunFinished:
    record: RunRecord


RunEvent = Union[
    RunStarted,
    LogAppended,
    ProgressUpdated,
    DocumentEmitted,
    DocumentDeleted,
    SyncRecorded,
    RunFinished,
]


class RunContext(Protocol):
    """Services a run offers to the connector executing inside it."""

    source: SourceDefinition
    record: RunRecord
    cancel_event: asyncio.Event

    def should_continue(self) -> bool:
        ...

    def log(self, message: str) -> None:
        ...

    def progress(self, processed: int, total: int, current: str | None = None) -> None:
        ...

    async def emit_document(
        self, document: ExtractedDocument, is_update: bool | None = None
    ) -> None:
        ...

    async def emit_delete(self, external_id: str) -> None:
        ...

    async def record_sync(self, status: str, message: str | None = None) -> None:
        ...

    async def sleep(self, seconds: float) -> bool:
        ...


class Connector(Protocol):
    source_type: SourceType
    source: SourceDefinition

    async def execute(self, run: RunContext) -> None:
        ...

    async def close(self) -> None:
        ...


ConnectorFactory = Callable[[SourceDefinition], Connector]


@dataclass
class RegisteredConnector:
    source_type: SourceType
    factory: ConnectorFactory


class ConnectorRegistry:
    def __init__(self) -> None:
        self._registry: dict[SourceType, RegisteredConnector] = {}

    def register(self, source_type: SourceType, factory: ConnectorFactory) -> None:
        self._registry[source_type] = RegisteredConnector(source_type, factory)

    def types(self) -> list[SourceType]:
        return list(self._registry)

    def build(self, source: SourceDefinition) -> Connector:
        try:
            entry = self._registry[source.source_type]
        except KeyError as exc:
            raise ConfigurationError(f"Unknown connector type: {source.source_type.value}") from exc
        return entry.factory(source)


registry = ConnectorRegistry()
