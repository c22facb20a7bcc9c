"""Run dispatcher: one supervised run per source and the consumer of its events."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from pydantic import BaseModel

from connectors import folder, relay, sql, web  # noqa: F401
from connectors.base import (
    ConnectorRegistry,
    DocumentDeleted,
    DocumentEmitted,
    ExtractedDocument,
    LogAppended,
    ProgressUpdated,
    RunEvent,
    RunFinished,
    RunRecord,
    RunStarted,
    RunStatus,
    SyncRecorded,
    registry,
)
from connectors.config import SourceDefinition
from connectors.errors import AlreadyRunningError, ConfigurationError, SourceNotFoundError
from workers.notifications import NotificationSink, NullNotificationSink, run_payload
from workers.supervisor import RunSupervisor

logger = logging.getLogger(__name__)

DEFAULT_LOG_LIMIT = 200
LOG_LINE_RE = re.compile(r"^\[([^\]]+)\]\s?(.*)$", re.DOTALL)


class Indexer(Protocol):
    async def known_external_ids(self, source_id: str) -> set[str]:
        ...

    async def upsert(self, source_id: str, document: ExtractedDocument) -> bool:
        ...

    async def delete(self, source_id: str, external_id: str) -> bool:
        ...


class HistoryStore(Protocol):
    async def save(self, record: RunRecord) -> None:
        ...

    async def list_runs(self, source_id: str, page: int = 1, page_size: int = 10) -> tuple[list[RunRecord], int]:
        ...

    async def latest(self, source_id: str) -> RunRecord | None:
        ...


class SourceStore(Protocol):
    async def get(self, source_id: str) -> SourceDefinition | None:
        ...

    async def list_scheduled(self) -> list[SourceDefinition]:
        ...

    async def record_sync(self, source_id: str, status: str, error: str | None, watermark: datetime) -> None:
        ...


class LogEntry(BaseModel):
    id: str
    timestamp: datetime | None = None
    level: str
    message: str


def guess_level(message: str) -> str:
    lowered = message.lower()
    if "error" in lowered:
        return "error"
    if "warn" in lowered:
        return "warn"
    return "info"


def parse_log_line(line: str, source_id: str, index: int) -> LogEntry:
    timestamp: datetime | None = None
    message = line
    match = LOG_LINE_RE.match(line)
    if match:
        try:
            timestamp = datetime.fromisoformat(match.group(1))
            message = match.group(2)
        except ValueError:
            timestamp = None
    return LogEntry(
        id=f"{source_id}-{index}",
        timestamp=timestamp,
        level=guess_level(message),
        message=message,
    )


def tail_log(
    lines: list[str],
    source_id: str,
    limit: int = DEFAULT_LOG_LIMIT,
    level: str | None = None,
) -> list[LogEntry]:
    entries = [parse_log_line(line, source_id, index) for index, line in enumerate(lines)]
    if level:
        entries = [entry for entry in entries if entry.level == level.lower()]
    return entries[-limit:] if limit > 0 else []


@dataclass
class ActiveRun:
    source: SourceDefinition
    supervisor: RunSupervisor
    runner: asyncio.Task[RunRecord]
    consumer: asyncio.Task[None]


class Dispatcher:
    def __init__(
        self,
        indexer: Indexer,
        history: HistoryStore,
        sources: SourceStore | None = None,
        notifier: NotificationSink | None = None,
        connector_registry: ConnectorRegistry = registry,
    ) -> None:
        self.indexer = indexer
        self.history = history
        self.sources = sources
        self.notifier = notifier or NullNotificationSink()
        self._registry = connector_registry
        self._active: dict[str, ActiveRun] = {}
        self._starting: set[str] = set()
        self._latest: dict[str, RunRecord] = {}
        self._background: set[asyncio.Task[Any]] = set()

    def is_running(self, source_id: str) -> bool:
        return source_id in self._active or source_id in self._starting

    @property
    def active_source_ids(self) -> list[str]:
        return list(self._active)

    async def start_run_by_id(self, source_id: str) -> RunRecord:
        if self.sources is None:
            raise SourceNotFoundError(f"Source {source_id} not found")
        source = await self.sources.get(source_id)
        if source is None:
            raise SourceNotFoundError(f"Source {source_id} not found")
        return await self.start_run(source)

    async def start_run(self, source: SourceDefinition) -> RunRecord:
        """Start a run for ``source`` and return its live record."""
        if not source.is_active:
            raise ConfigurationError(f"Source {source.name} is not active")
        if self.is_running(source.id):
            raise AlreadyRunningError(f"Source {source.name} is already running")

        connector = self._registry.build(source)
        self._starting.add(source.id)
        try:
            known_ids = await self.indexer.known_external_ids(source.id)
            supervisor = RunSupervisor(source, connector, known_ids=known_ids)
            consumer = asyncio.create_task(
                self._consume(source, supervisor), name=f"run-events:{source.id}"
            )
            runner = asyncio.create_task(supervisor.run(), name=f"run:{source.id}")
            runner.add_done_callback(lambda task, source_id=source.id: self._runner_done(source_id, task))
            self._active[source.id] = ActiveRun(source, supervisor, runner, consumer)
            self._latest[source.id] = supervisor.record
        finally:
            self._starting.discard(source.id)
        logger.info("Started run %s for source %s", supervisor.record.id, source.name)
        return supervisor.record

    def stop_run(self, source_id: str) -> bool:
        """Request a cooperative stop; returns False when nothing is running."""
        active = self._active.get(source_id)
        if active is None:
            return False
        return active.supervisor.stop()

    def get_run_status(self, source_id: str) -> RunRecord | None:
        return self._latest.get(source_id)

    async def get_run_history(
        self, source_id: str, page: int = 1, page_size: int = 10
    ) -> tuple[list[RunRecord], int]:
        return await self.history.list_runs(source_id, page=page, page_size=page_size)

    async def get_run_logs(
        self,
        source_id: str,
        limit: int = DEFAULT_LOG_LIMIT,
        level: str | None = None,
    ) -> list[LogEntry]:
        record = self._latest.get(source_id)
        if record is None:
            record = await self.history.latest(source_id)
        if record is None:
            return []
        return tail_log(list(record.log), source_id, limit=limit, level=level)

    async def wait(self, source_id: str) -> RunRecord | None:
        """Wait for the active run of ``source_id`` and its event consumer to finish."""
        active = self._active.get(source_id)
        if active is not None:
            await asyncio.gather(active.runner, active.consumer)
        await self.flush_notifications()
        return self._latest.get(source_id)

    async def flush_notifications(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self, timeout: float = 10.0) -> None:
        for active in list(self._active.values()):
            active.supervisor.stop()
        tasks = [task for active in list(self._active.values()) for task in (active.runner, active.consumer)]
        if tasks:
            _done, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        await self.flush_notifications()
        self._active.clear()

    def _runner_done(self, source_id: str, task: asyncio.Task[RunRecord]) -> None:
        if not task.cancelled() and task.exception() is None:
            return
        active = self._active.pop(source_id, None)
        if active is not None and active.runner is task:
            active.consumer.cancel()
        logger.warning("Run task for source %s ended without finishing its record", source_id)

    async def _consume(self, source: SourceDefinition, supervisor: RunSupervisor) -> None:
        while True:
            event = await supervisor.events.get()
            try:
                await self._handle(source, supervisor, event)
            except Exception:
                logger.exception(
                    "Listener failed for %s on source %s", type(event).__name__, source.id
                )
            finally:
                supervisor.events.task_done()
            if isinstance(event, RunFinished):
                return

    async def _handle(self, source: SourceDefinition, supervisor: RunSupervisor, event: RunEvent) -> None:
        if isinstance(event, RunStarted):
            self._notify("connector.started", run_payload(source, event.record))
        elif isinstance(event, LogAppended):
            return
        elif isinstance(event, ProgressUpdated):
            self._latest[source.id] = event.record
        elif isinstance(event, DocumentEmitted):
            await self._index(source, supervisor, event.document)
        elif isinstance(event, DocumentDeleted):
            await self._remove(source, supervisor, event.external_id)
        elif isinstance(event, SyncRecorded):
            if self.sources is not None:
                await self.sources.record_sync(source.id, event.status, event.message, event.watermark)
        elif isinstance(event, RunFinished):
            await self._finalize(source, event.record)

    async def _index(self, source: SourceDefinition, supervisor: RunSupervisor, document: ExtractedDocument) -> None:
        try:
            await self.indexer.upsert(source.id, document)
        except Exception as exc:
            logger.exception("Failed to index %s for source %s", document.external_id, source.id)
            supervisor.log(f"Failed to index {document.title}: {exc}")

    async def _remove(self, source: SourceDefinition, supervisor: RunSupervisor, external_id: str) -> None:
        try:
            await self.indexer.delete(source.id, external_id)
        except Exception as exc:
            logger.exception("Failed to delete %s for source %s", external_id, source.id)
            supervisor.log(f"Failed to remove document: {exc}")

    async def _finalize(self, source: SourceDefinition, record: RunRecord) -> None:
        try:
            await self.history.save(record)
        except Exception:
            logger.exception("Failed to persist run %s for source %s", record.id, source.id)
        finally:
            self._active.pop(source.id, None)
            self._latest[source.id] = record
        event_type = "connector.error" if record.status is RunStatus.FAILED else "connector.completed"
        self._notify(event_type, run_payload(source, record))
        logger.info(
            "Run %s for source %s finished: %s (+%d ~%d -%d)",
            record.id,
            source.name,
            record.status.value,
            record.documents_added,
            record.documents_updated,
            record.documents_removed,
        )

    def _notify(self, event_type: str, payload: dict[str, Any]) -> None:
        task = asyncio.create_task(self._deliver_notification(event_type, payload))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _deliver_notification(self, event_type: str, payload: dict[str, Any]) -> None:
        try:
            await self.notifier.publish(event_type, payload)
        except Exception:
            logger.exception("Failed to publish %s notification", event_type)
