"""Run supervision: lifecycle, cancellation and the outbound event stream."""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable

from connectors.base import (
    Connector,
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
)
from connectors.config import SourceDefinition

logger = logging.getLogger(__name__)


class RunSupervisor:
    """Drive one connector execution and publish its events.

    Events are delivered in order on ``events``. Document, delete and sync
    events wait until the consumer has processed everything queued so far, so a
    consumer task must be draining the queue while ``run()`` is awaited.
    """

    def __init__(
        self,
        source: SourceDefinition,
        connector: Connector,
        known_ids: Iterable[str] = (),
    ) -> None:
        self.source = source
        self.connector = connector
        self.record = RunRecord(source_id=source.id)
        self.events: asyncio.Queue[RunEvent] = asyncio.Queue()
        self.cancel_event = asyncio.Event()
        self._known_ids = set(known_ids)

    @property
    def stop_requested(self) -> bool:
        return self.cancel_event.is_set()

    def should_continue(self) -> bool:
        return not self.cancel_event.is_set()

    def stop(self) -> bool:
        if self.record.status.is_terminal or self.cancel_event.is_set():
            return False
        self.cancel_event.set()
        self.log("Stop requested")
        return True

    def log(self, message: str) -> None:
        entry = self.record.append_log(message)
        logger.info("[Connector:%s] %s", self.source.name, message)
        self.events.put_nowait(LogAppended(entry))

    def progress(self, processed: int, total: int, current: str | None = None) -> None:
        self.record.set_progress(processed, total, current)
        self.events.put_nowait(ProgressUpdated(self.record))

    async def emit_document(self, document: ExtractedDocument, is_update: bool | None = None) -> None:
        if is_update is None:
            is_update = document.external_id in self._known_ids
        if is_update:
            self.record.documents_updated += 1
        else:
            self.record.documents_added += 1
        self._known_ids.add(document.external_id)
        await self._deliver(DocumentEmitted(document, is_update))

    async def emit_delete(self, external_id: str) -> None:
        self.record.documents_removed += 1
        self._known_ids.discard(external_id)
        await self._deliver(DocumentDeleted(external_id))

    async def record_sync(self, status: str, message: str | None = None) -> None:
        await self._deliver(SyncRecorded(status, message, self.record.started_at))

    async def sleep(self, seconds: float) -> bool:
        """Sleep for ``seconds``; return False early if a stop is requested."""
        if seconds <= 0:
            return self.should_continue()
        try:
            await asyncio.wait_for(self.cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return True
        return False

    async def _deliver(self, event: RunEvent) -> None:
        await self.events.put(event)
        await self.events.join()

    async def run(self) -> RunRecord:
        self.log(f"Starting {self.source.source_type.value} connector: {self.source.name}")
        self.events.put_nowait(RunStarted(self.record))

        status = RunStatus.COMPLETED
        error_message: str | None = None
        try:
            await self.connector.execute(self)
        except Exception as exc:
            logger.exception("Connector %s failed", self.source.name)
            status = RunStatus.FAILED
            error_message = str(exc) or exc.__class__.__name__
            self.log(f"Error: {error_message}")
        else:
            if self.cancel_event.is_set():
                status = RunStatus.STOPPED
                self.log("Connector stopped by user")
            else:
                self.log("Connector completed successfully")
        finally:
            await self._close_connector()

        self.record.finish(status, error_message)
        self.events.put_nowait(RunFinished(self.record))
        return self.record

    async def _close_connector(self) -> None:
        try:
            await self.connector.close()
        except Exception:
            logger.exception("Failed to close connector for %s", self.source.name)
