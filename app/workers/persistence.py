"""Database-backed stores for source definitions and run history."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from connectors.base import RunRecord, RunStatus
from connectors.config import SourceDefinition, parse_source
from connectors.errors import ConfigurationError
from models import ConnectorRun, SessionLocal
from models import Source as SourceRow

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


def _aware(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def source_from_row(row: SourceRow) -> SourceDefinition:
    data: dict[str, Any] = {
        "id": row.id,
        "name": row.name,
        "description": row.description,
        "config": {"type": row.type, **(row.config or {})},
        "is_active": row.is_active,
        "schedule": row.schedule,
        "last_sync_at": _aware(row.last_sync_at),
        "last_sync_status": row.last_sync_status,
        "last_sync_error": row.last_sync_error,
    }
    if row.created_at is not None:
        data["created_at"] = _aware(row.created_at)
    if row.updated_at is not None:
        data["updated_at"] = _aware(row.updated_at)
    return parse_source(data)


def record_from_row(row: ConnectorRun) -> RunRecord:
    return RunRecord(
        id=row.id,
        source_id=row.source_id,
        status=RunStatus(row.status),
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
        documents_added=row.documents_added or 0,
        documents_updated=row.documents_updated or 0,
        documents_removed=row.documents_removed or 0,
        progress=row.progress or 0,
        processed_items=row.processed_items or 0,
        total_items=row.total_items,
        current_item=row.current_item,
        error_message=row.error_message,
        log=list(row.log or []),
    )


class SourceRepository:
    def __init__(self, session_factory: SessionFactory = SessionLocal) -> None:
        self._session_factory = session_factory

    async def get(self, source_id: str) -> SourceDefinition | None:
        return await asyncio.to_thread(self._get, source_id)

    def _get(self, source_id: str) -> SourceDefinition | None:
        with self._session_factory() as session:
            row = session.get(SourceRow, source_id)
            return source_from_row(row) if row is not None else None

    async def list_scheduled(self) -> list[SourceDefinition]:
        return await asyncio.to_thread(self._list_scheduled)

    def _list_scheduled(self) -> list[SourceDefinition]:
        sources: list[SourceDefinition] = []
        with self._session_factory() as session:
            rows = session.execute(
                select(SourceRow).where(SourceRow.is_active.is_(True)).order_by(SourceRow.name)
            ).scalars()
            for row in rows:
                if not row.schedule:
                    continue
                try:
                    sources.append(source_from_row(row))
                except ConfigurationError as exc:
                    logger.warning("Skipping source %s with invalid config: %s", row.id, exc)
        return sources

    async def record_sync(
        self,
        source_id: str,
        status: str,
        error: str | None,
        watermark: datetime,
    ) -> None:
        await asyncio.to_thread(self._record_sync, source_id, status, error, watermark)

    def _record_sync(self, source_id: str, status: str, error: str | None, watermark: datetime) -> None:
        with self._session_factory() as session:
            row = session.get(SourceRow, source_id)
            if row is None:
                logger.warning("Cannot record sync outcome for unknown source %s", source_id)
                return
            row.last_sync_status = status
            row.last_sync_error = error
            # Only a complete sync moves the incremental watermark.
            if status == "success":
                row.last_sync_at = watermark
            session.commit()


class RunHistoryRepository:
    def __init__(self, session_factory: SessionFactory = SessionLocal) -> None:
        self._session_factory = session_factory

    async def save(self, record: RunRecord) -> None:
        await asyncio.to_thread(self._save, record)

    def _save(self, record: RunRecord) -> None:
        with self._session_factory() as session:
            session.merge(
                ConnectorRun(
                    id=record.id,
                    source_id=record.source_id,
                    status=record.status.value,
                    started_at=record.started_at,
                    completed_at=record.completed_at,
                    documents_added=record.documents_added,
                    documents_updated=record.documents_updated,
                    documents_removed=record.documents_removed,
                    progress=record.progress,
                    processed_items=record.processed_items,
                    total_items=record.total_items,
                    current_item=record.current_item,
                    error_message=record.error_message,
                    log=list(record.log),
                )
            )
            session.commit()

    async def list_runs(self, source_id: str, page: int = 1, page_size: int = 10) -> tuple[list[RunRecord], int]:
        return await asyncio.to_thread(self._list, source_id, page, page_size)

    def _list(self, source_id: str, page: int, page_size: int) -> tuple[list[RunRecord], int]:
        with self._session_factory() as session:
            total = session.execute(
                select(func.count()).select_from(ConnectorRun).where(ConnectorRun.source_id == source_id)
            ).scalar_one()
            rows = session.execute(
                select(ConnectorRun)
                .where(ConnectorRun.source_id == source_id)
                .order_by(ConnectorRun.started_at.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            ).scalars()
            return [record_from_row(row) for row in rows], total

    async def latest(self, source_id: str) -> RunRecord | None:
        records, _total = await self.list_runs(source_id, page=1, page_size=1)
        return records[0] if records else None
