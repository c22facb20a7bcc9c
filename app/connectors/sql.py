"""SQL pull connector: batched reads of a user-supplied query."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from sqlalchemy import Connection, CursorResult, DateTime, Engine, TextClause, bindparam, text
from sqlalchemy.exc import SQLAlchemyError

from connectors.base import ExtractedDocument, RunContext, registry
from connectors.config import SourceDefinition, SourceType, SqlConfig
from connectors.errors import SourceUnavailableError
from connectors.utils import truncate_content
from models.session import build_engine

FIELD_FALLBACKS = {
    "external_id": "id",
    "title": "title",
    "content": "content",
    "url": "url",
    "attributes": "attributes",
    "content_type": "document_type",
    "last_modified": "modified_at",
}


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _parse_attributes(value: Any) -> dict[str, object]:
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, str) and value.strip():
        try:
            decoded = json.loads(value)
        except ValueError:
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}


class SqlConnector:
    source_type = SourceType.SQL

    def __init__(
        self,
        source: SourceDefinition,
        engine_factory: Callable[[str], Engine] = build_engine,
    ) -> None:
        self.source = source
        self.config: SqlConfig = source.config
        self._engine_factory = engine_factory
        self._engine: Engine | None = None
        self._connection: Connection | None = None
        # Inverted property mapping: target field -> source column.
        self._columns = {target: column for column, target in self.config.property_mapping.items()}

    @property
    def connected(self) -> bool:
        return self._connection is not None

    async def connect(self) -> None:
        try:
            self._engine = self._engine_factory(self.config.connection_string)
            self._connection = await asyncio.to_thread(self._engine.connect)
        except SQLAlchemyError as exc:
            raise SourceUnavailableError(f"Could not connect to database: {exc}") from exc

    async def disconnect(self) -> None:
        if self._connection is not None:
            await asyncio.to_thread(self._connection.close)
            self._connection = None
        if self._engine is not None:
            await asyncio.to_thread(self._engine.dispose)
            self._engine = None

    async def close(self) -> None:
        await self.disconnect()

    def since(self) -> datetime | None:
        if self.config.mode != "incremental":
            return None
        return self.source.last_sync_at

    def build_query(self, since: datetime | None) -> tuple[TextClause, dict[str, Any]]:
        base = self.config.data_query.strip().rstrip(";")
        if since is None:
            return text(base), {}
        field = self.config.modified_at_field
        query = text(f"SELECT * FROM ({base}) AS src WHERE src.{field} > :since").bindparams(
            bindparam("since", type_=DateTime(timezone=True))
        )
        return query, {"since": since}

    async def execute(self, run: RunContext) -> None:
        fetched = indexed = skipped = 0
        try:
            run.log("Connecting to database...")
            await self.connect()
            total = await self._probe(run)

            since = self.since()
            if since is not None:
                run.log(f"Incremental sync of rows modified since {since.isoformat()}")
            else:
                run.log("Full sync of all rows")
            query, params = self.build_query(since)
            result = await asyncio.to_thread(self._connection.execute, query, params)
            try:
                while run.should_continue():
                    rows = await asyncio.to_thread(result.fetchmany, self.config.batch_size)
                    if not rows:
                        break
                    for row in rows:
                        fetched += 1
                        try:
                            document = self.transform(row._mapping)
                        except (TypeError, ValueError) as exc:
                            run.log(f"Skipping row {fetched}: {exc}")
                            document = None
                        if document is None:
                            skipped += 1
                            continue
                        await run.emit_document(document)
                        indexed += 1
                    run.progress(fetched, max(total or 0, fetched), f"row {fetched}")
            finally:
                await asyncio.to_thread(result.close)

            run.log(f"Fetched {fetched} rows, indexed {indexed}, skipped {skipped}")
            await run.record_sync("success" if run.should_continue() else "stopped")
        except SQLAlchemyError as exc:
            await run.record_sync("failed", str(exc))
            raise SourceUnavailableError(f"SQL sync failed: {exc}") from exc
        except Exception as exc:
            await run.record_sync("failed", str(exc))
            raise
        finally:
            await self.disconnect()
            run.log("Disconnected from database")

    async def _probe(self, run: RunContext) -> int | None:
        """Run the metadata query; a single integer result becomes the expected total."""
        result: CursorResult = await asyncio.to_thread(
            self._connection.execute, text(self.config.metadata_query)
        )
        row = await asyncio.to_thread(result.first)
        if row is None:
            run.log("Metadata query returned no rows")
            return None
        values = tuple(row)
        run.log(f"Metadata query returned: {dict(row._mapping)}")
        if len(values) == 1 and isinstance(values[0], int) and not isinstance(values[0], bool):
            return values[0]
        return None

    def _value(self, row: Mapping[str, Any], target: str) -> Any:
        column = self._columns.get(target, FIELD_FALLBACKS[target])
        return row.get(column)

    def transform(self, row: Mapping[str, Any]) -> ExtractedDocument | None:
        """Map a result row onto a document; rows without id, title or content are skipped."""
        external_id = self._value(row, "external_id")
        title = self._value(row, "title")
        content = self._value(row, "content")
        if external_id is None or not title or not content:
            return None
        url = self._value(row, "url")
        content_type = self._value(row, "content_type")
        return ExtractedDocument(
            external_id=str(external_id),
            title=str(title),
            content=truncate_content(str(content)),
            url=str(url) if url else None,
            attributes=_parse_attributes(self._value(row, "attributes")),
            last_modified=_parse_datetime(self._value(row, "last_modified")),
            content_type=str(content_type) if content_type else None,
        )


registry.register(SourceType.SQL, SqlConnector)
