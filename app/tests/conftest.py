"""Pytest fixtures."""

from __future__ import annotations

import asyncio
import os

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("SCHEDULER_INTERVAL_SECONDS", "0")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from connectors.base import ConnectorRegistry, RunFinished, RunRecord
from connectors.config import SourceDefinition, parse_source
from models import Base
from workers.dispatcher import Dispatcher
from workers.supervisor import RunSupervisor


class FakeIndexer:
    def __init__(self) -> None:
        self.documents: dict[tuple[str, str], object] = {}
        self.deleted: list[str] = []
        self.fail_on: set[str] = set()

    async def known_external_ids(self, source_id):
        return {external_id for sid, external_id in self.documents if sid == source_id}

    async def upsert(self, source_id, document):
        if document.external_id in self.fail_on:
            raise RuntimeError("index unavailable")
        key = (source_id, document.external_id)
        created = key not in self.documents
        self.documents[key] = document
        return created

    async def delete(self, source_id, external_id):
        self.deleted.append(external_id)
        return self.documents.pop((source_id, external_id), None) is not None


class FakeHistory:
    def __init__(self) -> None:
        self.runs: list[RunRecord] = []

    async def save(self, record):
        self.runs = [run for run in self.runs if run.id != record.id]
        self.runs.append(record.model_copy(deep=True))

    async def list_runs(self, source_id, page=1, page_size=10):
        matching = sorted(
            (run for run in self.runs if run.source_id == source_id),
            key=lambda run: run.started_at,
            reverse=True,
        )
        start = (page - 1) * page_size
        return matching[start : start + page_size], len(matching)

    async def latest(self, source_id):
        records, _total = await self.list_runs(source_id, page=1, page_size=1)
        return records[0] if records else None


class FakeSources:
    def __init__(self, *sources: SourceDefinition) -> None:
        self.sources = {source.id: source for source in sources}
        self.sync_calls: list[tuple[str, str, str | None]] = []

    def add(self, source: SourceDefinition) -> None:
        self.sources[source.id] = source

    async def get(self, source_id):
        return self.sources.get(source_id)

    async def list_scheduled(self):
        return [source for source in self.sources.values() if source.is_active and source.schedule]

    async def record_sync(self, source_id, status, error, watermark):
        self.sync_calls.append((source_id, status, error))


class RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.events: list[tuple[str, dict]] = []

    async def publish(self, event_type, payload):
        if self.fail:
            raise ConnectionError("redis down")
        self.events.append((event_type, payload))


@pytest.fixture
def make_source():
    def _make(config: dict, **overrides) -> SourceDefinition:
        data = {"id": "src-1", "name": "Test source", "config": config}
        data.update(overrides)
        return parse_source(data)

    return _make


@pytest.fixture
def run_connector():
    """Run a connector under a supervisor with a draining consumer."""

    async def _run(connector, known_ids=(), on_event=None):
        supervisor = RunSupervisor(connector.source, connector, known_ids=known_ids)
        events: list = []

        async def consume() -> None:
            while True:
                event = await supervisor.events.get()
                events.append(event)
                try:
                    if on_event is not None:
                        on_event(supervisor, event)
                finally:
                    supervisor.events.task_done()
                if isinstance(event, RunFinished):
                    return

        consumer = asyncio.create_task(consume())
        record = await supervisor.run()
        await consumer
        return record, events

    return _run


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    yield factory
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def indexer() -> FakeIndexer:
    return FakeIndexer()


@pytest.fixture
def history() -> FakeHistory:
    return FakeHistory()


@pytest.fixture
def sources() -> FakeSources:
    return FakeSources()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def stub_registry() -> ConnectorRegistry:
    return ConnectorRegistry()


@pytest.fixture
def dispatcher(indexer, history, sources, notifier) -> Dispatcher:
    return Dispatcher(indexer=indexer, history=history, sources=sources, notifier=notifier)
