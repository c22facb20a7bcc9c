"""Tests for the SQL pull connector against a throwaway SQLite database."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine, text

from connectors.base import DocumentEmitted, RunStatus, SyncRecorded
from connectors import sql as sql_module
from connectors.sql import SqlConnector

ARTICLES = [
    (1, "First article", "Body of the first article.", "https://cms.test/1", '{"section": "news"}', "2024-01-01 10:00:00"),
    (2, "Second article", "Body of the second article.", None, None, "2024-01-02 09:00:00"),
    (3, "Untitled draft", None, None, None, "2024-01-03 09:00:00"),
    (4, "Third article", "Body of the third article.", "https://cms.test/4", "not json", "2024-01-04 09:00:00"),
]


@pytest.fixture
def database_url(tmp_path):
    url = f"sqlite:///{tmp_path / 'cms.db'}"
    engine = create_engine(url)
    with engine.begin() as connection:
        connection.execute(
            text(
                "CREATE TABLE articles (id INTEGER PRIMARY KEY, title TEXT, content TEXT, "
                "url TEXT, attributes TEXT, modified_at TEXT)"
            )
        )
        connection.execute(
            text(
                "INSERT INTO articles VALUES (:id, :title, :content, :url, :attributes, :modified_at)"
            ),
            [
                dict(zip(("id", "title", "content", "url", "attributes", "modified_at"), row))
                for row in ARTICLES
            ],
        )
    engine.dispose()
    return url


@pytest.fixture
def sql_source(make_source, database_url):
    def _make(overrides=None, **config):
        return make_source(
            {
                "type": "sql",
                "connectionString": database_url,
                "metadataQuery": "SELECT COUNT(*) FROM articles",
                "dataQuery": "SELECT * FROM articles ORDER BY id;",
                "batchSize": 2,
                **config,
            },
            name="CMS",
            **(overrides or {}),
        )

    return _make


def _documents(events):
    return [event.document for event in events if isinstance(event, DocumentEmitted)]


def _syncs(events):
    return [event for event in events if isinstance(event, SyncRecorded)]


@pytest.mark.asyncio
async def test_first_sync_reads_all_rows_in_batches_and_skips_incomplete(sql_source, run_connector):
    connector = SqlConnector(sql_source())

    record, events = await run_connector(connector)

    documents = _documents(events)
    assert record.status is RunStatus.COMPLETED
    assert [document.external_id for document in documents] == ["1", "2", "4"]
    assert record.documents_added == 3
    assert record.total_items == 4
    assert record.processed_items == 4

    first = documents[0]
    assert first.title == "First article"
    assert first.url == "https://cms.test/1"
    assert first.attributes == {"section": "news"}
    assert first.last_modified == datetime(2024, 1, 1, 10, tzinfo=timezone.utc)
    assert documents[2].attributes == {}

    syncs = _syncs(events)
    assert [(sync.status, sync.message) for sync in syncs] == [("success", None)]
    assert syncs[0].watermark == record.started_at
    assert any("Metadata query returned" in line for line in record.log)
    assert any("Fetched 4 rows, indexed 3, skipped 1" in line for line in record.log)
    assert record.log[-2].endswith("Disconnected from database")
    assert connector.connected is False


@pytest.mark.asyncio
async def test_incremental_sync_only_reads_rows_modified_after_last_sync(sql_source, run_connector):
    source = sql_source({"last_sync_at": datetime(2024, 1, 2, 0, 0, tzinfo=timezone.utc)})

    record, events = await run_connector(SqlConnector(source))

    assert [document.external_id for document in _documents(events)] == ["2", "4"]
    assert any("Incremental sync of rows modified since 2024-01-02T00:00:00+00:00" in line for line in record.log)


@pytest.mark.asyncio
async def test_full_mode_ignores_the_watermark(sql_source, run_connector):
    source = sql_source({"last_sync_at": datetime(2030, 1, 1, tzinfo=timezone.utc)}, mode="full")

    record, events = await run_connector(SqlConnector(source))

    assert len(_documents(events)) == 3
    assert any("Full sync of all rows" in line for line in record.log)


@pytest.mark.asyncio
async def test_property_mapping_renames_columns(sql_source, run_connector):
    source = sql_source(
        dataQuery=(
            "SELECT id AS article_id, title AS headline, content AS body, 'article' AS kind "
            "FROM articles WHERE content IS NOT NULL"
        ),
        propertyMapping={
            "article_id": "external_id",
            "headline": "title",
            "body": "content",
            "kind": "content_type",
        },
        mode="full",
    )

    record, events = await run_connector(SqlConnector(source))

    documents = _documents(events)
    assert [document.title for document in documents] == ["First article", "Second article", "Third article"]
    assert {document.content_type for document in documents} == {"article"}
    assert documents[0].url is None


@pytest.mark.asyncio
async def test_row_transform_errors_skip_the_row(sql_source, run_connector, monkeypatch):
    original = sql_module._parse_attributes

    def attributes_with_bad_keys(value):
        if value == "not json":
            return {1: "numeric key"}
        return original(value)

    monkeypatch.setattr(sql_module, "_parse_attributes", attributes_with_bad_keys)

    record, events = await run_connector(SqlConnector(sql_source()))

    assert record.status is RunStatus.COMPLETED
    assert [document.external_id for document in _documents(events)] == ["1", "2"]
    assert any("Skipping row 4" in line for line in record.log)
    assert any("Fetched 4 rows, indexed 2, skipped 2" in line for line in record.log)
    assert [sync.status for sync in _syncs(events)] == ["success"]


@pytest.mark.asyncio
async def test_query_error_fails_run_and_records_failed_sync(sql_source, run_connector):
    connector = SqlConnector(sql_source(dataQuery="SELECT * FROM missing_table"))

    record, events = await run_connector(connector)

    assert record.status is RunStatus.FAILED
    assert "SQL sync failed" in record.error_message
    syncs = _syncs(events)
    assert len(syncs) == 1
    assert syncs[0].status == "failed"
    assert "missing_table" in syncs[0].message
    assert any("Disconnected from database" in line for line in record.log)
    assert connector.connected is False


@pytest.mark.asyncio
async def test_stop_records_stopped_sync(sql_source, run_connector):
    def stop_on_first_document(supervisor, event):
        if isinstance(event, DocumentEmitted):
            supervisor.stop()

    record, events = await run_connector(SqlConnector(sql_source()), on_event=stop_on_first_document)

    assert record.status is RunStatus.STOPPED
    assert [sync.status for sync in _syncs(events)] == ["stopped"]
    # The batch in flight finishes before the stop is observed.
    assert len(_documents(events)) == 2


def test_build_query_wraps_base_query_for_incremental_mode(make_source):
    source = make_source(
        {
            "type": "sql",
            "connectionString": "sqlite://",
            "metadataQuery": "SELECT 1",
            "dataQuery": "SELECT * FROM items;",
            "modifiedAtField": "updated_at",
        }
    )
    connector = SqlConnector(source)
    since = datetime(2024, 5, 1, tzinfo=timezone.utc)

    query, params = connector.build_query(since)

    assert str(query) == "SELECT * FROM (SELECT * FROM items) AS src WHERE src.updated_at > :since"
    assert params == {"since": since}
    assert str(connector.build_query(None)[0]) == "SELECT * FROM items"
