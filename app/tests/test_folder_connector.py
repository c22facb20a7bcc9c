"""Tests for the folder scan connector and its live watch mode."""

from __future__ import annotations

from pathlib import Path

import pytest
from watchfiles import Change

from connectors import folder as folder_module
from connectors.base import DocumentDeleted, DocumentEmitted, RunStatus
from connectors.extractors import extract_file, strip_markdown
from connectors.folder import FolderConnector
from connectors.utils import decode_external_id, encode_external_id

LONG_TEXT = "Plain text notes about the ingestion engine, long enough to be worth indexing."


def _documents(events):
    return [event.document for event in events if isinstance(event, DocumentEmitted)]


@pytest.fixture
def folder_source(make_source, tmp_path):
    def _make(**config):
        return make_source(
            {"type": "folder", "folderPath": str(tmp_path), "fileTypes": [".txt", ".pdf"], **config},
            name="Shared drive",
        )

    return _make


@pytest.mark.asyncio
async def test_scan_respects_file_types_and_exclude_patterns(folder_source, run_connector, tmp_path, monkeypatch):
    (tmp_path / "a.txt").write_text(LONG_TEXT)
    (tmp_path / "b.pdf").write_bytes(b"%PDF-1.4 placeholder")
    (tmp_path / "c.exclude.txt").write_text(LONG_TEXT)
    (tmp_path / "d.md").write_text("# Not selected\n\n" + LONG_TEXT)

    def fake_extract(path: Path, extension: str | None = None) -> str:
        if extension == ".pdf":
            return "Extracted PDF text that comfortably exceeds the minimum content length."
        return extract_file(path, extension)

    monkeypatch.setattr(folder_module, "extract_file", fake_extract)
    connector = FolderConnector(folder_source(excludePatterns=["*.exclude.*"]))

    record, events = await run_connector(connector)

    documents = _documents(events)
    assert record.status is RunStatus.COMPLETED
    assert [document.attributes["filename"] for document in documents] == ["a.txt", "b.pdf"]
    assert record.documents_added == 2
    assert record.progress == 100

    text_doc = documents[0]
    assert text_doc.title == "A"
    assert text_doc.content == LONG_TEXT
    assert text_doc.url == (tmp_path / "a.txt").resolve().as_uri()
    assert decode_external_id(text_doc.external_id) == str((tmp_path / "a.txt").resolve())
    assert text_doc.attributes["relativePath"] == "a.txt"
    assert text_doc.attributes["fileSize"] == len(LONG_TEXT)
    assert text_doc.content_type == "text"


@pytest.mark.asyncio
async def test_unreadable_pdf_is_logged_and_scan_continues(folder_source, run_connector, tmp_path):
    (tmp_path / "a.txt").write_text(LONG_TEXT)
    (tmp_path / "broken.pdf").write_bytes(b"this is not a pdf")

    record, events = await run_connector(FolderConnector(folder_source()))

    assert record.status is RunStatus.COMPLETED
    assert [document.attributes["filename"] for document in _documents(events)] == ["a.txt"]
    assert any("Error processing broken.pdf" in line for line in record.log)


@pytest.mark.asyncio
async def test_unreadable_subdirectory_is_logged_and_scan_continues(folder_source, run_connector, tmp_path, monkeypatch):
    (tmp_path / "a.txt").write_text(LONG_TEXT)
    (tmp_path / "locked").mkdir()
    (tmp_path / "locked" / "hidden.txt").write_text(LONG_TEXT)
    (tmp_path / "open").mkdir()
    (tmp_path / "open" / "b.txt").write_text(LONG_TEXT)
    real_scandir = folder_module.os.scandir

    def scandir(path):
        if Path(path).name == "locked":
            raise PermissionError(13, "Permission denied", str(path))
        return real_scandir(path)

    monkeypatch.setattr(folder_module.os, "scandir", scandir)

    record, events = await run_connector(FolderConnector(folder_source()))

    assert record.status is RunStatus.COMPLETED
    assert [document.attributes["relativePath"] for document in _documents(events)] == ["a.txt", "open/b.txt"]
    assert any("Skipping unreadable directory locked" in line for line in record.log)
    assert any("Found 2 files to process" in line for line in record.log)

@pytest.mark.asyncio
async def test_titles_from_markdown_heading_and_html_title(make_source, run_connector, tmp_path):
    (tmp_path / "guide.md").write_text("# Setup Guide\n\nSome **bold** words and a [link](https://x.test).\n\n" + LONG_TEXT)
    (tmp_path / "page.html").write_text(
        "<html><head><title>Release Notes</title><script>var x;</script></head>"
        f"<body><p>{LONG_TEXT}</p></body></html>"
    )
    (tmp_path / "weekly_status-report.txt").write_text(LONG_TEXT)
    source = make_source(
        {"type": "folder", "folderPath": str(tmp_path), "fileTypes": [".md", ".html", ".txt"]}
    )

    record, events = await run_connector(FolderConnector(source))

    titles = {document.attributes["filename"]: document.title for document in _documents(events)}
    assert titles == {
        "guide.md": "Setup Guide",
        "page.html": "Release Notes",
        "weekly_status-report.txt": "Weekly Status Report",
    }
    markdown = next(doc for doc in _documents(events) if doc.attributes["filename"] == "guide.md")
    assert "**" not in markdown.content
    assert "https://x.test" not in markdown.content
    assert "link" in markdown.content


@pytest.mark.asyncio
async def test_non_recursive_scan_skips_subdirectories(folder_source, run_connector, tmp_path):
    (tmp_path / "top.txt").write_text(LONG_TEXT)
    nested = tmp_path / "nested"
    nested.mkdir()
    (nested / "inner.txt").write_text(LONG_TEXT)

    _record, flat_events = await run_connector(FolderConnector(folder_source(recursive=False)))
    _record, deep_events = await run_connector(FolderConnector(folder_source()))

    assert [doc.attributes["relativePath"] for doc in _documents(flat_events)] == ["top.txt"]
    assert [doc.attributes["relativePath"] for doc in _documents(deep_events)] == [
        "nested/inner.txt",
        "top.txt",
    ]


@pytest.mark.asyncio
async def test_short_files_are_skipped(folder_source, run_connector, tmp_path):
    (tmp_path / "short.txt").write_text("too short")

    record, events = await run_connector(FolderConnector(folder_source()))

    assert _documents(events) == []
    assert any("insufficient content" in line for line in record.log)


@pytest.mark.asyncio
async def test_missing_folder_fails_the_run(make_source, run_connector, tmp_path):
    missing = tmp_path / "does-not-exist"
    source = make_source({"type": "folder", "folderPath": str(missing), "fileTypes": [".txt"]})

    record, _events = await run_connector(FolderConnector(source))

    assert record.status is RunStatus.FAILED
    assert "Folder does not exist" in record.error_message


@pytest.mark.asyncio
async def test_watch_mode_processes_changes_until_stopped(folder_source, run_connector, tmp_path):
    (tmp_path / "existing.txt").write_text(LONG_TEXT)
    (tmp_path / "gone.txt").write_text(LONG_TEXT)
    root = tmp_path.resolve()

    async def fake_watcher(path, stop_event, recursive):
        assert Path(path) == root
        (root / "new.txt").write_text(LONG_TEXT + " Added later.")
        yield {(Change.added, str(root / "new.txt")), (Change.added, str(root / "ignored.exe"))}
        (root / "existing.txt").write_text(LONG_TEXT + " Edited.")
        yield {(Change.modified, str(root / "existing.txt"))}
        (root / "gone.txt").unlink()
        yield {(Change.deleted, str(root / "gone.txt"))}
        await stop_event.wait()

    def stop_after_delete(supervisor, event):
        if isinstance(event, DocumentDeleted):
            supervisor.stop()

    connector = FolderConnector(folder_source(watchForChanges=True), watcher=fake_watcher)
    record, events = await run_connector(connector, on_event=stop_after_delete)

    assert record.status is RunStatus.STOPPED
    assert record.documents_added == 3
    assert record.documents_updated == 1
    assert record.documents_removed == 1
    deleted = [event.external_id for event in events if isinstance(event, DocumentDeleted)]
    assert deleted == [encode_external_id(str(root / "gone.txt"))]
    assert any("File watcher stopped" in line for line in record.log)


def test_strip_markdown_removes_code_and_formatting():
    text = "# Title\n\n```python\nprint('x')\n```\n\nUse `inline` and ![img](a.png) *emphasis*.\n\n---\n"

    assert strip_markdown(text) == "Title\n\nUse  and  emphasis."
