"""Local folder scan connector with optional live change watching."""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Iterable

from connectors.base import ExtractedDocument, RunContext, registry
from connectors.config import FolderConfig, SourceDefinition, SourceType
from connectors.errors import ExtractionError, SourceUnavailableError
from connectors.extractors import extract_file, html_title, markdown_heading, read_text
from connectors.utils import encode_external_id, glob_to_regex, title_from_filename, truncate_content

try:  # pragma: no cover - optional dependency
    from watchfiles import Change, awatch
except ImportError:  # pragma: no cover - watcher dependency optional
    Change = None
    awatch = None

Watcher = Callable[..., AsyncIterator[Iterable[tuple[Any, str]]]]

MIN_FILE_CHARS = 10

CONTENT_TYPES = {
    ".txt": "text",
    ".md": "markdown",
    ".pdf": "pdf",
    ".docx": "docx",
    ".html": "html",
    ".htm": "html",
}


@dataclass(frozen=True)
class FileDescriptor:
    path: Path
    relative_path: str
    size: int
    modified_at: datetime
    extension: str


def resolve_folder(folder_path: str) -> Path:
    """Expand ``~`` and resolve relative paths against the working directory."""
    return Path(folder_path).expanduser().resolve()


class FolderConnector:
    source_type = SourceType.FOLDER

    def __init__(self, source: SourceDefinition, watcher: Watcher | None = None) -> None:
        self.source = source
        self.config: FolderConfig = source.config
        self._file_types = set(self.config.file_types)
        self._exclude = [glob_to_regex(pattern) for pattern in self.config.exclude_patterns]
        self._watcher = watcher if watcher is not None else awatch
        self.files: list[FileDescriptor] = []

    async def close(self) -> None:
        return None

    async def execute(self, run: RunContext) -> None:
        root = resolve_folder(self.config.folder_path)
        if not root.exists():
            raise SourceUnavailableError(f"Folder does not exist: {root}")
        if not root.is_dir():
            raise SourceUnavailableError(f"Path is not a directory: {root}")

        run.log(f"Scanning folder: {root}")
        run.log(f"File types: {', '.join(self.config.file_types)}")
        run.log(f"Recursive: {self.config.recursive}")

        unreadable: list[str] = []
        self.files = await asyncio.to_thread(self.collect_files, root, run.should_continue, unreadable)
        for message in unreadable:
            run.log(message)
        total = len(self.files)
        run.log(f"Found {total} files to process")

        processed = 0
        for descriptor in self.files:
            if not run.should_continue():
                break
            run.progress(processed, total, descriptor.relative_path)
            try:
                await self.process_file(run, descriptor)
            except (OSError, ExtractionError) as exc:
                run.log(f"Error processing {descriptor.relative_path}: {exc}")
            processed += 1

        run.log(f"Folder scan complete. Processed {processed} files.")

        if self.config.watch_for_changes and run.should_continue():
            await self.watch(run, root)

    def collect_files(
        self,
        root: Path,
        should_continue: Callable[[], bool] = lambda: True,
        unreadable: list[str] | None = None,
    ) -> list[FileDescriptor]:
        """Walk ``root`` in name order; entries that cannot be read are reported in ``unreadable``."""
        files: list[FileDescriptor] = []
        self._walk(root, root, files, should_continue, unreadable if unreadable is not None else [])
        return files

    def _walk(
        self,
        directory: Path,
        root: Path,
        files: list[FileDescriptor],
        should_continue: Callable[[], bool],
        unreadable: list[str],
    ) -> None:
        with os.scandir(directory) as entries:
            ordered = sorted(entries, key=lambda entry: entry.name)
        for entry in ordered:
            if not should_continue():
                return
            path = Path(entry.path)
            relative = path.relative_to(root).as_posix()
            if self.is_excluded(relative):
                continue
            if entry.is_dir(follow_symlinks=False):
                if self.config.recursive:
                    try:
                        self._walk(path, root, files, should_continue, unreadable)
                    except OSError as exc:
                        unreadable.append(f"Skipping unreadable directory {relative}: {exc}")
            elif entry.is_file():
                try:
                    descriptor = self.describe(path, root)
                except OSError as exc:
                    unreadable.append(f"Skipping unreadable file {relative}: {exc}")
                    continue
                if descriptor is not None:
                    files.append(descriptor)

    def is_excluded(self, relative_path: str) -> bool:
        return any(pattern.match(relative_path) for pattern in self._exclude)

    def describe(self, path: Path, root: Path) -> FileDescriptor | None:
        extension = path.suffix.lower()
        if extension not in self._file_types:
            return None
        stat = path.stat()
        return FileDescriptor(
            path=path,
            relative_path=path.relative_to(root).as_posix(),
            size=stat.st_size,
            modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            extension=extension,
        )

    async def process_file(self, run: RunContext, descriptor: FileDescriptor) -> None:
        run.log(f"Processing: {descriptor.relative_path}")
        content = (await asyncio.to_thread(extract_file, descriptor.path, descriptor.extension)).strip()
        if len(content) < MIN_FILE_CHARS:
            run.log(f"Skipping (insufficient content): {descriptor.relative_path}")
            return

        title = await asyncio.to_thread(self.extract_title, descriptor)
        document = ExtractedDocument(
            external_id=encode_external_id(str(descriptor.path)),
            title=title,
            content=truncate_content(content),
            url=descriptor.path.as_uri(),
            attributes={
                "filename": descriptor.path.name,
                "filePath": str(descriptor.path),
                "relativePath": descriptor.relative_path,
                "extension": descriptor.extension,
                "fileSize": descriptor.size,
                "modifiedAt": descriptor.modified_at.isoformat(),
            },
            last_modified=descriptor.modified_at,
            content_type=CONTENT_TYPES.get(descriptor.extension, "file"),
        )
        await run.emit_document(document)

    def extract_title(self, descriptor: FileDescriptor) -> str:
        """Use the first markdown heading or HTML ``<title>``, else the file stem."""
        if descriptor.extension == ".md":
            heading = markdown_heading(read_text(descriptor.path))
            if heading:
                return heading
        elif descriptor.extension in (".html", ".htm"):
            title = html_title(read_text(descriptor.path))
            if title:
                return title
        return title_from_filename(descriptor.path.stem)

    async def watch(self, run: RunContext, root: Path) -> None:
        if self._watcher is None:
            run.log("File watching not available. Install the watchfiles package.")
            return
        run.log("Starting file watcher...")
        async for changes in self._watcher(
            root, stop_event=run.cancel_event, recursive=self.config.recursive
        ):
            for change, raw_path in sorted(changes, key=lambda item: item[1]):
                if not run.should_continue():
                    break
                await self.handle_change(run, root, change, Path(raw_path))
            if not run.should_continue():
                break
        run.log("File watcher stopped")

    async def handle_change(self, run: RunContext, root: Path, change: Any, path: Path) -> None:
        try:
            relative = path.relative_to(root).as_posix()
        except ValueError:
            return
        if self.is_excluded(relative) or path.suffix.lower() not in self._file_types:
            return
        if not self.config.recursive and "/" in relative:
            return

        if change == Change.deleted:
            run.log(f"File deleted: {relative}")
            await run.emit_delete(encode_external_id(str(path)))
            return

        label = "added" if change == Change.added else "changed"
        try:
            descriptor = self.describe(path, root)
            if descriptor is None:
                return
            run.log(f"File {label}: {relative}")
            await self.process_file(run, descriptor)
        except (OSError, ExtractionError) as exc:
            run.log(f"Error handling file change {relative}: {exc}")


registry.register(SourceType.FOLDER, FolderConnector)
