"""Source definitions and the typed configuration of each connector variant."""

from __future__ import annotations

import enum
import re
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Mapping, Union
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from connectors.errors import ConfigurationError

ALLOWED_FILE_TYPES = (".txt", ".md", ".pdf", ".docx", ".html", ".htm")
IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class SourceType(str, enum.Enum):
    WEB = "web"
    FOLDER = "folder"
    SQL = "sql"
    EVENT_RELAY = "event-relay"


class _ConfigModel(BaseModel):
    # Stored definitions use camelCase keys; Python callers may use field names.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


def _compile_patterns(patterns: list[str]) -> list[str]:
    for pattern in patterns:
        try:
            re.compile(pattern)
        except re.error as exc:
            raise ValueError(f"Invalid pattern {pattern!r}: {exc}") from exc
    return patterns


class WebConfig(_ConfigModel):
    type: Literal["web"] = "web"
    seed_url: str
    max_depth: int = Field(2, ge=0, le=10)
    max_pages: int = Field(100, ge=1, le=10000)
    rate_limit: int = Field(1000, ge=100, le=60000)
    same_domain_only: bool = True
    respect_robots_txt: bool = True
    include_patterns: list[str] = Field(default_factory=list)
    exclude_patterns: list[str] = Field(default_factory=list)

    @field_validator("seed_url")
    @classmethod
    def _check_seed_url(cls, value: str) -> str:
        parts = urlsplit(value.strip())
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise ValueError("Invalid seed URL")
        return value.strip()

    @field_validator("include_patterns", "exclude_patterns")
    @classmethod
    def _check_patterns(cls, value: list[str]) -> list[str]:
        return _compile_patterns(value)


class FolderConfig(_ConfigModel):
    type: Literal["folder"] = "folder"
    folder_path: str = Field(min_length=1)
    file_types: list[str] = Field(min_length=1)
    recursive: bool = True
    watch_for_changes: bool = False
    exclude_patterns: list[str] = Field(default_factory=list)

    @field_validator("file_types")
    @classmethod
    def _check_file_types(cls, value: list[str]) -> list[str]:
        normalized = [ext.strip().lower() for ext in value]
        for ext in normalized:
            if ext not in ALLOWED_FILE_TYPES:
                raise ValueError(
                    f"Invalid file type: {ext}. Supported: {', '.join(ALLOWED_FILE_TYPES)}"
                )
        return list(dict.fromkeys(normalized))


class SqlConfig(_ConfigModel):
    type: Literal["sql"] = "sql"
    connection_string: str = Field(min_length=1)
    metadata_query: str = Field(min_length=1)
    data_query: str = Field(min_length=1)
    mode: Literal["incremental", "full"] = "incremental"
    modified_at_field: str = "modified_at"
    property_mapping: dict[str, str] = Field(default_factory=dict)
    batch_size: int = Field(500, ge=1, le=10000)

    @field_validator("modified_at_field")
    @classmethod
    def _check_identifier(cls, value: str) -> str:
        if not IDENTIFIER_RE.match(value):
            raise ValueError(f"Invalid column name: {value!r}")
        return value


class RelayConfig(_ConfigModel):
    type: Literal["event-relay"] = "event-relay"
    relays: list[str] = Field(min_length=1)
    kinds: list[int] | None = None
    authors: list[str] | None = None
    tags: dict[str, list[str]] | None = None
    since: int | None = None
    until: int | None = None
    limit: int | None = Field(None, ge=1)
    subscribe_mode: bool = False
    mode: Literal["incremental", "full"] = "incremental"
    eose_timeout: float = Field(10.0, gt=0)

    @field_validator("relays")
    @classmethod
    def _check_relays(cls, value: list[str]) -> list[str]:
        for relay in value:
            if urlsplit(relay).scheme not in ("ws", "wss"):
                raise ValueError(f"Invalid relay URL: {relay}")
        return value


SourceConfig = Annotated[
    Union[WebConfig, FolderConfig, SqlConfig, RelayConfig],
    Field(discriminator="type"),
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SourceDefinition(_ConfigModel):
    """A configured source as maintained by the administrative layer."""

    id: str
    name: str
    description: str | None = None
    config: SourceConfig
    is_active: bool = True
    schedule: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    last_sync_at: datetime | None = None
    last_sync_status: str | None = None
    last_sync_error: str | None = None

    @property
    def source_type(self) -> SourceType:
        return SourceType(self.config.type)


def _describe(exc: ValidationError) -> str:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"])
        if error["type"] == "union_tag_invalid":
            tag = error.get("ctx", {}).get("tag")
            messages.append(f"Unknown connector type: {tag}")
        elif error["type"] == "union_tag_not_found":
            messages.append("Config type is required")
        else:
            messages.append(f"{location}: {error['msg']}" if location else error["msg"])
    return "; ".join(messages)


def parse_source(data: Mapping[str, Any]) -> SourceDefinition:
    """Validate a raw source definition, raising ConfigurationError on failure."""
    try:
        return SourceDefinition.model_validate(dict(data))
    except ValidationError as exc:
        raise ConfigurationError(_describe(exc)) from exc
