"""Tests for source definitions, typed configs and the connector registry."""

from __future__ import annotations

import pytest

from connectors.base import ConnectorRegistry, registry
from connectors.config import FolderConfig, RelayConfig, SourceType, SqlConfig, WebConfig, parse_source
from connectors.errors import ConfigurationError
from connectors.folder import FolderConnector
from connectors.relay import RelayConnector
from connectors.sql import SqlConnector
from connectors.web import WebCrawlConnector


def test_web_config_accepts_camel_case_and_applies_defaults():
    source = parse_source(
        {
            "id": "docs",
            "name": "Docs site",
            "config": {"type": "web", "seedUrl": "https://docs.example.com/start"},
        }
    )

    assert source.source_type is SourceType.WEB
    assert isinstance(source.config, WebConfig)
    assert source.config.seed_url == "https://docs.example.com/start"
    assert source.config.max_depth == 2
    assert source.config.max_pages == 100
    assert source.config.rate_limit == 1000
    assert source.config.same_domain_only is True
    assert source.config.respect_robots_txt is True
    assert source.is_active is True


def test_snake_case_keys_are_accepted():
    source = parse_source(
        {
            "id": "files",
            "name": "Files",
            "config": {"type": "folder", "folder_path": "/srv/docs", "file_types": [".MD", ".txt"]},
        }
    )

    assert isinstance(source.config, FolderConfig)
    assert source.config.file_types == [".md", ".txt"]
    assert source.config.recursive is True
    assert source.config.watch_for_changes is False


@pytest.mark.parametrize(
    "config, message",
    [
        ({"type": "ftp", "host": "example.com"}, "Unknown connector type"),
        ({"seedUrl": "https://example.com"}, "type is required"),
        ({"type": "web", "seedUrl": "not a url"}, "Invalid seed URL"),
        ({"type": "web", "seedUrl": "https://example.com", "maxDepth": 11}, "maxDepth"),
        ({"type": "web", "seedUrl": "https://example.com", "includePatterns": ["("]}, "Invalid pattern"),
        ({"type": "folder", "folderPath": "/tmp", "fileTypes": []}, "fileTypes"),
        ({"type": "folder", "folderPath": "/tmp", "fileTypes": [".exe"]}, "Invalid file type"),
        ({"type": "sql", "connectionString": "sqlite://", "metadataQuery": "SELECT 1"}, "dataQuery"),
        ({"type": "event-relay", "relays": []}, "relays"),
        ({"type": "event-relay", "relays": ["https://relay.example.com"]}, "Invalid relay URL"),
    ],
)
def test_invalid_configs_raise_configuration_error(config, message):
    with pytest.raises(ConfigurationError, match=message):
        parse_source({"id": "bad", "name": "Bad", "config": config})


def test_sql_and_relay_supplemented_defaults():
    sql_source = parse_source(
        {
            "id": "db",
            "name": "Warehouse",
            "config": {
                "type": "sql",
                "connectionString": "sqlite://",
                "metadataQuery": "SELECT COUNT(*) FROM items",
                "dataQuery": "SELECT * FROM items",
            },
        }
    )
    relay_source = parse_source(
        {
            "id": "nostr",
            "name": "Relays",
            "config": {"type": "event-relay", "relays": ["wss://relay.example.com"]},
        }
    )

    assert isinstance(sql_source.config, SqlConfig)
    assert sql_source.config.mode == "incremental"
    assert sql_source.config.batch_size == 500
    assert sql_source.config.modified_at_field == "modified_at"
    assert isinstance(relay_source.config, RelayConfig)
    assert relay_source.config.subscribe_mode is False
    assert relay_source.config.eose_timeout == 10.0


def test_default_registry_builds_each_variant(tmp_path):
    configs = {
        WebCrawlConnector: {"type": "web", "seedUrl": "https://example.com"},
        FolderConnector: {"type": "folder", "folderPath": str(tmp_path), "fileTypes": [".txt"]},
        SqlConnector: {
            "type": "sql",
            "connectionString": "sqlite://",
            "metadataQuery": "SELECT 1",
            "dataQuery": "SELECT 1",
        },
        RelayConnector: {"type": "event-relay", "relays": ["wss://relay.example.com"]},
    }
    for expected, config in configs.items():
        source = parse_source({"id": expected.__name__, "name": expected.__name__, "config": config})
        assert isinstance(registry.build(source), expected)

    assert set(registry.types()) == set(SourceType)


def test_registry_rejects_unregistered_type():
    empty = ConnectorRegistry()
    source = parse_source(
        {"id": "x", "name": "x", "config": {"type": "web", "seedUrl": "https://example.com"}}
    )

    with pytest.raises(ConfigurationError, match="Unknown connector type: web"):
        empty.build(source)
