"""Event-relay (Nostr NIP-01) pull connector."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable
from uuid import uuid4

import aiohttp

from connectors.base import ExtractedDocument, RunContext, registry
from connectors.config import RelayConfig, SourceDefinition, SourceType
from connectors.errors import SourceUnavailableError
from connectors.utils import truncate_content

logger = logging.getLogger(__name__)

DEFAULT_KINDS = (0, 1, 30023)
KIND_CONTENT_TYPES = {
    1: "note",
    30023: "article",
    30818: "kb_article",
    30040: "book",
    30041: "chapter",
    31900: "podcast_feed",
    31901: "podcast_episode",
    30402: "product",
}
LIVE_POLL_SECONDS = 1.0


def _first_tag(event: dict[str, Any], name: str) -> str | None:
    for tag in event.get("tags") or []:
        if isinstance(tag, list) and len(tag) >= 2 and tag[0] == name and tag[1]:
            return str(tag[1])
    return None


def _event_time(created_at: Any) -> datetime | None:
    if not isinstance(created_at, (int, float)) or isinstance(created_at, bool):
        return None
    try:
        return datetime.fromtimestamp(created_at, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def parse_event(event: dict[str, Any]) -> ExtractedDocument | None:
    """Convert a relay event into a document, or ``None`` when it carries nothing indexable."""
    event_id = event.get("id")
    pubkey = event.get("pubkey")
    kind = event.get("kind")
    if not event_id or not isinstance(pubkey, str) or not pubkey or not isinstance(kind, int):
        return None

    last_modified = _event_time(event.get("created_at"))
    raw_content = event.get("content") or ""
    attributes: dict[str, object] = {
        "nostr": True,
        "kind": kind,
        "pubkey": pubkey,
        "tags": event.get("tags") or [],
    }

    if kind == 0:
        try:
            profile = json.loads(raw_content) if raw_content else {}
        except ValueError:
            profile = {"raw": raw_content}
        if not isinstance(profile, dict):
            profile = {"raw": raw_content}
        attributes["profile"] = profile
        title = profile.get("display_name") or profile.get("name") or f"Nostr profile {pubkey[:8]}"
        content = profile.get("about") or raw_content
        url = f"nostr:{pubkey}"
        content_type = "profile"
    elif kind == 1:
        title = f"Note by {pubkey[:8]}"
        content = raw_content
        url = f"nostr:{event_id}"
        content_type = KIND_CONTENT_TYPES[1]
    else:
        identifier = _first_tag(event, "d")
        heading = _first_tag(event, "title")
        if kind != 30023 and not heading and not identifier:
            return None
        title = heading or identifier or "Untitled Article"
        content = raw_content
        summary = _first_tag(event, "summary")
        if summary:
            attributes["summary"] = summary
        if identifier:
            attributes["identifier"] = identifier
            url = f"nostr:{kind}:{pubkey}:{identifier}"
        else:
            url = f"nostr:{event_id}"
        content_type = KIND_CONTENT_TYPES.get(kind, "event")

    if not isinstance(content, str) or not content.strip():
        return None
    return ExtractedDocument(
        external_id=str(event_id),
        title=str(title),
        content=truncate_content(content.strip()),
        url=url,
        attributes=attributes,
        last_modified=last_modified,
        content_type=content_type,
    )


class RelayClient:
    """A single NIP-01 relay connection over an aiohttp WebSocket."""

    def __init__(self, url: str, session: aiohttp.ClientSession | None = None) -> None:
        self.url = url
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None

    async def __aenter__(self) -> "RelayClient":
        if self._session is None:
            self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(self.url, heartbeat=30)
        except BaseException:
            await self._close_session()
            raise
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        await self._close_session()

    async def _close_session(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    async def send(self, message: list[Any]) -> None:
        if self._ws is None:
            raise SourceUnavailableError(f"Relay {self.url} is not connected")
        await self._ws.send_str(json.dumps(message))

    async def receive(self) -> list[Any] | None:
        """Return the next relay message, or ``None`` once the socket closes."""
        if self._ws is None:
            return None
        while True:
            message = await self._ws.receive()
            if message.type == aiohttp.WSMsgType.TEXT:
                try:
                    data = json.loads(message.data)
                except ValueError:
                    logger.debug("Ignoring malformed frame from %s", self.url)
                    continue
                if isinstance(data, list) and data:
                    return data
            elif message.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
                aiohttp.WSMsgType.ERROR,
            ):
                return None

    async def fetch_events(self, nostr_filter: dict[str, Any], *, eose_timeout: float) -> list[dict[str, Any]]:
        """Collect stored events for ``nostr_filter`` until EOSE, close or timeout."""
        subscription = uuid4().hex[:16]
        await self.send(["REQ", subscription, nostr_filter])
        events: list[dict[str, Any]] = []
        try:
            while True:
                message = await asyncio.wait_for(self.receive(), timeout=eose_timeout)
                if message is None:
                    break
                kind = message[0]
                if kind == "EVENT" and len(message) >= 3 and message[1] == subscription:
                    if isinstance(message[2], dict):
                        events.append(message[2])
                elif kind in ("EOSE", "CLOSED") and len(message) >= 2 and message[1] == subscription:
                    break
                elif kind == "NOTICE":
                    logger.info("Relay %s notice: %s", self.url, message[1:])
        except asyncio.TimeoutError:
            logger.warning("Relay %s sent no EOSE within %.1fs", self.url, eose_timeout)
        finally:
            if self._ws is not None and not self._ws.closed:
                await self.send(["CLOSE", subscription])
        return events

    async def stream(self, nostr_filter: dict[str, Any]) -> AsyncIterator[dict[str, Any]]:
        """Yield stored and then live events until the relay closes the socket."""
        subscription = uuid4().hex[:16]
        await self.send(["REQ", subscription, nostr_filter])
        while True:
            message = await self.receive()
            if message is None:
                return
            if message[0] == "EVENT" and len(message) >= 3 and message[1] == subscription:
                if isinstance(message[2], dict):
                    yield message[2]
            elif message[0] == "CLOSED" and len(message) >= 2 and message[1] == subscription:
                return


class RelayConnector:
    source_type = SourceType.EVENT_RELAY

    def __init__(
        self,
        source: SourceDefinition,
        client_factory: Callable[[str], Any] = RelayClient,
    ) -> None:
        self.source = source
        self.config: RelayConfig = source.config
        self._client_factory = client_factory

    async def close(self) -> None:
        return None

    def build_filter(self) -> dict[str, Any]:
        config = self.config
        nostr_filter: dict[str, Any] = {"kinds": list(config.kinds or DEFAULT_KINDS)}
        if config.authors:
            nostr_filter["authors"] = list(config.authors)
        since = config.since
        if config.mode == "incremental" and self.source.last_sync_at is not None:
            watermark = int(self.source.last_sync_at.timestamp())
            since = max(since or 0, watermark)
        if since is not None:
            nostr_filter["since"] = since
        if config.until is not None:
            nostr_filter["until"] = config.until
        if config.limit is not None:
            nostr_filter["limit"] = config.limit
        for name, values in (config.tags or {}).items():
            nostr_filter[f"#{name.lstrip('#')}"] = list(values)
        return nostr_filter

    async def execute(self, run: RunContext) -> None:
        nostr_filter = self.build_filter()
        run.log(f"Connecting to {len(self.config.relays)} relay(s)")
        run.log(f"Filter: {json.dumps(nostr_filter, sort_keys=True)}")
        try:
            if self.config.subscribe_mode:
                await self._subscribe(run, nostr_filter)
            else:
                await self._sync(run, nostr_filter)
        except Exception as exc:
            await run.record_sync("failed", str(exc))
            raise
        await run.record_sync("success" if run.should_continue() else "stopped")

    async def _sync(self, run: RunContext, nostr_filter: dict[str, Any]) -> None:
        events: dict[str, dict[str, Any]] = {}
        failures = 0
        for relay in self.config.relays:
            if not run.should_continue():
                break
            try:
                async with self._client_factory(relay) as client:
                    fetched = await client.fetch_events(
                        nostr_filter, eose_timeout=self.config.eose_timeout
                    )
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
                failures += 1
                run.log(f"Relay {relay} unavailable: {exc}")
                continue
            for event in fetched:
                if event.get("id"):
                    events.setdefault(str(event["id"]), event)
            run.log(f"Fetched {len(fetched)} events from {relay}")

        if failures == len(self.config.relays):
            raise SourceUnavailableError("Unable to connect to any configured relay")

        total = len(events)
        run.log(f"Fetched {total} unique events")
        processed = indexed = skipped = 0
        for event_id, event in events.items():
            if not run.should_continue():
                break
            document = self._parse(run, event)
            if document is None:
                skipped += 1
            else:
                await run.emit_document(document)
                indexed += 1
            processed += 1
            run.progress(processed, total, event_id[:8])
        run.log(f"Processed {processed} events, indexed {indexed}, skipped {skipped}")

    def _parse(self, run: RunContext, event: dict[str, Any]) -> ExtractedDocument | None:
        try:
            return parse_event(event)
        except (TypeError, ValueError, OverflowError, OSError) as exc:
            run.log(f"Skipping malformed event {str(event.get('id'))[:8]}: {exc}")
            return None

    async def _subscribe(self, run: RunContext, nostr_filter: dict[str, Any]) -> None:
        run.log("Starting live subscription...")
        inbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        failures: list[str] = []
        readers = [
            asyncio.create_task(self._pump(run, relay, nostr_filter, inbox, failures))
            for relay in self.config.relays
        ]
        seen: set[str] = set()
        received = indexed = 0
        try:
            while run.should_continue():
                try:
                    event = await asyncio.wait_for(inbox.get(), timeout=LIVE_POLL_SECONDS)
                except asyncio.TimeoutError:
                    if all(reader.done() for reader in readers) and inbox.empty():
                        if len(failures) == len(readers):
                            raise SourceUnavailableError("Unable to connect to any configured relay")
                        run.log("All relay subscriptions closed")
                        break
                    continue
                event_id = str(event.get("id") or "")
                if not event_id or event_id in seen:
                    continue
                seen.add(event_id)
                received += 1
                document = self._parse(run, event)
                if document is not None:
                    await run.emit_document(document)
                    indexed += 1
                run.progress(indexed, received, event_id[:8])
        finally:
            for reader in readers:
                reader.cancel()
            await asyncio.gather(*readers, return_exceptions=True)
        run.log(f"Subscription closed. Total: {received} events, {indexed} indexed")

    async def _pump(
        self,
        run: RunContext,
        relay: str,
        nostr_filter: dict[str, Any],
        inbox: asyncio.Queue[dict[str, Any]],
        failures: list[str],
    ) -> None:
        try:
            async with self._client_factory(relay) as client:
                run.log(f"Subscribed to {relay}")
                async for event in client.stream(nostr_filter):
                    await inbox.put(event)
        except (aiohttp.ClientError, OSError) as exc:
            failures.append(relay)
            run.log(f"Relay {relay} subscription failed: {exc}")


registry.register(SourceType.EVENT_RELAY, RelayConnector)
