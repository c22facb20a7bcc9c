"""In-process scheduler that starts due source runs through the dispatcher."""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from croniter import croniter

from connectors.config import SourceDefinition
from connectors.errors import ConnectorError
from workers.dispatcher import Dispatcher


logger = logging.getLogger(__name__)


def calculate_next_due(cron: str, last_run: datetime | None, now: datetime) -> datetime:
    """Return the next datetime matching the cron schedule."""

    base = last_run or now
    if base.tzinfo is None:
        base = base.replace(tzinfo=timezone.utc)
    iterator = croniter(cron, base)
    next_occurrence = iterator.get_next(datetime)
    if next_occurrence.tzinfo is None:
        next_occurrence = next_occurrence.replace(tzinfo=timezone.utc)
    return next_occurrence


def _parse_priority_waves() -> list[list[str]]:
    env = os.getenv("SOURCE_PRIORITY_WAVES", "").strip()
    if not env:
        return []
    waves: list[list[str]] = []
    for group in env.split(";"):
        names = [name.strip() for name in group.split(",") if name.strip()]
        if names:
            waves.append(names)
    return waves


def order_due_sources(sources: Iterable[SourceDefinition]) -> list[SourceDefinition]:
    """Order due sources by priority wave, keeping the original order otherwise."""
    pending = list({source.id: source for source in sources}.values())
    if not pending:
        return []
    remaining = {source.id for source in pending}
    ordered: list[SourceDefinition] = []
    for wave in _parse_priority_waves():
        for name in wave:
            for source in pending:
                if source.name == name and source.id in remaining:
                    ordered.append(source)
                    remaining.remove(source.id)
    for source in pending:
        if source.id in remaining:
            ordered.append(source)
            remaining.remove(source.id)
    return ordered


def compute_due_at(
    schedule: dict[str, Any] | None, last_started: datetime | None, now: datetime
) -> datetime | None:
    if not schedule:
        return None
    cron = schedule.get("cron")
    if cron:
        if not croniter.is_valid(cron):
            logger.warning("Ignoring invalid cron expression %r", cron)
            return None
        if last_started is None:
            return now
        return calculate_next_due(cron, last_started, now)
    seconds = schedule.get("seconds")
    if seconds:
        if last_started is None:
            return now
        if last_started.tzinfo is None:
            last_started = last_started.replace(tzinfo=timezone.utc)
        return last_started + timedelta(seconds=float(seconds))
    return None


class SyncScheduler:
    def __init__(self, dispatcher: Dispatcher, interval: float = 30.0) -> None:
        if dispatcher.sources is None:
            raise ValueError("Scheduling requires a dispatcher with a source store")
        self.dispatcher = dispatcher
        self.interval = interval

    async def tick(self, now: datetime | None = None) -> list[str]:
        """Start every due source once; returns the ids of the runs started."""
        current_time = now or datetime.now(timezone.utc)
        due: list[SourceDefinition] = []
        for source in await self.dispatcher.sources.list_scheduled():
            if self.dispatcher.is_running(source.id):
                logger.debug("Source %s already running", source.name)
                continue
            latest = self.dispatcher.get_run_status(source.id)
            if latest is None:
                latest = await self.dispatcher.history.latest(source.id)
            last_started = latest.started_at if latest is not None else None
            due_at = compute_due_at(source.schedule, last_started, current_time)
            if due_at is not None and due_at <= current_time:
                due.append(source)

        started: list[str] = []
        for source in order_due_sources(due):
            try:
                await self.dispatcher.start_run(source)
            except ConnectorError as exc:
                logger.warning("Scheduled run for %s rejected: %s", source.name, exc)
                continue
            logger.info("Started scheduled run for %s", source.name)
            started.append(source.id)
        return started

    async def run_forever(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            await asyncio.sleep(self.interval)
