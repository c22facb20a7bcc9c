"""Run log tail endpoint."""

from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Query

from api.deps.dispatcher import get_dispatcher
from workers.dispatcher import DEFAULT_LOG_LIMIT, Dispatcher


router = APIRouter(prefix="/api/sources", tags=["logs"])


@router.get("/{source_id}/logs")
async def tail_logs(
    source_id: str,
    limit: int = Query(DEFAULT_LOG_LIMIT, ge=1, le=1000),
    level: Literal["error", "warn", "info"] | None = None,
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> list[dict[str, Any]]:
    entries = await dispatcher.get_run_logs(source_id, limit=limit, level=level)
    return [entry.model_dump(mode="json") for entry in entries]
