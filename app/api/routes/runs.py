"""Run control endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from api.deps.dispatcher import get_dispatcher
from connectors.base import RunRecord
from connectors.errors import AlreadyRunningError, ConfigurationError, SourceNotFoundError
from workers.dispatcher import Dispatcher


router = APIRouter(prefix="/api/sources", tags=["runs"])


def _serialize_run(record: RunRecord, include_log: bool = False) -> dict[str, Any]:
    exclude = None if include_log else {"log"}
    return record.model_dump(mode="json", exclude=exclude)


@router.post("/{source_id}/run", status_code=status.HTTP_202_ACCEPTED)
async def start_run(source_id: str, dispatcher: Dispatcher = Depends(get_dispatcher)) -> dict[str, Any]:
    try:
        record = await dispatcher.start_run_by_id(source_id)
    except SourceNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except AlreadyRunningError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return _serialize_run(record)


@router.post("/{source_id}/stop")
def stop_run(source_id: str, dispatcher: Dispatcher = Depends(get_dispatcher)) -> dict[str, Any]:
    stopped = dispatcher.stop_run(source_id)
    return {
        "stopped": stopped,
        "message": "Stop requested" if stopped else "Source is not running",
    }


@router.get("/{source_id}/status")
def run_status(source_id: str, dispatcher: Dispatcher = Depends(get_dispatcher)) -> dict[str, Any]:
    record = dispatcher.get_run_status(source_id)
    if record is None:
        return {"source_id": source_id, "status": "idle"}
    return _serialize_run(record)


@router.get("/{source_id}/history")
async def run_history(
    source_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> dict[str, Any]:
    records, total = await dispatcher.get_run_history(source_id, page=page, page_size=page_size)
    return {
        "items": [_serialize_run(record) for record in records],
        "total": total,
        "page": page,
        "page_size": page_size,
    }
