from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query

from docrelay.application import get_relay_service
from docrelay.core.schema import Status

router = APIRouter(prefix="/log", tags=["log"])


@router.get("")
async def list_log_records(
    status: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
) -> dict:
    wanted: Status | None = None
    if status:
        try:
            wanted = Status(status.upper())
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"unknown status {status}") from exc
    service = get_relay_service()
    records = service.list_records(wanted, limit)
    return {"items": [record.model_dump(mode="json") for record in records]}


@router.get("/{correlation_id}")
async def get_log_record(correlation_id: str) -> dict:
    service = get_relay_service()
    record = service.get_record(correlation_id)
    if record is None:
        raise HTTPException(status_code=404, detail="record not found")
    return record.model_dump(mode="json")
