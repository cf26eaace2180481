from __future__ import annotations

from datetime import date

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import PlainTextResponse

from docrelay.application import get_relay_service

router = APIRouter(tags=["queues"])


@router.get("/queues")
async def get_queues() -> dict:
    service = get_relay_service()
    return service.queue_snapshot()


@router.get("/quota")
async def get_quota() -> dict:
    service = get_relay_service()
    return service.quota_snapshot()


@router.get("/reports/daily", response_class=PlainTextResponse)
async def get_daily_report(day: str | None = Query(default=None)) -> PlainTextResponse:
    report_day: date | None = None
    if day:
        try:
            report_day = date.fromisoformat(day)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="day must be YYYY-MM-DD") from exc
    service = get_relay_service()
    return PlainTextResponse(service.daily_report(report_day), media_type="text/csv")
