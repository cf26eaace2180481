from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


class Status(str, Enum):
    PREPARED = "PREPARED"
    QUEUED = "QUEUED"
    SENT = "SENT"
    POSTED = "POSTED"
    DELIVERED = "DELIVERED"
    BUSINESS = "BUSINESS"
    ANSWERED = "ANSWERED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"
    OVERLIMIT = "OVERLIMIT"


TERMINAL_STATUSES = frozenset(
    {Status.ANSWERED, Status.REJECTED, Status.FAILED, Status.TIMEOUT, Status.OVERLIMIT}
)

# statuses the timeout sweep may still move to TIMEOUT
OPEN_STATUSES = frozenset(
    {Status.PREPARED, Status.QUEUED, Status.SENT, Status.POSTED, Status.DELIVERED, Status.BUSINESS}
)


class DocumentTypeDescriptor(BaseModel):
    namespace: str
    name: str
    daily_quota: int = Field(ge=1)
    timeout_days: int = Field(default=0, ge=0)
    priority: int = Field(ge=1)
    keywords: list[str] = Field(default_factory=list)
    signing_key: str | None = None
    generation: Literal["plain", "packaged"] = "plain"
    document_key_path: str | None = None
    append_err_description: bool = False

    model_config = {"frozen": True}


class LogRecord(BaseModel):
    log_id: int | None = None
    correlation_id: str | None = None
    file_name: str | None = None
    document_type: str | None = None
    keywords: str | None = None
    document_key: str | None = None
    sequence: int | None = None
    status: Status
    external_message_id: str | None = None
    response_message_id: str | None = None
    receipt_timestamp: datetime | None = None
    send_timestamp: datetime | None = None
    response_timestamp: datetime | None = None
    processing_timestamp: datetime | None = None
    timeout_at: datetime | None = None
    err_source: str | None = None
    err_code: str | None = None
    err_description: str | None = None


class StatusUpdate(BaseModel):
    """Fields written together with a guarded status change.

    With ``append_description`` a new ``err_description`` is joined onto the stored
    one with ``"; "`` instead of replacing it.
    """

    status: Status
    response_timestamp: datetime | None = None
    err_source: str | None = None
    err_code: str | None = None
    err_description: str | None = None
    append_description: bool = False


class SyncRow(BaseModel):
    """One row reported by a gateway source for a sync stream."""

    correlation_id: str
    message_id: str | None = None
    timestamp: datetime
