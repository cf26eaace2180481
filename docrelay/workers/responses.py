from __future__ import annotations

import logging
import os
import uuid
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterable

from docrelay.core.archive import entry_name, pack
from docrelay.core.errors import (
    AttachmentMissingError,
    ClassificationError,
    CorrelationUnresolvedError,
    Outcome,
    RelayError,
    RetryableIOError,
)
from docrelay.core.schema import LogRecord, Status, StatusUpdate
from docrelay.core.workqueue import PARTIAL_SUFFIX, WorkQueueDirectory, is_accessible
from docrelay.core.xmlio import iter_local, parse_settled, text_of
from docrelay.infrastructure.converter import CONTAINER_NS, DocumentConverter
from docrelay.infrastructure.logstore import LogStore
from docrelay.workers.classifier import (
    ParsedResponse,
    ResponseKind,
    business_status_details,
    classify,
    error_details,
    reject_details,
    status_from_description,
)
from docrelay.workers.ingest import ERROR, PROCESSED

logger = logging.getLogger(__name__)

INBOUND_STATES = ("processed", "failed")

# statuses whose description is appended for types with append_err_description
APPENDED_STATUSES = frozenset({Status.BUSINESS, Status.REJECTED, Status.FAILED})


@dataclass(slots=True)
class ResponseResult:
    file_name: str
    outcome: Outcome
    kind: ResponseKind | None = None
    correlation_id: str | None = None
    error: str | None = None


def _write_atomically(target: Path, content: bytes) -> Path:
    partial = target.with_name(target.name + PARTIAL_SUFFIX)
    partial.write_bytes(content)
    os.replace(partial, target)
    return target


def _pack_atomically(target: Path, members: Iterable[tuple[str, bytes | Path]]) -> Path:
    partial = target.with_name(target.name + PARTIAL_SUFFIX)
    pack(partial, members)
    os.replace(partial, target)
    return target


def _attachment_ready(path: Path) -> bool:
    """An attachment is usable once it exists, is non-empty and nobody is writing it."""

    try:
        if not path.is_file() or path.stat().st_size == 0:
            return False
    except FileNotFoundError:
        return False
    return is_accessible(path)


class ResponseProcessor:
    """Consumes one gateway instance's inbound folder."""

    def __init__(
        self,
        store: LogStore,
        converter: DocumentConverter,
        *,
        inbound: WorkQueueDirectory,
        attachments: Path,
        output_dir: Path,
        requests: WorkQueueDirectory,
        gateway_outbound: WorkQueueDirectory,
        name: str = "primary",
        settle_seconds: float = 60.0,
        append_descriptions: Iterable[str] = (),
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.name = name
        self._append_types = frozenset(append_descriptions)
        self._store = store
        self._converter = converter
        self._inbound = inbound
        self._attachments = Path(attachments)
        self._output_dir = Path(output_dir)
        self._requests = requests
        self._gateway_outbound = gateway_outbound
        self._settle = timedelta(seconds=settle_seconds)
        self._clock = clock

    def run_once(self) -> list[ResponseResult]:
        self._output_dir.mkdir(parents=True, exist_ok=True)
        return [self.process(item) for item in self._inbound.list()]

    def process(self, path: Path) -> ResponseResult:
        try:
            return self._process(path)
        except RelayError as exc:
            return self._route_error(path, exc)
        except OSError as exc:
            return self._route_error(path, RetryableIOError(str(exc), source="filesystem"))

    # ------------------------------------------------------------------
    # dispatch per kind
    # ------------------------------------------------------------------
    def _process(self, path: Path) -> ResponseResult:
        now = self._clock()
        root = parse_settled(path, settle=self._settle, now=now)
        parsed = classify(root)

        if parsed.kind is ResponseKind.INBOUND_REQUEST:
            self._answer_inbound_request(path, root, parsed, now)
            self._inbound.transition(path.name, None, PROCESSED)
            return ResponseResult(path.name, Outcome.PROCESSED, kind=parsed.kind)

        try:
            record = self._correlate(parsed)
        except CorrelationUnresolvedError as exc:
            logger.info("[%s] %s: %s", self.name, path.name, exc.description)
            record = None

        output_name = record.file_name if record and record.file_name else path.name
        update = self._handle(parsed, root, output_name, record, now)

        correlation_id = record.correlation_id if record else None
        if update is not None and record is None:
            self._log_unmatched(path, parsed, update)
        elif update is not None:
            self._apply(path, record, update, now)

        self._inbound.transition(path.name, None, PROCESSED)
        return ResponseResult(path.name, Outcome.PROCESSED, kind=parsed.kind, correlation_id=correlation_id)

    def _handle(
        self,
        parsed: ParsedResponse,
        root: ET.Element,
        output_name: str,
        record: LogRecord | None,
        now: datetime,
    ) -> StatusUpdate | None:
        kind = parsed.kind
        if kind is ResponseKind.PRIMARY:
            self._write_primary(root, parsed, output_name)
            return StatusUpdate(status=Status.ANSWERED, response_timestamp=now)

        if kind is ResponseKind.STATUS:
            status = status_from_description(root)
            if status is None:
                logger.info("[%s] unknown delivery status for %s ignored", self.name, parsed.reply_to)
            return StatusUpdate(status=status) if status is not None else None

        if kind is ResponseKind.BUSINESS_STATUS:
            code, description = business_status_details(root, parsed.family)
            return StatusUpdate(status=Status.BUSINESS, err_code=code, err_description=description)

        if kind is ResponseKind.REJECT:
            _write_atomically(self._output_dir / output_name, self._converter.extract_payload(root))
            code, description = reject_details(root)
            return StatusUpdate(
                status=Status.REJECTED, response_timestamp=now, err_code=code, err_description=description
            )

        if kind is ResponseKind.ERROR:
            source, code, description = error_details(root)
            if record is not None and record.file_name:
                self._return_request(record.file_name)
            logger.error("[%s] gateway error for %s [%s/%s]: %s", self.name, parsed.reply_to, source, code, description)
            return StatusUpdate(
                status=Status.FAILED,
                response_timestamp=now,
                err_source=source,
                err_code=code,
                err_description=description,
            )

        raise ClassificationError(f"no handler for {kind.value}", source="classifier")

    # ------------------------------------------------------------------
    # correlation
    # ------------------------------------------------------------------
    def _correlate(self, parsed: ParsedResponse) -> LogRecord:
        correlation_id = parsed.reply_to
        if correlation_id is None and parsed.original_message_id:
            correlation_id = self._store.find_correlation_by_message_id(parsed.original_message_id)
        if correlation_id is None:
            raise CorrelationUnresolvedError(
                f"response {parsed.message_id or parsed.client_id} references no known request",
                source="correlation",
            )
        record = self._store.get_by_correlation(correlation_id)
        if record is None:
            raise CorrelationUnresolvedError(
                f"request {correlation_id} is not in the log", source="correlation"
            )
        return record

    def _apply(self, path: Path, record: LogRecord, update: StatusUpdate, now: datetime) -> None:
        if record.document_type in self._append_types and update.status in APPENDED_STATUSES:
            update = update.model_copy(update={"append_description": True})
        if not self._store.apply_status(record.correlation_id, update, now=now):
            logger.info(
                "[%s] %s: %s ignored for %s in status %s",
                self.name,
                path.name,
                update.status.value,
                record.correlation_id,
                record.status.value,
            )

    def _log_unmatched(self, path: Path, parsed: ParsedResponse, update: StatusUpdate) -> None:
        now = self._clock()
        self._store.insert_record(
            LogRecord(
                file_name=path.name,
                status=update.status,
                response_message_id=parsed.message_id,
                receipt_timestamp=now,
                processing_timestamp=now,
                response_timestamp=update.response_timestamp,
                err_source=update.err_source,
                err_code=update.err_code,
                err_description=update.err_description,
            )
        )

    # ------------------------------------------------------------------
    # side effects
    # ------------------------------------------------------------------
    def _return_request(self, file_name: str) -> None:
        """Move the failed request back to ``error`` so the producer can resubmit it."""

        try:
            self._requests.transition(file_name, PROCESSED, ERROR)
        except RetryableIOError as exc:
            logger.warning("[%s] request %s could not be moved to error: %s", self.name, file_name, exc)

    def _locate_attachment(self, header: ET.Element, client_id: str | None) -> Path:
        file_path = text_of(header, "filePath")
        if not file_path:
            raise ClassificationError("attachment header without filePath", source="attachments")
        attachment_id = text_of(header, "Id")

        candidates: list[Path] = []
        if attachment_id and client_id:
            candidates.append(self._attachments / attachment_id / client_id / file_path)
        if client_id:
            candidates.append(self._attachments / client_id / file_path)
        if attachment_id and not client_id:
            candidates.append(self._attachments / attachment_id / file_path)
        for candidate in candidates:
            if _attachment_ready(candidate):
                return candidate
        raise AttachmentMissingError(
            f"attachment {file_path} (id {attachment_id}) is not available yet", source="attachments"
        )

    def _write_primary(self, root: ET.Element, parsed: ParsedResponse, output_name: str) -> None:
        payload = self._converter.extract_payload(root)
        headers = list(iter_local(root, "AttachmentHeader"))
        if not headers:
            _write_atomically(self._output_dir / output_name, payload)
            return

        files = [self._locate_attachment(header, parsed.client_id) for header in headers]
        members: list[tuple[str, bytes | Path]] = [(output_name, payload)]
        members.extend((entry_name(item.name), item) for item in files)
        _pack_atomically(self._output_dir / f"{Path(output_name).stem}.zip", members)

    def _answer_inbound_request(self, path: Path, root: ET.Element, parsed: ParsedResponse, now: datetime) -> None:
        """Split a document container into one answer per document and acknowledge it."""

        client_id = parsed.client_id or path.stem
        plans: list[tuple[str, Path, str, LogRecord | None]] = []
        for document in iter_local(root, "Document", CONTAINER_NS):
            key = text_of(document, "IncomingDocKey")
            if not key:
                raise ClassificationError("container document without IncomingDocKey", source="classifier")
            attachment_name = text_of(document, "AttachmentFilename")
            if not attachment_name:
                raise ClassificationError(f"container document {key} references no attachment", source="classifier")
            attachment = self._attachments / client_id / attachment_name
            if not _attachment_ready(attachment):
                raise AttachmentMissingError(
                    f"attachment {attachment_name} of document {key} is not available yet", source="attachments"
                )
            record = self._store.find_by_document_key(key)
            request_name = record.file_name if record and record.file_name else f"{client_id}.xml"
            plans.append((key, attachment, request_name, record))

        for key, attachment, request_name, record in plans:
            content = self._converter.split_container(root, key)
            _pack_atomically(
                self._output_dir / f"{Path(request_name).stem}.zip",
                [(request_name, content), (attachment.name, attachment)],
            )
            if record is None or record.correlation_id is None:
                logger.error("[%s] no request found for document key %s", self.name, key)
                continue
            self._store.apply_status(
                record.correlation_id, StatusUpdate(status=Status.ANSWERED, response_timestamp=now), now=now
            )

        acknowledgement = self._converter.acknowledge(root, timestamp=now)
        _write_atomically(self._gateway_outbound.path() / f"{uuid.uuid4()}.xml", acknowledgement)
        logger.info("[%s] answered inbound request %s with %d documents", self.name, path.name, len(plans))

    def _route_error(self, path: Path, exc: RelayError) -> ResponseResult:
        outcome = exc.outcome
        if outcome is Outcome.FAILED:
            logger.error("[%s] response %s failed [%s/%s]: %s", self.name, path.name, exc.source, exc.code, exc.description)
            try:
                self._inbound.transition(path.name, None, "failed")
            except RetryableIOError as move_exc:
                logger.warning("[%s] could not move %s to failed: %s", self.name, path.name, move_exc)
                outcome = Outcome.DEFERRED
        else:
            logger.info("[%s] response %s deferred: %s", self.name, path.name, exc.description)
            outcome = Outcome.DEFERRED
        return ResponseResult(path.name, outcome, error=exc.description)
