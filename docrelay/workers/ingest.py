from __future__ import annotations

import logging
import shutil
import uuid
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Callable

from docrelay.core.archive import pack
from docrelay.core.errors import (
    ClassificationError,
    ConversionError,
    Outcome,
    QuotaExceededError,
    RelayError,
    RetryableIOError,
)
from docrelay.core.schema import DocumentTypeDescriptor, LogRecord, Status
from docrelay.core.workqueue import WorkQueueDirectory, move_file
from docrelay.core.xmlio import extract_first, extract_keywords, local_name, namespace_of, parse_settled
from docrelay.infrastructure.converter import AttachmentRef, DocumentConverter
from docrelay.infrastructure.logstore import LogStore
from docrelay.infrastructure.registry import DocumentTypeRegistry
from docrelay.infrastructure.signer import SignerState
from docrelay.workers.quota import QuotaAndCalendarManager

logger = logging.getLogger(__name__)

PROCESSED = "processed"
FAILED = "failed"
OVERLIMIT = "overlimit"
ERROR = "error"
SIGN = "sign"
REQUEST_STATES = (PROCESSED, FAILED, OVERLIMIT, ERROR, SIGN)


@dataclass(slots=True)
class IngestResult:
    file_name: str
    outcome: Outcome
    correlation_id: str | None = None
    error: str | None = None


@dataclass(slots=True)
class GeneratedRequest:
    """Artifacts produced for one request inside its scratch directory."""

    envelope: Path
    placements: list[tuple[Path, Path]] = field(default_factory=list)


class RequestIngestPipeline:
    """Turns files dropped into the requests folder into prepared gateway envelopes."""

    def __init__(
        self,
        store: LogStore,
        registry: DocumentTypeRegistry,
        quota: QuotaAndCalendarManager,
        signer: SignerState,
        converter: DocumentConverter,
        *,
        requests: WorkQueueDirectory,
        prepared_root: Path,
        outbound_attachments: Path,
        settle_seconds: float = 60.0,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._store = store
        self._registry = registry
        self._quota = quota
        self._signer = signer
        self._converter = converter
        self._requests = requests
        self._prepared_root = Path(prepared_root)
        self._attachments = Path(outbound_attachments)
        self._settle = timedelta(seconds=settle_seconds)
        self._clock = clock
        self._stranded: dict[str, str] = {}

    def tier_dir(self, priority: int) -> Path:
        folder = self._prepared_root / str(priority)
        folder.mkdir(parents=True, exist_ok=True)
        return folder

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------
    def run_once(self) -> list[IngestResult]:
        self._quota.check_rollover()
        self._signer.refresh()
        results: list[IngestResult] = []
        try:
            for item in self._requests.list():
                results.append(self.process(item))
        finally:
            self._quota.persist()
        return results

    def process(self, path: Path) -> IngestResult:
        try:
            correlation_id = self._stranded.get(path.name)
            if correlation_id is not None:
                return self._finish(path, correlation_id)
            return self._process(path)
        except RelayError as exc:
            return self._route_error(path, exc)
        except OSError as exc:
            return self._route_error(path, RetryableIOError(str(exc), source="filesystem"))

    # ------------------------------------------------------------------
    # steps
    # ------------------------------------------------------------------
    def _process(self, path: Path) -> IngestResult:
        root = parse_settled(path, settle=self._settle, now=self._clock())
        namespace = namespace_of(root)
        descriptor = self._registry.lookup(namespace)
        if descriptor is None:
            raise ClassificationError(
                f"unknown document type {namespace or local_name(root)!r}", source="registry"
            )

        keywords = extract_keywords(root, descriptor.keywords)
        document_key = extract_first(root, descriptor.document_key_path) if descriptor.document_key_path else None
        if descriptor.signing_key:
            self._signer.require()

        now = self._clock()
        sequence = self._quota.next_sequence(descriptor.name)
        if sequence > descriptor.daily_quota:
            self._store.insert_record(
                LogRecord(
                    file_name=path.name,
                    document_type=descriptor.name,
                    keywords=keywords,
                    document_key=document_key,
                    sequence=sequence,
                    status=Status.OVERLIMIT,
                    receipt_timestamp=now,
                    processing_timestamp=now,
                )
            )
            raise QuotaExceededError(
                f"{descriptor.name} daily quota {descriptor.daily_quota} exhausted (item {sequence})",
                source="quota",
            )

        correlation_id = str(uuid.uuid4())
        timeout_at = now + timedelta(days=descriptor.timeout_days)

        with TemporaryDirectory(prefix=f"{correlation_id}-", dir=self._requests.path(SIGN)) as scratch:
            generated = self._generate(path, root, descriptor, correlation_id, Path(scratch))
            for source, target in generated.placements:
                move_file(source, target)
            self._store.insert_record(
                LogRecord(
                    correlation_id=correlation_id,
                    file_name=path.name,
                    document_type=descriptor.name,
                    keywords=keywords,
                    document_key=document_key,
                    sequence=sequence,
                    status=Status.PREPARED,
                    receipt_timestamp=now,
                    processing_timestamp=now,
                    timeout_at=timeout_at,
                )
            )
            move_file(generated.envelope, self.tier_dir(descriptor.priority) / generated.envelope.name)

        logger.info("prepared %s as %s (%s #%d)", path.name, correlation_id, descriptor.name, sequence)
        return self._finish(path, correlation_id)

    def _finish(self, path: Path, correlation_id: str) -> IngestResult:
        """Move a prepared source file out of the intake folder.

        The envelope and PREPARED record already exist at this point. A failed move
        remembers the correlation id so later passes retry only the move.
        """

        try:
            self._requests.transition(path.name, None, PROCESSED)
        except (RetryableIOError, OSError) as exc:
            self._stranded[path.name] = correlation_id
            logger.error("%s prepared as %s but not moved to %s: %s", path.name, correlation_id, PROCESSED, exc)
        else:
            self._stranded.pop(path.name, None)
        return IngestResult(path.name, Outcome.PROCESSED, correlation_id=correlation_id)

    def _generate(
        self,
        path: Path,
        root: ET.Element,
        descriptor: DocumentTypeDescriptor,
        correlation_id: str,
        scratch: Path,
    ) -> GeneratedRequest:
        placements: list[tuple[Path, Path]] = []
        document = root
        signature: bytes | None = None
        attachment: AttachmentRef | None = None
        try:
            if descriptor.generation == "packaged":
                document, attachment, archive = self._package(path, root, descriptor, correlation_id, scratch)
                placements.append((archive, self._attachments / f"a{correlation_id}" / archive.name))
            elif descriptor.signing_key:
                signature = self._signer.sign(path.read_bytes(), descriptor.signing_key)

            envelope = scratch / f"{correlation_id}.xml"
            envelope.write_bytes(
                self._converter.build_envelope(
                    document, correlation_id=correlation_id, signature=signature, attachment=attachment
                )
            )
        except (OSError, ValueError, TypeError) as exc:
            raise ConversionError(f"cannot convert {path.name}: {exc}", source="converter") from exc
        return GeneratedRequest(envelope=envelope, placements=placements)

    def _package(
        self,
        path: Path,
        root: ET.Element,
        descriptor: DocumentTypeDescriptor,
        correlation_id: str,
        scratch: Path,
    ) -> tuple[ET.Element, AttachmentRef, Path]:
        """Build the signed statement archive and the request body referencing it."""

        statement = scratch / path.name
        shutil.copyfile(path, statement)
        description = scratch / "request.xml"
        description.write_bytes(self._converter.describe(root, descriptor, path.name))

        members: list[tuple[str, bytes | Path]] = [(statement.name, statement), (description.name, description)]
        alias = descriptor.signing_key
        if alias:
            members.append((f"{statement.name}.sig", self._signer.sign(statement.read_bytes(), alias)))
            members.append((f"{description.name}.sig", self._signer.sign(description.read_bytes(), alias)))

        archive_name = f"a{correlation_id}.zip"
        archive = pack(scratch / archive_name, members)
        archive_signature = self._signer.sign(archive.read_bytes(), alias) if alias else None

        body = self._converter.rewrite_request(
            root, descriptor, correlation_id=correlation_id, archive_name=archive_name
        )
        reference = AttachmentRef(file_path=f"a{correlation_id}/{archive_name}", signature=archive_signature)
        return body, reference, archive

    def _route_error(self, path: Path, exc: RelayError) -> IngestResult:
        outcome = exc.outcome
        target = {Outcome.FAILED: FAILED, Outcome.OVERLIMIT: OVERLIMIT}.get(outcome)
        if target is not None:
            try:
                self._requests.transition(path.name, None, target)
            except RetryableIOError as move_exc:
                logger.warning("could not move %s to %s: %s", path.name, target, move_exc)
                return IngestResult(path.name, Outcome.DEFERRED, error=str(move_exc))

        if outcome is Outcome.FAILED:
            logger.error("request %s failed [%s/%s]: %s", path.name, exc.source, exc.code, exc.description)
        elif outcome is Outcome.OVERLIMIT:
            logger.info("request %s parked: %s", path.name, exc.description)
        else:
            logger.info("request %s deferred: %s", path.name, exc.description)
        return IngestResult(path.name, outcome, error=exc.description)
