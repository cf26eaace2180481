"""Application service wiring the relay workers together."""
from __future__ import annotations

import time
from datetime import date, datetime
from typing import Callable

from docrelay.core.schema import LogRecord, Status
from docrelay.core.settings import Settings
from docrelay.core.workqueue import WorkQueueDirectory
from docrelay.exporters.status_report_csv import render_status_report
from docrelay.infrastructure.converter import DocumentConverter, EnvelopeConverter
from docrelay.infrastructure.gateway_sources import GatewaySource, build_sources
from docrelay.infrastructure.logstore import DuckDBLogStore, LogStore
from docrelay.infrastructure.registry import DocumentTypeRegistry
from docrelay.infrastructure.signer import HttpSigningClient, SignerState, SigningService
from docrelay.workers.dispatcher import GATEWAY_STATES, PriorityDispatcher
from docrelay.workers.ingest import REQUEST_STATES, RequestIngestPipeline
from docrelay.workers.quota import QuotaAndCalendarManager
from docrelay.workers.responses import INBOUND_STATES, ResponseProcessor
from docrelay.workers.sync import REQUESTS, RESPONSES, SyncCatchupWorker


class RelayService:
    """Owns the shared state and the worker instances of one relay process."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: LogStore | None = None,
        registry: DocumentTypeRegistry | None = None,
        signing_service: SigningService | None = None,
        converter: DocumentConverter | None = None,
        sources: list[GatewaySource] | None = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.store = store or DuckDBLogStore(settings.database)
        self.registry = registry or DocumentTypeRegistry.from_yaml(settings.registry_file)

        if signing_service is None and settings.signer_url:
            signing_service = HttpSigningClient(
                settings.signer_url, token=settings.signer_token, timeout=settings.signer_timeout
            )
        self._signing_service = signing_service
        self.signer = SignerState(signing_service)
        converter = converter or EnvelopeConverter(settings.it_system)

        self.requests = WorkQueueDirectory(settings.requests_dir, REQUEST_STATES)
        self.outbound = WorkQueueDirectory(settings.gateway_outbound, GATEWAY_STATES)
        self.ensure_layout()

        self.quota = QuotaAndCalendarManager(
            self.store,
            self.requests,
            retention_days=settings.retention_days,
            reports_dir=settings.reports_dir,
            clock=clock,
        )
        self.ingest = RequestIngestPipeline(
            self.store,
            self.registry,
            self.quota,
            self.signer,
            converter,
            requests=self.requests,
            prepared_root=settings.prepared_dir,
            outbound_attachments=settings.outbound_attachments,
            settle_seconds=settings.settle_seconds,
            clock=clock,
        )
        self.dispatcher = PriorityDispatcher(
            self.registry,
            settings.prepared_dir,
            self.outbound,
            poll_interval=settings.dispatch_interval,
            sleep=sleep,
        )
        appended = [descriptor.name for descriptor in self.registry.descriptors() if descriptor.append_err_description]
        self.responses = [
            ResponseProcessor(
                self.store,
                converter,
                inbound=WorkQueueDirectory(instance.inbound, INBOUND_STATES),
                attachments=instance.attachments,
                output_dir=settings.responses_dir,
                requests=self.requests,
                gateway_outbound=self.outbound,
                name=instance.name,
                settle_seconds=settings.settle_seconds,
                append_descriptions=appended,
                clock=clock,
            )
            for instance in settings.gateway_instances
        ]
        sources = sources if sources is not None else build_sources(settings.sync_sources)
        self.request_sync = SyncCatchupWorker(REQUESTS, self.store, sources, floor=settings.initial_watermark)
        self.response_sync = SyncCatchupWorker(RESPONSES, self.store, sources, floor=settings.initial_watermark)

    def ensure_layout(self) -> None:
        self.requests.ensure()
        self.outbound.ensure()
        self.settings.prepared_dir.mkdir(parents=True, exist_ok=True)
        self.settings.responses_dir.mkdir(parents=True, exist_ok=True)
        for instance in self.settings.gateway_instances:
            WorkQueueDirectory(instance.inbound, INBOUND_STATES).ensure()

    # ------------------------------------------------------------------
    # monitoring
    # ------------------------------------------------------------------
    def get_record(self, correlation_id: str) -> LogRecord | None:
        return self.store.get_by_correlation(correlation_id)

    def list_records(self, status: Status | None = None, limit: int = 100) -> list[LogRecord]:
        return self.store.list_records(status=status, limit=limit)

    def queue_snapshot(self) -> dict[str, object]:
        tiers = {
            str(tier): len(WorkQueueDirectory(self.settings.prepared_dir / str(tier)).list())
            for tier in self.registry.priority_tiers()
        }
        return {
            "requests": {
                "incoming": len(self.requests.list()),
                **{state: len(self.requests.list(state)) for state in ("processed", "failed", "overlimit", "error")},
            },
            "tiers": tiers,
            "outbound_drained": self.outbound.is_drained(),
            "inbound": {
                instance.name: len(WorkQueueDirectory(instance.inbound, INBOUND_STATES).list())
                for instance in self.settings.gateway_instances
            },
        }

    def quota_snapshot(self) -> dict[str, object]:
        counters = self.quota.counters()
        return {
            "day": self.quota.current_day.isoformat(),
            "signer_available": self.signer.available,
            "items": [
                {
                    "document_type": descriptor.name,
                    "priority": descriptor.priority,
                    "used": counters.get(descriptor.name, 0),
                    "daily_quota": descriptor.daily_quota,
                }
                for descriptor in self.registry.descriptors()
            ],
        }

    def daily_report(self, day: date | None = None) -> str:
        return render_status_report(self.store.status_summary(day))

    def close(self) -> None:
        if isinstance(self._signing_service, HttpSigningClient):
            self._signing_service.close()
        if isinstance(self.store, DuckDBLogStore):
            self.store.close()


_service: RelayService | None = None


def configure_relay_service(service: RelayService) -> None:
    """Install the relay service used by the API and the worker runner."""

    global _service
    _service = service


def get_relay_service() -> RelayService:
    """Return the process relay service, building it from the environment on first use."""

    global _service
    if _service is None:
        _service = RelayService(Settings.from_env())
    return _service


def reset_relay_state() -> None:
    """Drop the process relay service (used in tests)."""

    global _service
    if _service is not None:
        _service.close()
    _service = None
