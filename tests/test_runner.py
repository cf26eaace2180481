from __future__ import annotations

import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from conftest import ALPHA_NS, document

from docrelay.core.schema import Status
from docrelay.workers.runner import build_steps, run_once


def test_steps_follow_enable_flags(service):
    names = [name for name, _, _ in build_steps(service)]
    assert names == ["ingest", "dispatch", "responses-primary", "sync-requests", "sync-responses"]

    service.settings.sync_enabled = False
    service.settings.dispatch_enabled = False
    assert [name for name, _, _ in build_steps(service)] == ["ingest", "responses-primary"]


def test_single_pass_moves_request_to_gateway(service, settings, store):
    (settings.requests_dir / "query.xml").write_bytes(document(ALPHA_NS))

    run_once(service)

    [envelope] = [item for item in settings.gateway_outbound.iterdir() if item.is_file()]
    record = store.get_by_correlation(envelope.stem)
    assert record.status is Status.PREPARED
    assert record.file_name == "query.xml"
