from __future__ import annotations

import os
import sys
from datetime import timedelta
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from conftest import ALPHA_NS, document

from docrelay.application import RelayService
from docrelay.core.errors import Outcome, RetryableIOError
from docrelay.core.schema import DocumentTypeDescriptor, Status
from docrelay.infrastructure.registry import DocumentTypeRegistry
from docrelay.workers.quota import CURRENT_DAY_MARKER, QuotaAndCalendarManager


def _drop(settings, name: str, namespace: str = ALPHA_NS) -> Path:
    path = settings.requests_dir / name
    path.write_bytes(document(namespace, name=name))
    return path


def test_sequence_is_counted_per_type_and_persisted(service, store):
    quota = service.quota
    assert quota.next_sequence("alpha") == 1
    assert quota.next_sequence("alpha") == 2
    assert quota.next_sequence("beta") == 1
    quota.persist()

    assert store.load_counters(quota.current_day) == {"alpha": 2, "beta": 1}
    assert store.get_marker(CURRENT_DAY_MARKER) == quota.current_day.isoformat()


def test_counters_are_reloaded_for_the_marker_day(service, store, clock):
    service.quota.next_sequence("alpha")
    service.quota.persist()

    restarted = QuotaAndCalendarManager(store, service.requests, clock=clock)

    assert restarted.count("alpha") == 1
    assert restarted.next_sequence("alpha") == 2


def test_items_over_quota_are_parked_until_the_next_day(service, settings, store, clock):
    for name in ("a1.xml", "a2.xml", "a3.xml"):
        _drop(settings, name)

    results = service.ingest.run_once()

    assert [result.outcome for result in results] == [Outcome.PROCESSED, Outcome.PROCESSED, Outcome.OVERLIMIT]
    parked = settings.requests_dir / "overlimit" / "a3.xml"
    assert parked.exists()
    overlimit = store.list_records(status=Status.OVERLIMIT)
    assert len(overlimit) == 1
    assert overlimit[0].correlation_id is None
    assert overlimit[0].sequence == 3

    clock.advance(days=1)
    results = service.ingest.run_once()

    assert [result.outcome for result in results] == [Outcome.PROCESSED]
    assert not parked.exists()
    assert (settings.requests_dir / "processed" / "a3.xml").exists()
    assert service.quota.count("alpha") == 1


def test_rollover_sweeps_timeouts_and_writes_daily_report(service, settings, store, clock):
    _drop(settings, "a1.xml")
    [result] = service.ingest.run_once()
    first_day = service.quota.current_day

    clock.advance(days=1)
    assert service.quota.check_rollover() is True
    assert service.quota.check_rollover() is False

    assert store.get_by_correlation(result.correlation_id).status is Status.TIMEOUT
    report = settings.reports_dir / f"status-{first_day.isoformat()}.csv"
    assert report.exists()
    lines = report.read_text(encoding="utf-8").splitlines()
    assert lines[0] == "document_type,status,total"
    assert lines[1] == "alpha,TIMEOUT,1"
    assert store.get_marker(CURRENT_DAY_MARKER) == service.quota.current_day.isoformat()
    assert service.quota.counters() == {}


@pytest.mark.parametrize("quota,arrivals", [(1, 1), (1, 3), (3, 3), (3, 5)])
def test_nth_item_is_processed_only_within_quota(store, settings, clock, quota, arrivals):
    descriptor = DocumentTypeDescriptor(namespace=ALPHA_NS, name="alpha", daily_quota=quota, priority=1)
    service = RelayService(
        settings,
        store=store,
        registry=DocumentTypeRegistry([descriptor]),
        sources=[],
        clock=clock,
        sleep=lambda _: None,
    )
    for index in range(arrivals):
        _drop(settings, f"item-{index:02d}.xml")
        os.utime(settings.requests_dir / f"item-{index:02d}.xml", (1_000_000 + index, 1_000_000 + index))

    results = service.ingest.run_once()

    expected = [Outcome.PROCESSED] * min(quota, arrivals) + [Outcome.OVERLIMIT] * max(arrivals - quota, 0)
    assert [result.outcome for result in results] == expected
    assert len(service.requests.list("processed")) == min(quota, arrivals)
    assert len(service.requests.list("overlimit")) == max(arrivals - quota, 0)


def test_interrupted_rollover_is_completed_on_the_next_call(service, settings, store, clock, monkeypatch):
    for name in ("a1.xml", "a2.xml", "a3.xml"):
        _drop(settings, name)
    results = service.ingest.run_once()
    first_day = service.quota.current_day
    prepared = [result.correlation_id for result in results if result.correlation_id]

    original = store.set_marker
    failures = iter([RetryableIOError("log store unavailable", source="logstore")])

    def flaky_set_marker(key, value):
        failure = next(failures, None)
        if failure is not None:
            raise failure
        original(key, value)

    monkeypatch.setattr(store, "set_marker", flaky_set_marker)
    clock.advance(days=1)

    with pytest.raises(RetryableIOError):
        service.quota.check_rollover()
    assert service.quota.current_day == first_day
    assert store.get_marker(CURRENT_DAY_MARKER) == first_day.isoformat()

    assert service.quota.check_rollover() is True

    assert [item.name for item in service.requests.list()] == ["a3.xml"]
    assert service.requests.list("overlimit") == []
    assert store.load_counters(first_day) == {"alpha": 3}
    assert [store.get_by_correlation(cid).status for cid in prepared] == [Status.TIMEOUT, Status.TIMEOUT]
    assert store.get_marker(CURRENT_DAY_MARKER) == service.quota.current_day.isoformat()
    assert service.quota.current_day == first_day + timedelta(days=1)
    assert service.quota.check_rollover() is False
