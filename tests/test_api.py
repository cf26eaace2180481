import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

sys.path.append(str(Path(__file__).resolve().parents[1]))

from conftest import ALPHA_NS, document

from docrelay.application import configure_relay_service


@pytest.fixture()
def client(service):
    configure_relay_service(service)
    from docrelay.app import create_app

    app = create_app()
    with TestClient(app) as test_client:
        yield test_client


def _submit(service, settings, name: str) -> str:
    (settings.requests_dir / name).write_bytes(document(ALPHA_NS, name=name))
    [result] = service.ingest.run_once()
    return result.correlation_id


def test_root_points_to_docs(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json()["docs"] == "/docs"


def test_log_record_lookup(client, service, settings):
    cid = _submit(service, settings, "query.xml")

    response = client.get(f"/api/log/{cid}")

    assert response.status_code == 200
    payload = response.json()
    assert payload["correlation_id"] == cid
    assert payload["status"] == "PREPARED"
    assert payload["document_type"] == "alpha"

    missing = client.get("/api/log/does-not-exist")
    assert missing.status_code == 404


def test_log_listing_filters_by_status(client, service, settings):
    for name in ("a.xml", "b.xml", "c.xml"):
        _submit(service, settings, name)

    everything = client.get("/api/log", params={"limit": 10}).json()["items"]
    parked = client.get("/api/log", params={"status": "overlimit"}).json()["items"]

    assert len(everything) == 3
    assert [item["file_name"] for item in parked] == ["c.xml"]
    assert client.get("/api/log", params={"status": "bogus"}).status_code == 400


def test_queue_and_quota_snapshots(client, service, settings):
    _submit(service, settings, "query.xml")
    (settings.requests_dir / "waiting.xml").write_bytes(b"<pending/>")

    queues = client.get("/api/queues").json()
    quota = client.get("/api/quota").json()

    assert queues["requests"]["incoming"] == 1
    assert queues["requests"]["processed"] == 1
    assert queues["tiers"] == {"1": 1, "2": 0}
    assert queues["outbound_drained"] is True
    assert queues["inbound"] == {"primary": 0}

    alpha = next(item for item in quota["items"] if item["document_type"] == "alpha")
    assert alpha == {"document_type": "alpha", "priority": 1, "used": 1, "daily_quota": 2}
    assert quota["signer_available"] is True


def test_daily_report_is_csv(client, service, settings):
    _submit(service, settings, "query.xml")

    response = client.get("/api/reports/daily")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert response.text.splitlines() == ["document_type,status,total", "alpha,PREPARED,1"]
    assert client.get("/api/reports/daily", params={"day": "yesterday"}).status_code == 400
