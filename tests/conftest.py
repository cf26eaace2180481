from __future__ import annotations

import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from docrelay.application import RelayService, reset_relay_state
from docrelay.core.errors import SigningError
from docrelay.core.schema import DocumentTypeDescriptor
from docrelay.core.settings import GatewayInstance, Settings
from docrelay.infrastructure.logstore import DuckDBLogStore
from docrelay.infrastructure.registry import DocumentTypeRegistry

ALPHA_NS = "urn://example/alpha/1.0"
BETA_NS = "urn://example/beta/1.0"
STATEMENT_NS = "urn://example/statement/1.0"


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeSigningService:
    def __init__(self) -> None:
        self.healthy = True
        self.fail = False
        self.calls: list[tuple[bytes, str]] = []

    def sign(self, content: bytes, key_alias: str) -> bytes:
        if self.fail:
            raise SigningError("token not present", source="signer")
        self.calls.append((content, key_alias))
        return f"SIG:{key_alias}".encode("ascii")

    def check_health(self) -> bool:
        return self.healthy


def document(namespace: str, name: str = "Alice", root: str = "Query") -> bytes:
    return (
        f'<?xml version="1.0" encoding="UTF-8"?>'
        f'<a:{root} xmlns:a="{namespace}"><a:Name>{name}</a:Name><a:Code>42</a:Code></a:{root}>'
    ).encode("utf-8")


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def registry() -> DocumentTypeRegistry:
    return DocumentTypeRegistry(
        [
            DocumentTypeDescriptor(
                namespace=ALPHA_NS,
                name="alpha",
                daily_quota=2,
                timeout_days=1,
                priority=1,
                keywords=[f".//{{{ALPHA_NS}}}Name", f".//{{{ALPHA_NS}}}Code"],
            ),
            DocumentTypeDescriptor(
                namespace=BETA_NS,
                name="beta",
                daily_quota=5,
                timeout_days=3,
                priority=2,
                keywords=[f".//{{{BETA_NS}}}Name"],
                signing_key="beta-key",
                document_key_path=f".//{{{BETA_NS}}}Code",
            ),
            DocumentTypeDescriptor(
                namespace=STATEMENT_NS,
                name="statement",
                daily_quota=5,
                timeout_days=10,
                priority=2,
                signing_key="statement-key",
                generation="packaged",
                append_err_description=True,
            ),
        ]
    )


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    gateway = tmp_path / "gateway"
    return Settings(
        exchange_root=tmp_path / "exchange",
        gateway_outbound=gateway / "out",
        outbound_attachments=gateway / "attachments_out",
        gateway_instances=[
            GatewayInstance(name="primary", inbound=gateway / "in", attachments=gateway / "attachments")
        ],
        reports_dir=tmp_path / "reports",
        dispatch_interval=0.0,
        settle_seconds=60.0,
    )


@pytest.fixture()
def store():
    log_store = DuckDBLogStore(":memory:")
    yield log_store
    log_store.close()


@pytest.fixture()
def signing_service() -> FakeSigningService:
    return FakeSigningService()


@pytest.fixture()
def service(settings, store, registry, signing_service, clock) -> RelayService:
    return RelayService(
        settings,
        store=store,
        registry=registry,
        signing_service=signing_service,
        sources=[],
        clock=clock,
        sleep=lambda _: None,
    )


@pytest.fixture(autouse=True)
def reset_state():
    reset_relay_state()
    yield
    reset_relay_state()


ADAPTER_NS = "urn://x-artefacts-smev-gov-ru/services/service-adapter/types"
FAULTS_NS = "urn://x-artefacts-smev-gov-ru/services/service-adapter/types/faults"


def response(
    message_type: str,
    *,
    reply_to: str | None = None,
    body: str = "",
    metadata: str = "",
    client_id: str = "resp-1",
    message_id: str = "gw-msg-1",
) -> bytes:
    """Gateway response envelope with ``body`` placed inside the message content."""

    reply = f"<tns:replyToClientId>{reply_to}</tns:replyToClientId>" if reply_to else ""
    return (
        f'<?xml version="1.0" encoding="UTF-8"?>'
        f'<tns:QueryResult xmlns:tns="{ADAPTER_NS}">'
        f"<tns:smevMetadata><tns:MessageId>{message_id}</tns:MessageId>{metadata}</tns:smevMetadata>"
        f"<tns:Message><tns:messageType>{message_type}</tns:messageType>"
        f"<tns:ResponseMetadata><tns:clientId>{client_id}</tns:clientId>{reply}</tns:ResponseMetadata>"
        f"<tns:ResponseContent><tns:content>{body}</tns:content></tns:ResponseContent>"
        f"</tns:Message></tns:QueryResult>"
    ).encode("utf-8")
