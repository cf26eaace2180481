from __future__ import annotations

import base64
import json
from pathlib import Path
import sys

sys.path.append(str(Path(__file__).resolve().parents[1]))

import httpx
import pytest

from docrelay.core.errors import SigningError
from docrelay.infrastructure.signer import HttpSigningClient, SignerState


def _client(handler) -> HttpSigningClient:
    http_client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpSigningClient("http://signer.local/api/", token="TOKEN", http_client=http_client)


def test_sign_posts_content_and_decodes_signature():
    captured: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["auth"] = request.headers.get("Authorization")
        captured["body"] = json.loads(request.content.decode("utf-8"))
        return httpx.Response(200, json={"signature": base64.b64encode(b"PKCS7").decode("ascii")})

    signature = _client(handler).sign(b"<doc/>", "agency-key")

    assert signature == b"PKCS7"
    assert captured["url"] == "http://signer.local/api/sign"
    assert captured["auth"] == "Bearer TOKEN"
    body = captured["body"]
    assert body["key_alias"] == "agency-key"
    assert base64.b64decode(body["content"]) == b"<doc/>"
    assert body["detached"] is True


def test_service_error_is_reported_as_signing_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"error": "NO_TOKEN", "message": "token is not inserted"})

    with pytest.raises(SigningError) as excinfo:
        _client(handler).sign(b"data", "key")

    assert excinfo.value.code == "NO_TOKEN"
    assert excinfo.value.description == "token is not inserted"


def test_http_failure_is_reported_as_signing_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="unavailable")

    with pytest.raises(SigningError):
        _client(handler).sign(b"data", "key")


def test_health_check_reflects_health_endpoint():
    def healthy(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/health"
        return httpx.Response(200, json={"status": "ok"})

    def broken(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    assert _client(healthy).check_health() is True
    assert _client(broken).check_health() is False


def test_base_url_requires_scheme_and_host():
    with pytest.raises(ValueError):
        HttpSigningClient("signer.local")


def test_signer_state_recovers_after_health_check():
    class Flaky:
        def __init__(self) -> None:
            self.up = False
            self.fail = False

        def sign(self, content: bytes, key_alias: str) -> bytes:
            if self.fail:
                raise SigningError("device removed", source="signer")
            return b"ok"

        def check_health(self) -> bool:
            return self.up

    service = Flaky()
    state = SignerState(service)
    assert state.available is False
    with pytest.raises(SigningError):
        state.sign(b"x", "key")

    service.up = True
    assert state.refresh() is True
    assert state.sign(b"x", "key") == b"ok"

    service.fail = True
    with pytest.raises(SigningError):
        state.sign(b"x", "key")
    assert state.available is False


def test_unconfigured_signer_is_never_available():
    state = SignerState(None)

    assert state.configured is False
    assert state.refresh() is False
    with pytest.raises(SigningError):
        state.require()


def test_unconfigured_signer_refuses_to_sign_even_when_flagged_available():
    state = SignerState(None)
    state.available = True

    with pytest.raises(SigningError) as caught:
        state.sign(b"x", "key")

    assert caught.value.source == "signer"
