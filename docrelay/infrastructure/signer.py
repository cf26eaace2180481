"""Detached-signature service integration."""
from __future__ import annotations

import base64
import logging
from typing import Protocol

import httpx

from docrelay.core.errors import SigningError

logger = logging.getLogger(__name__)


class SigningService(Protocol):
    """Contract for detached-signature providers."""

    def sign(self, content: bytes, key_alias: str) -> bytes:
        """Return a detached signature of ``content`` made with ``key_alias``."""

    def check_health(self) -> bool:
        """Report whether the service is ready to sign."""


class HttpSigningClient:
    """Client for a signing service exposing ``POST /sign`` and ``GET /health``."""

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout: float = 30.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        parsed = httpx.URL(base_url)
        if not parsed.scheme or not parsed.host:
            raise ValueError("base_url must include scheme and host")
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = http_client or httpx.Client(timeout=timeout)
        self._owns_client = http_client is None

    def sign(self, content: bytes, key_alias: str) -> bytes:
        payload = {
            "key_alias": key_alias,
            "content": base64.b64encode(content).decode("ascii"),
            "detached": True,
        }
        try:
            response = self._client.post(f"{self._base_url}/sign", json=payload, headers=self._headers)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as exc:
            raise SigningError(f"signing request failed: {exc}", source="signer") from exc
        except ValueError as exc:
            raise SigningError("signing service returned invalid JSON", source="signer") from exc

        if body.get("error"):
            raise SigningError(
                str(body.get("message") or body["error"]), source="signer", code=str(body["error"])
            )
        signature = body.get("signature")
        if not signature:
            raise SigningError("signing service returned no signature", source="signer")
        return base64.b64decode(signature)

    def check_health(self) -> bool:
        try:
            response = self._client.get(f"{self._base_url}/health", headers=self._headers)
        except httpx.HTTPError as exc:
            logger.warning("signing service health check failed: %s", exc)
            return False
        return response.status_code == 200

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


class SignerState:
    """Process-wide availability flag around a :class:`SigningService`.

    A failed signature clears the flag; items needing a signature then fail
    fast until :meth:`refresh` confirms the service is back.
    """

    def __init__(self, service: SigningService | None) -> None:
        self._service = service
        self.available = False
        self.refresh()

    @property
    def configured(self) -> bool:
        return self._service is not None

    def refresh(self) -> bool:
        if self.available:
            return True
        if self._service is None:
            return False
        self.available = self._service.check_health()
        if self.available:
            logger.info("signing service is available")
        return self.available

    def mark_unavailable(self, reason: str) -> None:
        if self.available:
            logger.error("signing service marked unavailable: %s", reason)
        self.available = False

    def require(self) -> None:
        if not self.available:
            raise SigningError("signing service unavailable", source="signer")

    def sign(self, content: bytes, key_alias: str) -> bytes:
        self.require()
        if self._service is None:
            raise SigningError("no signing service configured", source="signer")
        try:
            return self._service.sign(content, key_alias)
        except SigningError as exc:
            self.mark_unavailable(exc.description)
            raise
