"""Process configuration read from ``DOCRELAY_*`` environment variables."""
from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field

ENV_PREFIX = "DOCRELAY_"
DEFAULT_INITIAL_WATERMARK = datetime(2019, 8, 1)


def _env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(f"{ENV_PREFIX}{name}")
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_path(name: str, default: Path) -> Path:
    value = _env(name)
    return Path(value).expanduser().resolve() if value else default


def _env_flag(name: str, default: bool = True) -> bool:
    value = _env(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


def _parse_sources(raw: str | None) -> dict[str, Path]:
    sources: dict[str, Path] = {}
    if not raw:
        return sources
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        name, sep, location = chunk.partition("=")
        if not sep or not name.strip() or not location.strip():
            raise ValueError(f"invalid sync source entry: {chunk!r}")
        sources[name.strip()] = Path(location.strip()).expanduser()
    return sources


class GatewayInstance(BaseModel):
    """Inbound folders of one running gateway instance."""

    name: str
    inbound: Path
    attachments: Path


class Settings(BaseModel):
    exchange_root: Path
    gateway_outbound: Path
    outbound_attachments: Path
    gateway_instances: list[GatewayInstance] = Field(default_factory=list)
    database: str = ":memory:"
    registry_file: Path | None = None
    reports_dir: Path | None = None
    it_system: str = "DOCRELAY"

    ingest_interval: float = 5.0
    dispatch_interval: float = 1.0
    response_interval: float = 5.0
    sync_interval: float = 30.0
    ingest_enabled: bool = True
    dispatch_enabled: bool = True
    responses_enabled: bool = True
    sync_enabled: bool = True

    signer_url: str | None = None
    signer_token: str | None = None
    signer_timeout: float = 30.0

    sync_sources: dict[str, Path] = Field(default_factory=dict)
    initial_watermark: datetime = DEFAULT_INITIAL_WATERMARK
    retention_days: int = Field(default=30, ge=1)
    settle_seconds: float = Field(default=60.0, ge=0)
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # derived folders
    # ------------------------------------------------------------------
    @property
    def requests_dir(self) -> Path:
        return self.exchange_root / "requests"

    @property
    def prepared_dir(self) -> Path:
        return self.exchange_root / "prepared"

    @property
    def responses_dir(self) -> Path:
        return self.exchange_root / "responses"

    @classmethod
    def from_env(cls) -> "Settings":
        exchange_root = _env_path("EXCHANGE_ROOT", Path.cwd() / "exchange")
        gateway_root = _env_path("GATEWAY_ROOT", exchange_root / "gateway")

        instances = [
            GatewayInstance(
                name="primary",
                inbound=_env_path("GATEWAY_INBOUND", gateway_root / "in"),
                attachments=_env_path("GATEWAY_ATTACHMENTS", gateway_root / "attachments"),
            )
        ]
        secondary = _env("SECONDARY_GATEWAY_INBOUND")
        if secondary:
            instances.append(
                GatewayInstance(
                    name="secondary",
                    inbound=Path(secondary).expanduser().resolve(),
                    attachments=_env_path("SECONDARY_GATEWAY_ATTACHMENTS", gateway_root / "attachments2"),
                )
            )

        registry = _env("REGISTRY_FILE")
        reports = _env("REPORTS_DIR")
        watermark = _env("INITIAL_WATERMARK")
        return cls(
            exchange_root=exchange_root,
            gateway_outbound=_env_path("GATEWAY_OUTBOUND", gateway_root / "out"),
            outbound_attachments=_env_path("OUTBOUND_ATTACHMENTS", gateway_root / "attachments_out"),
            gateway_instances=instances,
            database=_env("DATABASE", str(exchange_root / "docrelay.duckdb")),
            registry_file=Path(registry).expanduser() if registry else None,
            reports_dir=Path(reports).expanduser() if reports else None,
            it_system=_env("IT_SYSTEM", "DOCRELAY"),
            ingest_interval=float(_env("INGEST_INTERVAL", "5")),
            dispatch_interval=float(_env("DISPATCH_INTERVAL", "1")),
            response_interval=float(_env("RESPONSE_INTERVAL", "5")),
            sync_interval=float(_env("SYNC_INTERVAL", "30")),
            ingest_enabled=_env_flag("INGEST_ENABLED"),
            dispatch_enabled=_env_flag("DISPATCH_ENABLED"),
            responses_enabled=_env_flag("RESPONSES_ENABLED"),
            sync_enabled=_env_flag("SYNC_ENABLED"),
            signer_url=_env("SIGNER_URL"),
            signer_token=_env("SIGNER_TOKEN"),
            signer_timeout=float(_env("SIGNER_TIMEOUT", "30")),
            sync_sources=_parse_sources(_env("SYNC_SOURCES")),
            initial_watermark=datetime.fromisoformat(watermark) if watermark else DEFAULT_INITIAL_WATERMARK,
            retention_days=int(_env("RETENTION_DAYS", "30")),
            settle_seconds=float(_env("SETTLE_SECONDS", "60")),
            log_level=_env("LOG_LEVEL", "INFO"),
        )
