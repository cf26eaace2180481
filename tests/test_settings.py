from __future__ import annotations

import os
import sys
from datetime import datetime
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from docrelay.core.settings import DEFAULT_INITIAL_WATERMARK, Settings
from docrelay.infrastructure.registry import DEFAULT_REGISTRY_FILE, DocumentTypeRegistry


@pytest.fixture()
def clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("DOCRELAY_"):
            monkeypatch.delenv(name)
    return monkeypatch


def test_defaults_are_derived_from_exchange_root(clean_env, tmp_path):
    tmp_path = tmp_path.resolve()
    clean_env.setenv("DOCRELAY_EXCHANGE_ROOT", str(tmp_path))

    settings = Settings.from_env()

    assert settings.requests_dir == tmp_path / "requests"
    assert settings.prepared_dir == tmp_path / "prepared"
    assert settings.gateway_outbound == tmp_path / "gateway" / "out"
    assert settings.database == str(tmp_path / "docrelay.duckdb")
    assert [instance.name for instance in settings.gateway_instances] == ["primary"]
    assert settings.initial_watermark == DEFAULT_INITIAL_WATERMARK
    assert settings.sync_sources == {}
    assert settings.ingest_enabled is True


def test_environment_overrides(clean_env, tmp_path):
    tmp_path = tmp_path.resolve()
    clean_env.setenv("DOCRELAY_EXCHANGE_ROOT", str(tmp_path))
    clean_env.setenv("DOCRELAY_SECONDARY_GATEWAY_INBOUND", str(tmp_path / "in2"))
    clean_env.setenv("DOCRELAY_SYNC_SOURCES", "main=/data/gw1.duckdb, backup=/data/gw2.duckdb")
    clean_env.setenv("DOCRELAY_INITIAL_WATERMARK", "2024-01-01T00:00:00")
    clean_env.setenv("DOCRELAY_SYNC_ENABLED", "no")
    clean_env.setenv("DOCRELAY_SETTLE_SECONDS", "5")

    settings = Settings.from_env()

    assert [instance.name for instance in settings.gateway_instances] == ["primary", "secondary"]
    assert settings.gateway_instances[1].inbound == tmp_path / "in2"
    assert settings.sync_sources == {"main": Path("/data/gw1.duckdb"), "backup": Path("/data/gw2.duckdb")}
    assert settings.initial_watermark == datetime(2024, 1, 1)
    assert settings.sync_enabled is False
    assert settings.settle_seconds == 5.0


def test_malformed_sync_source_is_rejected(clean_env, tmp_path):
    clean_env.setenv("DOCRELAY_EXCHANGE_ROOT", str(tmp_path))
    clean_env.setenv("DOCRELAY_SYNC_SOURCES", "just-a-path")

    with pytest.raises(ValueError):
        Settings.from_env()


def test_bundled_registry_loads():
    registry = DocumentTypeRegistry.from_yaml(DEFAULT_REGISTRY_FILE)

    assert len(registry) >= 1
    assert registry.max_priority == max(registry.priority_tiers())


def test_missing_registry_file_gives_empty_registry(tmp_path):
    registry = DocumentTypeRegistry.from_yaml(tmp_path / "absent.yaml")

    assert len(registry) == 0
    assert registry.max_priority == 0


def test_duplicate_namespaces_are_rejected(tmp_path):
    path = tmp_path / "types.yaml"
    path.write_text(
        "document_types:\n"
        "  - {namespace: 'urn:a', name: one, daily_quota: 1, priority: 1}\n"
        "  - {namespace: 'urn:a', name: two, daily_quota: 1, priority: 2}\n",
        encoding="utf-8",
    )

    with pytest.raises(ValueError):
        DocumentTypeRegistry.from_yaml(path)
