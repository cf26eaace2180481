"""Document-type registry loaded from a YAML table."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

import yaml

from docrelay.core.schema import DocumentTypeDescriptor

logger = logging.getLogger(__name__)

CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"
DEFAULT_REGISTRY_FILE = CONFIG_DIR / "document_types.yaml"


class DocumentTypeRegistry:
    def __init__(self, descriptors: Iterable[DocumentTypeDescriptor] = ()) -> None:
        self._by_namespace: dict[str, DocumentTypeDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.namespace in self._by_namespace:
                raise ValueError(f"duplicate document type namespace: {descriptor.namespace}")
            self._by_namespace[descriptor.namespace] = descriptor

    @classmethod
    def from_yaml(cls, path: Path | None = None) -> "DocumentTypeRegistry":
        path = path or DEFAULT_REGISTRY_FILE
        if not path.exists():
            logger.warning("document type registry %s not found, no types registered", path)
            return cls()
        with path.open("r", encoding="utf-8") as fp:
            data = yaml.safe_load(fp) or {}
        entries = data.get("document_types") or []
        registry = cls(DocumentTypeDescriptor(**entry) for entry in entries)
        logger.info("loaded %d document types from %s", len(registry), path)
        return registry

    def __len__(self) -> int:
        return len(self._by_namespace)

    def lookup(self, namespace: str) -> DocumentTypeDescriptor | None:
        return self._by_namespace.get(namespace)

    def descriptors(self) -> list[DocumentTypeDescriptor]:
        return list(self._by_namespace.values())

    def priority_tiers(self) -> list[int]:
        return sorted({descriptor.priority for descriptor in self._by_namespace.values()})

    @property
    def max_priority(self) -> int:
        tiers = self.priority_tiers()
        return tiers[-1] if tiers else 0
