from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from docrelay.core.errors import RetryableIOError
from docrelay.core.workqueue import WorkQueueDirectory, move_file
from docrelay.infrastructure.registry import DocumentTypeRegistry

logger = logging.getLogger(__name__)

GATEWAY_STATES = ("sent", "error")
GATEWAY_FILE_MODE = 0o666


@dataclass(slots=True)
class DispatchReport:
    moved: list[str] = field(default_factory=list)
    left: list[str] = field(default_factory=list)


class PriorityDispatcher:
    """Drains the prepared tiers into the gateway outbound folder in priority order.

    A tier's backlog is only moved once the gateway has consumed everything
    previously handed to it.
    """

    def __init__(
        self,
        registry: DocumentTypeRegistry,
        prepared_root: Path,
        outbound: WorkQueueDirectory,
        *,
        poll_interval: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._registry = registry
        self._prepared_root = Path(prepared_root)
        self._outbound = outbound
        self._poll_interval = poll_interval
        self._sleep = sleep

    def wait_until_drained(self) -> None:
        while not self._outbound.is_drained():
            self._sleep(self._poll_interval)

    def run_cycle(self) -> DispatchReport:
        report = DispatchReport()
        for tier in range(1, self._registry.max_priority + 1):
            queue = WorkQueueDirectory(self._prepared_root / str(tier))
            items = queue.list()
            if not items:
                continue
            self.wait_until_drained()
            self._move_tier(tier, items, report)
        return report

    def _move_tier(self, tier: int, items: list[Path], report: DispatchReport) -> None:
        target = self._outbound.path()
        pending = list(items)
        for attempt in (1, 2):
            failed: list[Path] = []
            for item in pending:
                try:
                    moved = move_file(item, target / item.name)
                except (RetryableIOError, OSError) as exc:
                    logger.warning("tier %d: moving %s failed (attempt %d): %s", tier, item.name, attempt, exc)
                    failed.append(item)
                    continue
                report.moved.append(item.name)
                try:
                    os.chmod(moved, GATEWAY_FILE_MODE)
                except OSError as exc:
                    logger.warning("cannot open permissions of %s: %s", moved, exc)
            pending = failed
            if not pending:
                break
        report.left.extend(item.name for item in pending)
        logger.info("tier %d: dispatched %d files, %d left", tier, len(items) - len(pending), len(pending))
