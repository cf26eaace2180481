"""Poll loops driving every enabled relay worker."""
from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Callable, Coroutine

from docrelay.application import RelayService, configure_relay_service, get_relay_service
from docrelay.core.errors import Outcome
from docrelay.core.settings import Settings
from docrelay.workers.sync import SyncCatchupWorker

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _made_progress(results: list) -> bool:
    return any(result.outcome is not Outcome.DEFERRED for result in results)


def _sync_step(worker: SyncCatchupWorker) -> Callable[[], bool]:
    def step() -> bool:
        worker.run_once()
        return False

    return step


def build_steps(service: RelayService) -> list[tuple[str, Callable[[], bool], float]]:
    """Return ``(name, step, interval)`` for every enabled worker.

    A step returns ``True`` when it changed something, in which case the loop
    polls again without sleeping.
    """

    settings = service.settings
    steps: list[tuple[str, Callable[[], bool], float]] = []
    if settings.ingest_enabled:
        steps.append(("ingest", lambda: _made_progress(service.ingest.run_once()), settings.ingest_interval))
    if settings.dispatch_enabled:
        steps.append(("dispatch", lambda: bool(service.dispatcher.run_cycle().moved), settings.dispatch_interval))
    if settings.responses_enabled:
        for processor in service.responses:
            steps.append(
                (
                    f"responses-{processor.name}",
                    lambda processor=processor: _made_progress(processor.run_once()),
                    settings.response_interval,
                )
            )
    if settings.sync_enabled:
        for worker in (service.request_sync, service.response_sync):
            steps.append((f"sync-{worker.stream}", _sync_step(worker), settings.sync_interval))
    return steps


async def poll(name: str, step: Callable[[], bool], interval: float) -> None:
    logger.info("%s worker started (interval %.1fs)", name, interval)
    while True:
        try:
            busy = await asyncio.to_thread(step)
        except Exception:
            logger.exception("%s worker pass failed", name)
            busy = False
        if not busy:
            await asyncio.sleep(interval)


async def run_workers(service: RelayService) -> None:
    tasks: list[Coroutine] = [poll(name, step, interval) for name, step, interval in build_steps(service)]
    if not tasks:
        logger.warning("no workers enabled")
        return
    await asyncio.gather(*tasks)


def run_once(service: RelayService) -> None:
    for name, step, _ in build_steps(service):
        step()
        logger.info("%s pass done", name)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run the document relay workers.")
    parser.add_argument("--once", action="store_true", help="run a single pass of every enabled worker and exit")
    parser.add_argument("--log-level", default=None, help="override DOCRELAY_LOG_LEVEL")
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    logging.basicConfig(level=(args.log_level or settings.log_level).upper(), format=LOG_FORMAT)
    configure_relay_service(RelayService(settings))
    service = get_relay_service()
    try:
        if args.once:
            run_once(service)
        else:
            asyncio.run(run_workers(service))
    except KeyboardInterrupt:
        logger.info("interrupted, shutting down")
    finally:
        service.close()


if __name__ == "__main__":
    main()
