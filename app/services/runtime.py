# app/services/runtime.py
from __future__ import annotations

import asyncio
import logging
from typing import Callable, List

from sqlalchemy.orm import Session

from app.services.container import Services

logger = logging.getLogger(__name__)


def _run_with_session(session_factory: Callable[[], Session], work: Callable[[Session], object]) -> object:
    db = session_factory()
    try:
        return work(db)
    finally:
        db.close()


async def _loop(name: str, interval: float, session_factory, work) -> None:
    while True:
        try:
            result = await asyncio.to_thread(_run_with_session, session_factory, work)
            if result:
                logger.debug("[runtime] %s -> %s", name, result)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[runtime] %s iteration failed", name)
        await asyncio.sleep(interval)


def start_background_workers(services: Services, session_factory: Callable[[], Session]) -> List[asyncio.Task]:
    """
    Event projection, the pending-update worker and the receipt sweep, each in
    its own task. Blocking DB and ledger work runs in worker threads.
    """
    settings = services.settings
    tasks = [
        asyncio.create_task(_loop(
            "projector", settings.event_poll_interval_seconds, session_factory, services.projector.poll_once,
        )),
        asyncio.create_task(_loop(
            "retry-queue", settings.retry_poll_interval_seconds, session_factory,
            lambda db: len(services.queue.process_once(db)),
        )),
        asyncio.create_task(_loop(
            "tx-sweep", settings.tx_sweep_interval_seconds, session_factory, services.tracker.sweep,
        )),
    ]
    logger.info("[runtime] started %s background workers", len(tasks))
    return tasks


async def stop_background_workers(tasks: List[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    logger.info("[runtime] background workers stopped")
