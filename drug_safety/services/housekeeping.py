from __future__ import annotations

import asyncio
import logging
from typing import Callable, List

from ..config import Settings
from .audit_service import AuditService
from .cache import BaseCache

logger = logging.getLogger(__name__)


async def _run_periodically(name: str, interval_seconds: float, job: Callable[[], int]) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = job()
        except Exception:
            logger.exception("housekeeping.%s failed", name)
            continue
        logger.debug("housekeeping.%s removed=%d", name, removed)


class Housekeeper:
    """Optional background sweeps. Correctness never depends on them."""

    def __init__(self, *, settings: Settings, cache: BaseCache, audit: AuditService) -> None:
        self._settings = settings
        self._cache = cache
        self._audit = audit
        self._tasks: List[asyncio.Task] = []

    def start(self) -> None:
        if self._settings.cache_sweep_interval_seconds > 0:
            self._tasks.append(
                asyncio.create_task(
                    _run_periodically(
                        "cache_sweep",
                        self._settings.cache_sweep_interval_seconds,
                        self._cache.cleanup_expired,
                    )
                )
            )
        if self._settings.audit_cleanup_interval_seconds > 0:
            self._tasks.append(
                asyncio.create_task(
                    _run_periodically(
                        "audit_cleanup",
                        self._settings.audit_cleanup_interval_seconds,
                        self._audit.cleanup_expired,
                    )
                )
            )
        logger.info("housekeeping.started jobs=%d", len(self._tasks))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
