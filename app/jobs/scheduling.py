"""
Periodic loop shared by the background jobs.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable

from app.infrastructure.observability.logging import get_logger, log_job_run

logger = get_logger(__name__)

# Pause after an unexpected error so a broken dependency is not hammered
ERROR_BACKOFF_SECONDS = 60


class PeriodicJob:
    """
    Runs `run_once` forever at a fixed interval.

    Overlapping runs are skipped; a failing run is logged and the loop
    continues after a back-off.
    """

    def __init__(self, name: str, run_once: Callable[[], Awaitable[dict]], interval_seconds: float):
        self.name = name
        self.interval_seconds = interval_seconds
        self._run_once = run_once
        self.is_running = False

    async def run_once(self) -> dict:
        if self.is_running:
            logger.warning("Job already running, skipping this iteration", job=self.name)
            return {"skipped": True, "reason": "already_running"}
        self.is_running = True
        start_time = time.time()
        try:
            summary = await self._run_once()
        finally:
            self.is_running = False

        log_job_run(self.name, summary or {}, round((time.time() - start_time) * 1000, 2))
        return summary

    async def run_forever(self) -> None:
        logger.info("Starting job scheduler", job=self.name, interval_seconds=self.interval_seconds)
        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(
                    "Job iteration failed", job=self.name, error=str(e), error_type=type(e).__name__
                )
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)
                continue
            await asyncio.sleep(self.interval_seconds)
