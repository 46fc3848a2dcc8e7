from __future__ import annotations

import asyncio
import logging
from datetime import datetime, time, timedelta, timezone
from typing import Optional

from ..application.services.renewal_service import RenewalService
from ..domain.models import RenewalBatchResult

logger = logging.getLogger(__name__)


def parse_run_at(value: str) -> time:
    """Parse an ``HH:MM`` UTC time of day."""
    try:
        hours, minutes = (int(part) for part in value.strip().split(":", 1))
        return time(hour=hours, minute=minutes, tzinfo=timezone.utc)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid renewal time {value!r}; expected HH:MM") from exc


def seconds_until_next_run(now: datetime, run_at: time) -> float:
    """Seconds from ``now`` until the next occurrence of ``run_at`` (UTC)."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    target = datetime.combine(now.date(), run_at.replace(tzinfo=None), tzinfo=timezone.utc)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class RenewalScheduler:
    """Background task that runs one renewal batch per day."""

    def __init__(self, renewal_service: RenewalService, run_at: time) -> None:
        self._renewals = renewal_service
        self._run_at = run_at
        self._task: Optional[asyncio.Task[None]] = None
        self._shutdown = asyncio.Event()
        self.last_result: Optional[RenewalBatchResult] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._task:
            return
        logger.info("Starting renewal scheduler; daily run at %s UTC.", self._run_at.strftime("%H:%M"))
        self._shutdown.clear()
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._loop(), name="renewal-scheduler")

    async def stop(self) -> None:
        if not self._task:
            return
        logger.info("Stopping renewal scheduler.")
        self._shutdown.set()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def _loop(self) -> None:
        while not self._shutdown.is_set():
            delay = seconds_until_next_run(datetime.now(timezone.utc), self._run_at)
            logger.debug("Next renewal run in %.0f seconds.", delay)
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=delay)
                break
            except asyncio.TimeoutError:
                pass
            await self.run_once()

    async def run_once(self) -> Optional[RenewalBatchResult]:
        try:
            self.last_result = await self._renewals.run()
        except Exception:
            logger.exception("Renewal run failed.")
            return None
        return self.last_result
