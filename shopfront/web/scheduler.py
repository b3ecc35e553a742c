"""In-process lottery draw poller.

Runs the due-draw sweep on a fixed interval for deployments without an
external cron hitting the auto-draw endpoint. Draws are idempotent, so the
poller, the cron endpoint and the list-page check can all run side by side.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Optional

from shopfront.shared.database import get_db_session_context
from shopfront.web.crud import DrawSweepSummary, LotteryOperations

logger = logging.getLogger(__name__)


async def run_draw_sweep() -> DrawSweepSummary:
    """Run one due-draw sweep in its own session and transaction."""
    async with get_db_session_context() as session:
        return await LotteryOperations(session).run_due_draws()


class DrawPoller:
    """Background task calling :func:`run_draw_sweep` every ``interval`` seconds."""

    def __init__(self, interval: int, retry_delay: int = 60):
        self.interval = interval
        self.retry_delay = min(retry_delay, interval)
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._poll())
        logger.info(f"Started lottery draw poller ({self.interval}s intervals)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Stopped lottery draw poller")

    async def _poll(self) -> None:
        while True:
            try:
                summary = await run_draw_sweep()
                if summary.total:
                    logger.debug(
                        f"Draw poller: {summary.drawn} drawn, {summary.extended} extended, "
                        f"{summary.errors} errors"
                    )

                await asyncio.sleep(self.interval)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in lottery draw poller: {e}")
                # Wait a bit before retrying
                await asyncio.sleep(self.retry_delay)
