"""Periodic background sync of every configured user's calendars."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from calsync.models import SyncResult
from calsync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


class SyncPoller:
    """Runs ``sync_all_calendars`` for each user every ``interval_minutes``.

    ``trigger()`` wakes the loop for an immediate round; ``stop()`` ends the
    loop after the current round and aborts in-flight passes through the
    shared cancel event.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        user_ids: Sequence[str],
        interval_minutes: float = 15.0,
    ) -> None:
        if interval_minutes <= 0:
            raise ValueError("interval_minutes must be positive")
        self._orchestrator = orchestrator
        self._user_ids = list(user_ids)
        self._interval_seconds = interval_minutes * 60
        self._force_sync_event = asyncio.Event()
        self._cancel = asyncio.Event()
        self._stopping = False
        self._task: asyncio.Task[None] | None = None
        self.rounds = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def trigger(self) -> None:
        """Request an immediate sync round."""
        self._force_sync_event.set()

    def stop(self) -> None:
        self._stopping = True
        self._cancel.set()
        self._force_sync_event.set()

    async def run_once(self) -> list[SyncResult]:
        """One round over every user; a failing user does not stop the others."""
        results: list[SyncResult] = []
        for user_id in self._user_ids:
            if self._stopping:
                break
            try:
                results.extend(
                    await self._orchestrator.sync_all_calendars(user_id, cancel=self._cancel)
                )
            except Exception as exc:
                logger.error("Sync poller error for user %s: %s", user_id, exc, exc_info=True)
        self.rounds += 1
        return results

    async def run(self) -> None:
        logger.debug(
            "Sync poller loop started (interval=%ds, users=%d)",
            self._interval_seconds,
            len(self._user_ids),
        )
        while not self._stopping:
            results = await self.run_once()
            logger.info("Sync poller round %d finished: %d pass(es)", self.rounds, len(results))
            if self._stopping:
                break

            # Wait for the interval OR an immediate-sync request.
            try:
                await asyncio.wait_for(
                    self._force_sync_event.wait(),
                    timeout=self._interval_seconds,
                )
                self._force_sync_event.clear()
                logger.debug("Sync poller: immediate sync triggered")
            except TimeoutError:
                pass
        logger.info("Sync poller stopped after %d round(s)", self.rounds)

    def start(self) -> asyncio.Task[None]:
        if self.running:
            raise RuntimeError("Sync poller is already running")
        self._stopping = False
        self._cancel.clear()
        self._force_sync_event.clear()
        self._task = asyncio.create_task(self.run(), name="calsync-sync-poller")
        logger.info(
            "Sync poller started (interval=%dm, users=%s)",
            self._interval_seconds // 60,
            ", ".join(self._user_ids),
        )
        return self._task

    async def shutdown(self) -> None:
        """Stop the background task and wait for it to exit."""
        self.stop()
        if self._task is not None and not self._task.done():
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
