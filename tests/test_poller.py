"""Tests for SyncPoller: rounds over users, triggering and shutdown."""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from calsync.models import SyncResult, SyncStatus
from calsync.poller import SyncPoller

pytestmark = pytest.mark.unit


def _make_orchestrator(**failures: Exception) -> MagicMock:
    """Orchestrator stub whose sync_all_calendars returns one result per user."""
    orchestrator = MagicMock()

    async def _sync_all(user_id: str, *, cancel: asyncio.Event | None = None):
        if user_id in failures:
            raise failures[user_id]
        return [SyncResult(calendar_id=f"{user_id}-cal", status=SyncStatus.SUCCESS)]

    orchestrator.sync_all_calendars = AsyncMock(side_effect=_sync_all)
    return orchestrator


async def _wait_for_rounds(poller: SyncPoller, rounds: int) -> None:
    for _ in range(200):
        if poller.rounds >= rounds:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"poller ran {poller.rounds} round(s), expected {rounds}")


def test_interval_must_be_positive():
    with pytest.raises(ValueError):
        SyncPoller(MagicMock(), ["alice"], interval_minutes=0)


class TestRunOnce:
    async def test_syncs_every_user(self):
        orchestrator = _make_orchestrator()
        poller = SyncPoller(orchestrator, ["alice", "bob"])

        results = await poller.run_once()

        assert [r.calendar_id for r in results] == ["alice-cal", "bob-cal"]
        assert [c.args[0] for c in orchestrator.sync_all_calendars.await_args_list] == [
            "alice",
            "bob",
        ]
        assert poller.rounds == 1

    async def test_failing_user_does_not_stop_round(self, caplog):
        orchestrator = _make_orchestrator(alice=RuntimeError("store down"))
        poller = SyncPoller(orchestrator, ["alice", "bob"])

        with caplog.at_level(logging.ERROR, logger="calsync.poller"):
            results = await poller.run_once()

        assert [r.calendar_id for r in results] == ["bob-cal"]
        assert "Sync poller error for user alice" in caplog.text

    async def test_passes_share_cancel_event(self):
        orchestrator = _make_orchestrator()
        poller = SyncPoller(orchestrator, ["alice"])
        await poller.run_once()

        cancel = orchestrator.sync_all_calendars.await_args.kwargs["cancel"]
        assert not cancel.is_set()
        poller.stop()
        assert cancel.is_set()


class TestBackgroundLoop:
    async def test_start_trigger_shutdown(self):
        orchestrator = _make_orchestrator()
        poller = SyncPoller(orchestrator, ["alice"], interval_minutes=60)

        poller.start()
        assert poller.running
        await _wait_for_rounds(poller, 1)

        poller.trigger()
        await _wait_for_rounds(poller, 2)

        await poller.shutdown()
        assert not poller.running
        assert orchestrator.sync_all_calendars.await_count == 2

    async def test_second_start_rejected(self):
        poller = SyncPoller(_make_orchestrator(), ["alice"], interval_minutes=60)
        poller.start()
        try:
            with pytest.raises(RuntimeError, match="already running"):
                poller.start()
        finally:
            await poller.shutdown()

    async def test_restart_after_shutdown(self):
        poller = SyncPoller(_make_orchestrator(), ["alice"], interval_minutes=60)
        poller.start()
        await _wait_for_rounds(poller, 1)
        await poller.shutdown()

        poller.start()
        await _wait_for_rounds(poller, 2)
        await poller.shutdown()

    async def test_shutdown_without_start(self):
        poller = SyncPoller(_make_orchestrator(), ["alice"])
        await poller.shutdown()
        assert not poller.running
