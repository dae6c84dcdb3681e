"""Tests for per-call background task ownership."""

import asyncio
import logging

import pytest

from src.conversation.background import CallTaskTracker
from src.logging_context import get_call_id


@pytest.fixture
def tracker():
    return CallTaskTracker()


async def wait_for(event: asyncio.Event) -> None:
    await event.wait()


class TestSpawn:
    @pytest.mark.asyncio
    async def test_task_runs_with_call_id_bound(self, tracker):
        async def read_call_id():
            return get_call_id()

        task = tracker.spawn("CA-BG", read_call_id())
        await tracker.drain()
        assert task.result() == "CA-BG"

    @pytest.mark.asyncio
    async def test_finished_task_is_forgotten(self, tracker):
        tracker.spawn("CA-BG", asyncio.sleep(0))
        await tracker.drain()
        await asyncio.sleep(0)
        assert tracker.pending("CA-BG") == 0

    @pytest.mark.asyncio
    async def test_failure_is_logged_not_raised(self, tracker, caplog):
        async def explode():
            raise RuntimeError("summary backend down")

        with caplog.at_level(logging.WARNING):
            tracker.spawn("CA-BG", explode())
            await tracker.drain()
            await asyncio.sleep(0)
        assert "summary backend down" in caplog.text


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_counts_pending_tasks(self, tracker):
        event = asyncio.Event()
        tracker.spawn("CA-BG", wait_for(event))
        tracker.spawn("CA-BG", wait_for(event))
        await asyncio.sleep(0)
        assert tracker.pending("CA-BG") == 2

        assert tracker.cancel("CA-BG") == 2
        await tracker.drain()
        assert tracker.pending("CA-BG") == 0

    @pytest.mark.asyncio
    async def test_keep_spares_a_task(self, tracker):
        event = asyncio.Event()
        kept = tracker.spawn("CA-BG", wait_for(event))
        other = tracker.spawn("CA-BG", wait_for(event))
        await asyncio.sleep(0)

        assert tracker.cancel("CA-BG", keep=(kept,)) == 1
        event.set()
        await tracker.drain()
        assert not kept.cancelled()
        assert other.cancelled()

    @pytest.mark.asyncio
    async def test_other_calls_untouched(self, tracker):
        event = asyncio.Event()
        tracker.spawn("CA-ONE", wait_for(event))
        survivor = tracker.spawn("CA-TWO", wait_for(event))
        await asyncio.sleep(0)

        tracker.cancel("CA-ONE")
        event.set()
        await tracker.drain()
        assert not survivor.cancelled()

    def test_unknown_call_cancels_nothing(self, tracker):
        assert tracker.cancel("CA-NONE") == 0
