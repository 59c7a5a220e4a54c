"""Tests for the reclaimer."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from notifier.delivery import Reclaimer
from notifier.stores import LogEntry, Stores

from support import GROUP, STREAM


class TestReclaimer:
    @pytest.mark.asyncio
    async def test_nothing_to_reclaim(self, stores: Stores) -> None:
        reclaimer = Reclaimer(stores.log, STREAM, GROUP)
        assert await reclaimer.reclaim("worker-2") == []

    @pytest.mark.asyncio
    async def test_recently_delivered_entries_stay_with_owner(self, stores: Stores) -> None:
        await stores.log.append(STREAM, {"eventId": "e1", "eventType": "T"})
        await stores.log.read_group(GROUP, "worker-1", STREAM, 1, 0)

        reclaimer = Reclaimer(stores.log, STREAM, GROUP, min_idle_ms=10000)

        assert await reclaimer.reclaim("worker-2") == []
        summary = await stores.log.pending_summary(STREAM, GROUP)
        assert summary.consumers == {"worker-1": 1}

    @pytest.mark.asyncio
    async def test_idle_entries_transfer_to_reclaiming_consumer(self, stores: Stores) -> None:
        entry_id = await stores.log.append(STREAM, {"eventId": "e1", "eventType": "T"})
        await stores.log.read_group(GROUP, "worker-1", STREAM, 1, 0)
        await asyncio.sleep(0.1)

        entries = await Reclaimer(stores.log, STREAM, GROUP, min_idle_ms=50).reclaim("worker-2")

        assert [e.entry_id for e in entries] == [entry_id]
        summary = await stores.log.pending_summary(STREAM, GROUP)
        assert summary.consumers == {"worker-2": 1}

    @pytest.mark.asyncio
    async def test_cursor_is_carried_between_calls_and_wraps(self):
        log = AsyncMock()
        log.autoclaim.side_effect = [
            ("7-0", [LogEntry("5-0", {"eventId": "e5"})]),
            ("0-0", []),
            ("0-0", []),
        ]
        reclaimer = Reclaimer(log, STREAM, GROUP, min_idle_ms=100, batch_size=1)

        await reclaimer.reclaim("w")
        await reclaimer.reclaim("w")
        await reclaimer.reclaim("w")

        cursors = [call.kwargs["cursor"] for call in log.autoclaim.await_args_list]
        assert cursors == ["0-0", "7-0", "0-0"]
        assert log.autoclaim.await_args_list[0].kwargs["count"] == 1
