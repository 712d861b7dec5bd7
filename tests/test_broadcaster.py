import asyncio
from datetime import datetime

import pytest

from backend.broadcaster import ProgressBroadcaster
from backend.model import ProgressEvent


def event(kind: str = "progress", progress: int = 25, job_id: str = "j1") -> ProgressEvent:
    return ProgressEvent(type=kind, job_id=job_id, message=kind, progress=progress)


async def next_message(sub, timeout: float = 1.0):
    return await asyncio.wait_for(anext(sub), timeout)


class TestProgressBroadcaster:
    @pytest.mark.asyncio
    async def test_subscriber_gets_welcome_then_events(self) -> None:
        broadcaster = ProgressBroadcaster()
        sub = broadcaster.subscribe()

        assert (await next_message(sub))["type"] == "connection_established"
        assert broadcaster.publish(event("started", 10)) == 1
        message = await next_message(sub)
        assert message["type"] == "started"
        assert message["job_id"] == "j1"
        assert message["progress"] == 10
        assert datetime.fromisoformat(message["timestamp"].replace("Z", "+00:00")).tzinfo is not None

    @pytest.mark.asyncio
    async def test_no_replay_for_late_subscribers(self) -> None:
        broadcaster = ProgressBroadcaster()
        broadcaster.publish(event("started", 10))
        sub = broadcaster.subscribe()
        await next_message(sub)
        broadcaster.publish(event("progress", 25))
        assert (await next_message(sub))["type"] == "progress"

    @pytest.mark.asyncio
    async def test_progress_never_goes_backwards(self) -> None:
        broadcaster = ProgressBroadcaster()
        sub = broadcaster.subscribe()
        await next_message(sub)

        broadcaster.publish(event("progress", 90))
        broadcaster.publish(event("started", 10))
        await next_message(sub)
        assert (await next_message(sub))["progress"] == 90

    @pytest.mark.asyncio
    async def test_job_is_forgotten_after_terminal_event(self) -> None:
        broadcaster = ProgressBroadcaster()
        sub = broadcaster.subscribe()
        await next_message(sub)

        broadcaster.publish(event("completed", 100))
        broadcaster.publish(event("started", 10))
        await next_message(sub)
        assert (await next_message(sub))["progress"] == 10

    @pytest.mark.asyncio
    async def test_slow_subscriber_is_pruned(self) -> None:
        broadcaster = ProgressBroadcaster(buffer_size=2)
        slow = broadcaster.subscribe()
        fast = broadcaster.subscribe()

        broadcaster.publish(event(progress=20))
        await next_message(fast)
        await next_message(fast)
        assert broadcaster.publish(event(progress=30)) == 1

        assert broadcaster.subscriber_count == 1
        assert [m async for m in slow] == []

    @pytest.mark.asyncio
    async def test_unsubscribe_ends_stream(self) -> None:
        broadcaster = ProgressBroadcaster()
        sub = broadcaster.subscribe()
        broadcaster.unsubscribe(sub)
        assert broadcaster.subscriber_count == 0
        assert [m async for m in sub] == []
        assert broadcaster.publish(event()) == 0
