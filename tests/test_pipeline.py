"""
Tests for the prediction loop and event bus
============================================
"""

import asyncio
import pytest
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.errors import ExtractionError, NoLabelsError
from core.events import EventBus
from core.pipeline import PredictionLoop


class ListFrameSource:
    def __init__(self, frames):
        self._frames = list(frames)

    async def next_frame(self):
        await asyncio.sleep(0)
        return self._frames.pop(0) if self._frames else None


class EndlessFrameSource:
    async def next_frame(self):
        await asyncio.sleep(0.001)
        return "frame"


class StalledFrameSource:
    async def next_frame(self):
        await asyncio.sleep(3600)


class BrokenFrameSource:
    async def next_frame(self):
        raise OSError("camera unplugged")


class TestPredictionLoop:
    """Test suite for PredictionLoop."""

    def test_processes_every_frame_until_exhausted(self):
        handled = []

        async def handler(frame):
            handled.append(frame)

        async def scenario():
            loop = PredictionLoop(ListFrameSource([1, 2, 3]), handler)
            loop.start()
            await loop.wait()
            return loop

        loop = asyncio.run(scenario())
        assert handled == [1, 2, 3]
        assert loop.frame_count == 3
        assert not loop.is_running

    def test_failing_frames_are_skipped(self):
        handled = []

        async def handler(frame):
            if frame == "bad":
                raise ExtractionError("no features")
            if frame == "empty":
                raise NoLabelsError()
            if frame == "boom":
                raise RuntimeError("unexpected")
            handled.append(frame)

        async def scenario():
            loop = PredictionLoop(ListFrameSource(["bad", "empty", "boom", "ok"]), handler)
            loop.start()
            await loop.wait()
            return loop

        loop = asyncio.run(scenario())
        assert handled == ["ok"]
        assert loop.error_count == 2

    def test_stop_ends_loop(self):
        count = []

        async def handler(frame):
            count.append(frame)

        async def scenario():
            loop = PredictionLoop(EndlessFrameSource(), handler)
            loop.start()
            await asyncio.sleep(0.02)
            await loop.stop()
            seen = len(count)
            await asyncio.sleep(0.02)
            return loop, seen

        loop, seen = asyncio.run(scenario())
        assert not loop.is_running
        assert len(count) == seen

    def test_stalled_source_is_cancelled(self):
        async def handler(frame):
            pass

        async def scenario():
            loop = PredictionLoop(StalledFrameSource(), handler, stop_timeout_s=0.05)
            loop.start()
            await asyncio.sleep(0.01)
            await loop.stop()
            return loop

        assert not asyncio.run(scenario()).is_running

    def test_source_failure_ends_loop(self):
        async def handler(frame):
            pass

        async def scenario():
            loop = PredictionLoop(BrokenFrameSource(), handler)
            loop.start()
            await loop.wait()
            return loop

        loop = asyncio.run(scenario())
        assert loop.frame_count == 0
        assert not loop.is_running

    def test_exit_callback_on_exhaustion(self):
        exits = []

        async def handler(frame):
            pass

        async def scenario():
            loop = PredictionLoop(ListFrameSource([1, 2]), handler, on_exit=exits.append)
            loop.start()
            await loop.wait()
            return loop

        loop = asyncio.run(scenario())
        assert exits == [loop]

    def test_exit_callback_on_stop(self):
        exits = []

        async def handler(frame):
            pass

        async def scenario():
            loop = PredictionLoop(EndlessFrameSource(), handler, on_exit=exits.append)
            loop.start()
            await asyncio.sleep(0.01)
            await loop.stop()
            return loop

        loop = asyncio.run(scenario())
        assert exits == [loop]


class TestEventBus:
    """Test suite for EventBus."""

    def test_priority_order(self):
        bus = EventBus()
        calls = []
        bus.subscribe("evt", lambda **kw: calls.append("low"), priority=0)
        bus.subscribe("evt", lambda **kw: calls.append("high"), priority=10)

        bus.emit("evt")
        assert calls == ["high", "low"]

    def test_failing_listener_is_isolated(self):
        bus = EventBus()
        received = []

        def broken(**kw):
            raise RuntimeError("listener bug")

        bus.subscribe("evt", broken, priority=5)
        bus.subscribe("evt", lambda **kw: received.append(kw["value"]))

        bus.emit("evt", value=7)
        assert received == [7]

    def test_unsubscribe_and_disable(self):
        bus = EventBus()
        received = []

        def listener(**kw):
            received.append(kw)

        bus.subscribe("evt", listener)
        bus.set_enabled(False)
        bus.emit("evt")
        bus.set_enabled(True)
        bus.unsubscribe("evt", listener)
        bus.emit("evt")

        assert received == []

    def test_history(self):
        bus = EventBus(max_history=2)
        for name in ("a", "b", "c"):
            bus.emit(name, x=1)

        history = bus.get_history()
        assert [h["event"] for h in history] == ["b", "c"]
        assert history[-1]["data_keys"] == ["x"]

    def test_buses_are_independent(self):
        first, second = EventBus(), EventBus()
        first.subscribe("evt", lambda **kw: None)
        assert first.listener_count == 1
        assert second.listener_count == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
