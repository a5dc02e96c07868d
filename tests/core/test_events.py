"""Tests for the event bus."""

import pytest

from parley.core.events import COMMAND_EXECUTED, MESSAGE_IN, Event, EventBus


class TestEventBus:
    @pytest.mark.asyncio
    async def test_subscribe_and_emit(self):
        bus = EventBus()
        received = []

        async def handler(event):
            received.append(event)

        bus.subscribe(MESSAGE_IN, handler)
        await bus.emit(Event(name=MESSAGE_IN, data={"text": "hi"}))
        assert len(received) == 1
        assert received[0].data["text"] == "hi"

    @pytest.mark.asyncio
    async def test_only_matching_name(self):
        bus = EventBus()
        received = []

        async def handler(event):
            received.append(event)

        bus.subscribe(MESSAGE_IN, handler)
        await bus.emit(Event(name=COMMAND_EXECUTED))
        assert received == []

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        received = []

        async def handler(event):
            received.append(event)

        bus.subscribe(MESSAGE_IN, handler)
        bus.unsubscribe(MESSAGE_IN, handler)
        await bus.emit(Event(name=MESSAGE_IN))
        assert received == []

    def test_unsubscribe_unknown_is_noop(self):
        bus = EventBus()

        async def handler(event):
            pass

        bus.unsubscribe("nothing", handler)

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_others(self):
        bus = EventBus()
        received = []

        async def bad(event):
            raise RuntimeError("boom")

        async def good(event):
            received.append(event)

        bus.subscribe(MESSAGE_IN, bad)
        bus.subscribe(MESSAGE_IN, good)
        await bus.emit(Event(name=MESSAGE_IN))
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_emit_without_subscribers(self):
        bus = EventBus()
        await bus.emit(Event(name=MESSAGE_IN))

    @pytest.mark.asyncio
    async def test_handler_may_unsubscribe_during_emit(self):
        bus = EventBus()
        received = []

        async def once(event):
            received.append("once")
            bus.unsubscribe(MESSAGE_IN, once)

        async def always(event):
            received.append("always")

        bus.subscribe(MESSAGE_IN, once)
        bus.subscribe(MESSAGE_IN, always)
        await bus.emit(Event(name=MESSAGE_IN))
        await bus.emit(Event(name=MESSAGE_IN))
        assert received == ["once", "always", "always"]
