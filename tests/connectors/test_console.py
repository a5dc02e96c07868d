"""Tests for the console connector."""

import io
from unittest.mock import AsyncMock

import pytest

from parley.connectors.base import Media
from parley.connectors.console import ConsoleConnector


@pytest.fixture
def stream():
    return io.StringIO()


@pytest.fixture
def connector(stream):
    return ConsoleConnector(user_id="me", chat_id="local", stream=stream)


class TestConsoleConnector:
    @pytest.mark.asyncio
    async def test_start_stop(self, connector):
        await connector.start()
        assert connector.running
        await connector.stop()
        assert not connector.running

    @pytest.mark.asyncio
    async def test_send_text_writes_line(self, connector, stream):
        first = await connector.send_text("local", "hi there")
        second = await connector.send_text("local", "again")
        assert stream.getvalue() == "< hi there\n< again\n"
        assert int(second) == int(first) + 1

    @pytest.mark.asyncio
    async def test_other_chats_are_labelled(self, connector, stream):
        await connector.send_text("admin", "ping")
        assert stream.getvalue() == "[admin]< ping\n"

    @pytest.mark.asyncio
    async def test_reaction(self, connector, stream):
        await connector.send_reaction("local", "3", "\U0001f44d")
        assert stream.getvalue() == "< (\U0001f44d on #3)\n"

    @pytest.mark.asyncio
    async def test_media(self, connector, stream):
        media = Media(data=b"x", filename="cat.png", mime_type="image/png")
        await connector.send_media("local", media, caption="a cat")
        assert stream.getvalue() == "< [image/png: cat.png] a cat\n"

    @pytest.mark.asyncio
    async def test_feed_builds_message(self, connector):
        handler = AsyncMock()
        connector.set_message_handler(handler)

        await connector.feed("/help")

        message = handler.await_args.args[0]
        assert message.text == "/help"
        assert message.sender_id == "me"
        assert message.chat_id == "local"

    @pytest.mark.asyncio
    async def test_feed_without_handler(self, connector):
        await connector.feed("hello")

    @pytest.mark.asyncio
    async def test_drives_a_dispatcher(self, make_dispatcher, make_message, stream):
        console = ConsoleConnector(user_id="admin", chat_id="admin", stream=stream)
        dispatcher = await make_dispatcher()
        dispatcher.connector = console
        console.set_message_handler(dispatcher.handle_message)

        await console.feed("/plugins")

        assert stream.getvalue().startswith("< ")
        assert "core" in stream.getvalue()
