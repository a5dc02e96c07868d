"""Dispatcher tests: multi-turn interactions."""

import asyncio

import pytest

from parley.core.events import (
    INTERACTION_EXPIRED,
    INTERACTION_REQUESTED,
    INTERACTION_RESOLVED,
)
from parley.core.interactions import conversation_key
from parley.core.results import Continue
from parley.exceptions import CommandError
from parley.plugins.base import Plugin, PluginMeta, command, interaction


class QuizPlugin(Plugin):
    meta = PluginMeta(id="quiz", name="Quiz", version="1.0.0")

    def __init__(self):
        super().__init__()
        self.answers: list[str] = []

    @command(description="Ask a question")
    def ask(self, ctx):
        return Continue(prompt="What is 2+2?", interaction="answer", state={"tries": 0})

    @command()
    def broken(self, ctx):
        return Continue(prompt="?", interaction="missing")

    @interaction()
    def answer(self, ctx):
        self.answers.append(ctx.args)
        text = ctx.args.strip()
        if text == "4":
            return f"Correct after {ctx.state['tries'] + 1} tries!"
        if text == "skip":
            raise CommandError("you cannot skip", preserve_interaction=True)
        if text == "quit":
            raise CommandError("bye")
        if text == "crash":
            raise RuntimeError("boom")
        tries = ctx.state["tries"] + 1
        return Continue(
            prompt=f"Try again ({tries})", interaction="answer", state={"tries": tries}
        )


@pytest.fixture
def quiz():
    return []


@pytest.fixture
def start(make_dispatcher, quiz):
    def factory():
        plugin = QuizPlugin()
        quiz.append(plugin)
        return plugin

    async def _start(**overrides):
        return await make_dispatcher({"quiz": factory}, **overrides)

    return _start


class TestContinuation:
    @pytest.mark.asyncio
    async def test_prompt_then_final_answer(self, start, connector, make_message):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/ask"))
        assert dispatcher.interactions.has_pending(conversation_key("user", "user"))

        await dispatcher.handle_message(make_message("4"))
        assert connector.texts == ["What is 2+2?", "Correct after 1 tries!"]
        assert len(dispatcher.interactions) == 0

    @pytest.mark.asyncio
    async def test_state_carried_between_turns(self, start, connector, make_message):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/ask"))
        await dispatcher.handle_message(make_message("3"))
        await dispatcher.handle_message(make_message("5"))
        await dispatcher.handle_message(make_message("4"))
        assert connector.texts == [
            "What is 2+2?",
            "Try again (1)",
            "Try again (2)",
            "Correct after 3 tries!",
        ]

    @pytest.mark.asyncio
    async def test_pending_takes_precedence_over_commands(
        self, start, connector, make_message, quiz
    ):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/ask"))
        await dispatcher.handle_message(make_message("/help"))
        assert quiz[0].answers == ["/help"]
        assert connector.texts[-1] == "Try again (1)"

    @pytest.mark.asyncio
    async def test_other_user_in_same_chat_not_captured(
        self, start, connector, make_message, quiz
    ):
        dispatcher = await start()
        await dispatcher.handle_message(
            make_message("/ask", sender_id="alice", chat_id="group")
        )
        await dispatcher.handle_message(
            make_message("4", sender_id="bob", chat_id="group")
        )
        assert quiz[0].answers == []
        assert dispatcher.interactions.has_pending(conversation_key("group", "alice"))

    @pytest.mark.asyncio
    async def test_same_user_other_chat_not_captured(
        self, start, make_message, quiz
    ):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/ask", chat_id="room-1"))
        await dispatcher.handle_message(make_message("4", chat_id="room-2"))
        assert quiz[0].answers == []

    @pytest.mark.asyncio
    async def test_prompt_message_id_recorded(self, start, connector, make_message):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/ask"))
        pending = dispatcher.interactions.get(conversation_key("user", "user"))
        assert pending.prompt_message_id == connector.sent_texts[0]["message_id"]
        assert pending.prompt == "What is 2+2?"


class TestInteractionErrors:
    @pytest.mark.asyncio
    async def test_preserving_error_keeps_interaction(
        self, start, connector, make_message
    ):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/ask"))
        await dispatcher.handle_message(make_message("skip"))
        assert connector.texts[-1] == "Error: you cannot skip"
        assert dispatcher.interactions.has_pending(conversation_key("user", "user"))

        await dispatcher.handle_message(make_message("4"))
        assert connector.texts[-1] == "Correct after 1 tries!"

    @pytest.mark.asyncio
    async def test_plain_error_ends_interaction(self, start, connector, make_message):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/ask"))
        await dispatcher.handle_message(make_message("quit"))
        assert connector.texts[-1] == "Error: bye"
        assert len(dispatcher.interactions) == 0

    @pytest.mark.asyncio
    async def test_fault_ends_interaction(self, start, connector, make_message):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/ask"))
        await dispatcher.handle_message(make_message("crash"))
        assert connector.texts[-1] == (
            "Error: something went wrong while handling your message"
        )
        assert len(dispatcher.interactions) == 0

    @pytest.mark.asyncio
    async def test_unknown_interaction_is_a_fault(self, start, connector, make_message):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/broken"))
        assert connector.texts == [
            "Error: something went wrong while handling your message"
        ]
        assert len(dispatcher.interactions) == 0

    @pytest.mark.asyncio
    async def test_plugin_unloaded_while_pending(self, start, connector, make_message):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/ask"))
        await dispatcher.loader.unload("quiz")
        await dispatcher.handle_message(make_message("4"))
        assert connector.texts[-1] == "Error: this conversation is no longer available"
        assert len(dispatcher.interactions) == 0


class TestInteractionEvents:
    @pytest.mark.asyncio
    async def test_requested_and_resolved(self, start, make_message, event_bus):
        dispatcher = await start()
        events = []

        async def record(event):
            events.append(event)

        for name in (INTERACTION_REQUESTED, INTERACTION_RESOLVED):
            event_bus.subscribe(name, record)

        await dispatcher.handle_message(make_message("/ask"))
        await dispatcher.handle_message(make_message("1"))
        await dispatcher.handle_message(make_message("4"))

        assert [e.name for e in events] == [
            INTERACTION_REQUESTED,
            INTERACTION_REQUESTED,
            INTERACTION_RESOLVED,
            INTERACTION_RESOLVED,
        ]
        assert events[0].data["handler"] == "quiz/answer"
        assert events[2].data["continued"] is True
        assert events[3].data["continued"] is False


class TestInteractionExpiry:
    @pytest.mark.asyncio
    async def test_expired_prompt_gets_reaction(
        self, start, connector, make_message, event_bus
    ):
        dispatcher = await start(interaction_timeout_seconds=0.01)
        expired = []

        async def on_expired(event):
            expired.append(event)

        event_bus.subscribe(INTERACTION_EXPIRED, on_expired)
        await dispatcher.handle_message(make_message("/ask"))
        prompt_id = connector.sent_texts[0]["message_id"]

        await asyncio.sleep(0.1)

        assert len(dispatcher.interactions) == 0
        assert connector.reactions == [
            {"chat_id": "user", "message_id": prompt_id, "emoji": "\u231b"}
        ]
        assert expired[0].data["key"] == conversation_key("user", "user")

    @pytest.mark.asyncio
    async def test_message_after_expiry_is_passive(
        self, start, connector, make_message, quiz
    ):
        dispatcher = await start(interaction_timeout_seconds=0.01)
        await dispatcher.handle_message(make_message("/ask"))
        await asyncio.sleep(0.1)
        await dispatcher.handle_message(make_message("4"))
        assert quiz[0].answers == []
        assert connector.texts == ["What is 2+2?"]

    @pytest.mark.asyncio
    async def test_shutdown_clears_pending(self, start, make_message):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/ask"))
        await dispatcher.shutdown()
        assert len(dispatcher.interactions) == 0
