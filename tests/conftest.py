"""Shared test fixtures."""

from __future__ import annotations

import itertools
import os
from datetime import UTC, datetime

import pytest

from parley.connectors.base import BaseConnector, InboundMessage
from parley.core.aliases import CommandAliases
from parley.core.config import ParleyConfig
from parley.core.dispatcher import Dispatcher
from parley.core.events import EventBus
from parley.plugins.builtin.core import CorePlugin
from parley.plugins.loader import PluginLoader
from parley.plugins.registry import PluginRegistry


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Keep a developer's .env and PARLEY_* variables out of the tests."""
    monkeypatch.setitem(ParleyConfig.model_config, "env_file", None)
    for key in list(os.environ):
        if key.startswith("PARLEY_"):
            monkeypatch.delenv(key, raising=False)


class MockConnector(BaseConnector):
    """Records everything sent through it."""

    def __init__(self):
        super().__init__()
        self.sent_texts: list[dict] = []
        self.reactions: list[dict] = []
        self.media: list[dict] = []
        self.typing: list[str] = []
        self._ids = itertools.count(1000)
        self.started = False

    async def start(self):
        self.started = True

    async def stop(self):
        self.started = False

    async def send_text(self, chat_id, text, *, reply_to=None):
        message_id = str(next(self._ids))
        self.sent_texts.append(
            {
                "chat_id": chat_id,
                "text": text,
                "reply_to": reply_to,
                "message_id": message_id,
            }
        )
        return message_id

    async def send_reaction(self, chat_id, message_id, emoji):
        self.reactions.append(
            {"chat_id": chat_id, "message_id": message_id, "emoji": emoji}
        )

    async def send_media(self, chat_id, media, *, caption=None, reply_to=None):
        self.media.append(
            {"chat_id": chat_id, "media": media, "caption": caption, "reply_to": reply_to}
        )

    async def send_typing_indicator(self, chat_id):
        self.typing.append(chat_id)

    @property
    def texts(self) -> list[str]:
        return [m["text"] for m in self.sent_texts]

    @property
    def emojis(self) -> list[str]:
        return [r["emoji"] for r in self.reactions]


@pytest.fixture
def connector():
    return MockConnector()


@pytest.fixture
def config():
    return ParleyConfig(admin_ids={"admin"}, trusted_ids={"friend"})


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def make_message():
    ids = itertools.count(1)

    def _make(
        text,
        *,
        sender_id="user",
        chat_id=None,
        message_id=None,
        timestamp=None,
        quoted_message_id=None,
    ):
        return InboundMessage(
            message_id=message_id or str(next(ids)),
            sender_id=sender_id,
            chat_id=chat_id or sender_id,
            text=text,
            timestamp=timestamp or datetime.now(UTC),
            quoted_message_id=quoted_message_id,
        )

    return _make


@pytest.fixture
def make_dispatcher(connector, event_bus):
    """Build and start a Dispatcher whose manifest holds the given plugin factories.

    ``plugins`` maps plugin ids to zero-argument factories; every id is put in
    the configured plugin list unless ``config`` already names one.
    """

    async def _make(plugins=None, *, config=None, with_core=True, **overrides):
        plugins = dict(plugins or {})
        if config is None:
            settings = {
                "admin_ids": {"admin"},
                "trusted_ids": {"friend"},
                "plugins": list(plugins),
            }
            settings.update(overrides)
            config = ParleyConfig(**settings)
        registry = PluginRegistry()
        loader = PluginLoader(registry, config, event_bus, manifest=plugins)
        aliases = CommandAliases(config.aliases)
        dispatcher = Dispatcher(
            config,
            loader,
            connector=connector,
            aliases=aliases,
            event_bus=event_bus,
            core_plugin=CorePlugin(loader, aliases) if with_core else None,
        )
        await dispatcher.startup()
        return dispatcher

    return _make
