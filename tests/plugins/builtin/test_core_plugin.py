"""Tests for the core plugin: help, plugin management and aliases."""

import pytest

from parley.core.aliases import CommandAliases
from parley.core.config import ParleyConfig
from parley.core.events import EventBus
from parley.plugins.base import Plugin, PluginContext, PluginMeta, command
from parley.plugins.builtin.core import CorePlugin
from parley.plugins.builtin.debug import DebugPlugin
from parley.plugins.loader import PluginLoader
from parley.plugins.registry import PluginRegistry
from parley.storage.memory import MemoryPluginStore


class ToolPlugin(Plugin):
    meta = PluginMeta(
        id="tool", name="Tools", version="0.2.0", description="Handy tools"
    )

    @command(description="Echo back the arguments")
    def echo(self, ctx):
        return ctx.args


@pytest.fixture
def tools():
    return []


@pytest.fixture
def start(make_dispatcher, tools):
    def factory():
        plugin = ToolPlugin()
        tools.append(plugin)
        return plugin

    async def _start(extra=None, **overrides):
        return await make_dispatcher({"tool": factory, **(extra or {})}, **overrides)

    return _start


class TestHelp:
    @pytest.mark.asyncio
    async def test_lists_visible_commands(self, start, connector, make_message):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/help"))
        text = connector.texts[0]
        assert text.startswith("Plugins:")
        assert "*Core* (1.0.0)" in text
        assert "*Tools* (0.2.0)\n> Handy tools" in text
        assert "* `/echo`: Echo back the arguments" in text
        assert "`/resolvecommand`" not in text
        assert "`/reload`" not in text

    @pytest.mark.asyncio
    async def test_all_shows_hidden(self, start, connector, make_message):
        dispatcher = await start({"debug": DebugPlugin})
        await dispatcher.handle_message(make_message("/help all"))
        text = connector.texts[0]
        assert "`/resolvecommand`" in text
        assert "`/reload`" in text
        assert "*Debug tools*" in text

    @pytest.mark.asyncio
    async def test_hidden_plugin_omitted(self, start, connector, make_message):
        dispatcher = await start({"debug": DebugPlugin})
        await dispatcher.handle_message(make_message("/help"))
        assert "Debug tools" not in connector.texts[0]

    @pytest.mark.asyncio
    async def test_admin_sees_admin_commands(self, start, connector, make_message):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/help", sender_id="admin"))
        assert "`/reload`" in connector.texts[0]

    @pytest.mark.asyncio
    async def test_too_many_numbers(self, start, connector, make_message):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/help 1 2"))
        assert connector.texts == [
            "Error: invalid arguments. Usage: `/help [page] [all]`"
        ]

    @pytest.mark.asyncio
    async def test_page_zero(self, start, connector, make_message):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/help 0"))
        assert connector.texts == ["Error: page number must be greater than 0"]

    @pytest.mark.asyncio
    async def test_page_out_of_range(self, start, connector, make_message):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/help 5"))
        assert connector.texts == ["Error: there are only 1 help page(s)"]

    @pytest.mark.asyncio
    async def test_pagination_footer(self, start, connector, make_message):
        dispatcher = await start(help_page_size=60)
        await dispatcher.handle_message(make_message("/help 2"))
        text = connector.texts[0]
        assert text.endswith("_")
        assert "_Page 2/" in text

    @pytest.mark.asyncio
    async def test_custom_prefix(self, start, connector, make_message):
        dispatcher = await start(command_prefix="!")
        await dispatcher.handle_message(make_message("!help"))
        assert "`!echo`" in connector.texts[0]


class TestPluginsCommand:
    @pytest.mark.asyncio
    async def test_requires_trusted(self, start, connector, make_message):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/plugins"))
        assert "don't have permission" in connector.texts[0]

    @pytest.mark.asyncio
    async def test_lists_plugins(self, start, connector, make_message):
        dispatcher = await start({"debug": DebugPlugin})
        await dispatcher.handle_message(make_message("/plugins", sender_id="friend"))
        assert connector.texts == [
            "Loaded plugins:\n* `core` Core (1.0.0)\n* `tool` Tools (0.2.0)"
        ]

    @pytest.mark.asyncio
    async def test_admin_sees_hidden(self, start, connector, make_message):
        dispatcher = await start({"debug": DebugPlugin})
        await dispatcher.handle_message(make_message("/plugins", sender_id="admin"))
        assert "`debug` Debug tools" in connector.texts[0]


class TestReloadCommand:
    @pytest.mark.asyncio
    async def test_reload_all(self, start, connector, make_message, tools):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/reload", sender_id="admin"))
        assert connector.emojis == ["\U0001f44d"]
        assert len(tools) == 2
        assert dispatcher.registry.get("tool") is tools[1]

    @pytest.mark.asyncio
    async def test_reload_named(self, start, connector, make_message, tools):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/reload tool", sender_id="admin"))
        assert connector.emojis == ["\U0001f44d"]
        assert dispatcher.registry.get("tool") is tools[1]

    @pytest.mark.asyncio
    async def test_reload_core_refused(self, start, connector, make_message):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/reload core", sender_id="admin"))
        assert connector.texts == ["Error: cannot reload core plugin"]

    @pytest.mark.asyncio
    async def test_reload_unknown(self, start, connector, make_message):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/reload nothere", sender_id="admin"))
        assert connector.texts == ["Error: Unknown plugin(s): nothere"]

    @pytest.mark.asyncio
    async def test_reload_failure_reported(self, make_dispatcher, connector, make_message):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) > 1:
                raise RuntimeError("broken on disk")
            return ToolPlugin()

        dispatcher = await make_dispatcher({"tool": flaky})
        await dispatcher.handle_message(make_message("/reload tool", sender_id="admin"))
        assert connector.texts == ["Error: failed to reload: tool"]
        assert "tool" not in dispatcher.registry

    @pytest.mark.asyncio
    async def test_reload_requires_admin(self, start, connector, make_message):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/reload", sender_id="friend"))
        assert "Requires at least permission level `ADMIN`" in connector.texts[0]


class TestAliasCommands:
    @pytest.mark.asyncio
    async def test_set_and_use_alias(self, start, connector, make_message):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/alias e /echo"))
        await dispatcher.handle_message(make_message("/e hi"))
        assert connector.emojis == ["\U0001f44d"]
        assert connector.texts == ["hi"]

    @pytest.mark.asyncio
    async def test_alias_is_per_user(self, start, connector, make_message):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/alias e echo"))
        await dispatcher.handle_message(make_message("/e hi", sender_id="other"))
        assert connector.texts[0].startswith("Error: unknown command `/e`")

    @pytest.mark.asyncio
    async def test_alias_persisted(self, start, make_message):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/alias e echo"))
        core = dispatcher.registry.get("core")
        assert await core.store.get("aliases:user") == {"e": "echo"}

    @pytest.mark.asyncio
    async def test_list_aliases(self, start, connector, make_message):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/alias"))
        await dispatcher.handle_message(make_message("/alias e echo"))
        await dispatcher.handle_message(make_message("/alias"))
        assert connector.texts == ["You have no aliases set", "Your aliases:\n* `e`: `echo`"]

    @pytest.mark.asyncio
    async def test_self_alias_rejected(self, start, connector, make_message):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/alias echo /echo"))
        assert connector.texts == ["Error: an alias cannot point to itself"]

    @pytest.mark.asyncio
    async def test_usage(self, start, connector, make_message):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/alias onlyone"))
        assert connector.texts == ["Error: Usage: `/alias <alias> <command>`"]

    @pytest.mark.asyncio
    async def test_unalias(self, start, connector, make_message):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/alias e echo"))
        await dispatcher.handle_message(make_message("/unalias e"))
        await dispatcher.handle_message(make_message("/e hi"))
        assert connector.emojis == ["\U0001f44d", "\U0001f44d"]
        assert connector.texts[0].startswith("Error: unknown command `/e`")
        core = dispatcher.registry.get("core")
        assert await core.store.get("aliases:user") is None

    @pytest.mark.asyncio
    async def test_unalias_without_aliases(self, start, connector, make_message):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/unalias e"))
        assert connector.texts == ["Error: You have no aliases set"]

    @pytest.mark.asyncio
    async def test_unalias_unknown(self, start, connector, make_message):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/alias e echo"))
        await dispatcher.handle_message(make_message("/unalias zz"))
        assert connector.texts == ["Alias `zz` not found"]

    @pytest.mark.asyncio
    async def test_resolvecommand(self, start, connector, make_message):
        dispatcher = await start()
        await dispatcher.handle_message(make_message("/alias e echo"))
        await dispatcher.handle_message(make_message("/resolvecommand e"))
        await dispatcher.handle_message(make_message("/resolvecommand nothing"))
        assert connector.texts == ["Command `e` resolves to `tool/echo`"]
        assert connector.emojis == ["\U0001f44d", "\U0001f44e"]


class TestAliasRestore:
    @pytest.mark.asyncio
    async def test_on_load_restores_stored_aliases(self):
        config = ParleyConfig()
        loader = PluginLoader(PluginRegistry(), config, manifest={})
        aliases = CommandAliases()
        store = MemoryPluginStore("core")
        await store.set("aliases:alice", {"e": "echo", "h": "help"})

        core = CorePlugin(loader, aliases)
        core.bind(
            PluginContext(plugin_id="core", config=config, event_bus=EventBus(), store=store)
        )
        await core.on_load()
        assert aliases.user_aliases("alice") == {"e": "echo", "h": "help"}

        await core.on_unload()
        assert aliases.user_aliases("alice") == {}
