"""Identity and message introspection commands."""

from __future__ import annotations

from typing import TYPE_CHECKING

from parley.core.permissions import PermissionLevel
from parley.exceptions import CommandError
from parley.plugins.base import Plugin, PluginMeta, command

if TYPE_CHECKING:
    from parley.plugins.base import HandlerContext


class DebugPlugin(Plugin):
    meta = PluginMeta(
        id="debug",
        name="Debug tools",
        version="0.1.0",
        description="Helps debug the bot and its plugins",
        hidden=True,
    )

    @command(description="Show your id and permission level")
    def whoami(self, ctx: HandlerContext) -> str:
        return (
            f"User: `{ctx.sender_id}`\n"
            f"Permission level: `{ctx.permission_level.name}`"
        )

    @command(description="Get the chat ID")
    def chatid(self, ctx: HandlerContext) -> str:
        return f"`{ctx.chat_id}`"

    @command(description="Get the quoted message ID")
    def messageid(self, ctx: HandlerContext) -> str:
        quoted = ctx.message.quoted_message_id
        if quoted is None:
            raise CommandError("no quoted message")
        return f"`{quoted}`"

    @command(
        description="Dump the incoming message",
        min_level=PermissionLevel.ADMIN,
    )
    def debuginfo(self, ctx: HandlerContext) -> str:
        dump = ctx.message.model_dump_json(indent=2, exclude={"raw"})
        return f"```\n{dump}\n```"
