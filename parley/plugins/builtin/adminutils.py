"""Admin utilities — permission requests routed to the configured admins."""

from __future__ import annotations

from typing import TYPE_CHECKING

from parley.core.permissions import PermissionLevel
from parley.core.ratelimit import RateLimit
from parley.exceptions import CommandError
from parley.plugins.base import Plugin, PluginMeta, command

if TYPE_CHECKING:
    from parley.plugins.base import HandlerContext

_REQUESTABLE = (PermissionLevel.TRUSTED, PermissionLevel.ADMIN)


class AdminUtilsPlugin(Plugin):
    meta = PluginMeta(
        id="adminutils",
        name="Admin utilities",
        version="0.1.0",
        description="Commands for administration.",
    )

    def __init__(self) -> None:
        super().__init__()
        # sender id -> requested level; cleared when the plugin unloads
        self._pending: dict[str, PermissionLevel] = {}

    async def on_unload(self) -> None:
        self._pending.clear()

    @property
    def pending_requests(self) -> dict[str, PermissionLevel]:
        return dict(self._pending)

    @command(
        description="Request an admin a certain permission level",
        rate_limits=[RateLimit(window_seconds=3600, max_points=1)],
    )
    async def requestpermission(self, ctx: HandlerContext) -> bool:
        sender = ctx.sender_id
        if sender in self._pending:
            raise CommandError(
                "you already have a pending permission request for permission "
                f"level `{self._pending[sender].name}`"
            )

        wanted = ctx.args.strip()
        if not wanted:
            raise CommandError(
                "you must specify a permission level to request. "
                "For example, `/requestpermission trusted`"
            )

        valid = "\n".join(f"* {level.name.lower()}" for level in _REQUESTABLE)
        try:
            level = PermissionLevel.parse(wanted)
        except ValueError:
            level = None
        if level not in _REQUESTABLE:
            raise CommandError(
                f"invalid permission level `{wanted}`. "
                f"Valid permission levels are:\n{valid}"
            )
        if ctx.permission_level >= level:
            raise CommandError(f"you already have permission level `{level.name}`")

        text = (
            f"User `{sender}` has requested permission level `{level.name}` "
            f"(`{int(level)}`). To grant it, add them to the config and restart "
            "the bot."
        )
        for admin_id in sorted(self.context.config.admin_ids):
            await self.connector.send_text(admin_id, text)
        self._pending[sender] = level
        self.logger.info("permission_requested", sender_id=sender, level=level.name)
        return True

    @command(
        description="List pending permission requests",
        min_level=PermissionLevel.ADMIN,
    )
    def permissionrequests(self, ctx: HandlerContext) -> str:
        if not self._pending:
            return "No pending permission requests"
        lines = ["Pending permission requests:"]
        lines.extend(
            f"* `{user}`: `{level.name}`" for user, level in sorted(self._pending.items())
        )
        return "\n".join(lines)

    @command(
        description="Dismiss a pending permission request",
        min_level=PermissionLevel.ADMIN,
    )
    def dismissrequest(self, ctx: HandlerContext) -> bool:
        user = ctx.args.strip()
        if not user:
            raise CommandError("Usage: `/dismissrequest <user>`")
        return self._pending.pop(user, None) is not None
