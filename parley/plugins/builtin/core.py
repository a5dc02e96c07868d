"""Core plugin — help, aliases and plugin management."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from parley.core.aliases import normalize_name
from parley.core.help import generate_help, page_count, paginate
from parley.core.permissions import PermissionLevel
from parley.exceptions import CommandError, PluginError
from parley.plugins.base import Plugin, PluginMeta, command

if TYPE_CHECKING:
    from parley.core.aliases import CommandAliases
    from parley.plugins.base import HandlerContext
    from parley.plugins.loader import PluginLoader

ALIAS_KEY_PREFIX = "aliases:"

_ALIAS_ARGS = re.compile(r"^/?(\S+)\s+/?(\S+)$")


class CorePlugin(Plugin):
    """Installed by the dispatcher itself; never listed in the manifest."""

    meta = PluginMeta(
        id="core",
        name="Core",
        version="1.0.0",
        description="Core commands",
        uses_storage=True,
    )

    def __init__(self, loader: PluginLoader, aliases: CommandAliases) -> None:
        super().__init__()
        self._loader = loader
        self._aliases = aliases

    async def on_load(self) -> None:
        count = 0
        for key in await self.store.keys(ALIAS_KEY_PREFIX):
            user_id = key[len(ALIAS_KEY_PREFIX) :]
            for alias, target in (await self.store.get(key, {})).items():
                self._aliases.set_user_alias(user_id, alias, target)
                count += 1
        self.logger.info("user_aliases_loaded", count=count)

    async def on_unload(self) -> None:
        self._aliases.clear_user_aliases()

    @command(
        description=(
            "Shows this help message (use `/help all` to show hidden commands)"
        )
    )
    def help(self, ctx: HandlerContext) -> str:
        numbers = re.findall(r"\d+", ctx.args)
        if len(numbers) > 1:
            raise CommandError("invalid arguments. Usage: `/help [page] [all]`")

        page = int(numbers[0]) if numbers else 1
        if page < 1:
            raise CommandError("page number must be greater than 0")

        show_hidden = "all" in ctx.args.lower().split()
        text = generate_help(
            self._loader.registry,
            ctx.permission_level,
            show_hidden=show_hidden,
            prefix=self.context.config.command_prefix,
        )
        page_size = self.context.config.help_page_size
        pages = page_count(text, page_size)
        if page > pages:
            raise CommandError(f"there are only {pages} help page(s)")

        body = paginate(text, page, page_size)
        if pages > 1:
            body += f"\n\n_Page {page}/{pages}_"
        return body

    @command(description="List loaded plugins", min_level=PermissionLevel.TRUSTED)
    def plugins(self, ctx: HandlerContext) -> str:
        lines = ["Loaded plugins:"]
        for plugin in self._loader.registry.plugins:
            if plugin.meta.hidden and ctx.permission_level < PermissionLevel.ADMIN:
                continue
            lines.append(f"* `{plugin.id}` {plugin.meta.name} ({plugin.meta.version})")
        return "\n".join(lines)

    @command(description="Reload plugins", min_level=PermissionLevel.ADMIN)
    async def reload(self, ctx: HandlerContext) -> bool:
        ids = [p for p in re.split(r"[,\s]+", ctx.args.strip().lower()) if p]
        if "core" in ids:
            raise CommandError("cannot reload core plugin")

        try:
            loaded = await self._loader.reload(ids or None)
        except PluginError as e:
            raise CommandError(str(e)) from e

        missing = [p for p in ids if p not in loaded]
        if missing:
            raise CommandError(f"failed to reload: {', '.join(missing)}")
        return True

    @command(description="Set an alias for a command")
    async def alias(self, ctx: HandlerContext) -> str | bool:
        args = ctx.args.strip()
        if not args:
            aliases = self._aliases.user_aliases(ctx.sender_id)
            if not aliases:
                return "You have no aliases set"
            lines = ["Your aliases:"]
            lines.extend(f"* `{a}`: `{c}`" for a, c in sorted(aliases.items()))
            return "\n".join(lines)

        match = _ALIAS_ARGS.match(args)
        if not match:
            raise CommandError("Usage: `/alias <alias> <command>`")

        alias, target = normalize_name(match[1]), normalize_name(match[2])
        if alias == target:
            raise CommandError("an alias cannot point to itself")

        self._aliases.set_user_alias(ctx.sender_id, alias, target)
        await self._save_aliases(ctx.sender_id)
        return True

    @command(description="Remove an alias")
    async def unalias(self, ctx: HandlerContext) -> str | bool:
        alias = normalize_name(ctx.args)
        if not alias:
            raise CommandError("Usage: `/unalias <alias>`")
        if not self._aliases.user_aliases(ctx.sender_id):
            raise CommandError("You have no aliases set")
        if not self._aliases.remove_user_alias(ctx.sender_id, alias):
            return f"Alias `{alias}` not found"

        await self._save_aliases(ctx.sender_id)
        return True

    @command(description="Resolve a command [DEBUG]", hidden=True)
    def resolvecommand(self, ctx: HandlerContext) -> str | bool:
        name = normalize_name(ctx.args)
        if not name:
            raise CommandError("Usage: `/resolvecommand <command>`")

        registry = self._loader.registry
        resolved = self._aliases.resolve(name, ctx.sender_id, registry.has_command)
        cmd = registry.get_command(resolved) if resolved else None
        if cmd is None:
            return False
        return f"Command `{name}` resolves to `{cmd.qualified_name}`"

    async def _save_aliases(self, user_id: str) -> None:
        key = ALIAS_KEY_PREFIX + user_id
        aliases = self._aliases.user_aliases(user_id)
        if aliases:
            await self.store.set(key, aliases)
        else:
            await self.store.delete(key)
