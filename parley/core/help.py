"""Help text generation and pagination."""

from __future__ import annotations

from typing import TYPE_CHECKING

from parley.core.permissions import PermissionLevel

if TYPE_CHECKING:
    from parley.plugins.registry import PluginRegistry


def generate_help(
    registry: PluginRegistry,
    level: PermissionLevel,
    *,
    show_hidden: bool = False,
    prefix: str = "/",
) -> str:
    """List each loaded plugin's commands visible at *level*.

    Hidden plugins and commands, and commands above *level*, appear only with
    *show_hidden*. Plugins with nothing to show are left out.
    """
    msg = "Plugins:"
    for plugin in registry.plugins:
        meta = plugin.meta
        if meta.hidden and not show_hidden:
            continue

        lines = []
        for command in registry.commands_of(plugin.id):
            if (command.hidden or command.min_level > level) and not show_hidden:
                continue
            lines.append(f"\n* `{prefix}{command.name}`: {command.description}")

        if lines:
            msg += f"\n\n*{meta.name}* ({meta.version})"
            if meta.description:
                msg += f"\n> {meta.description}"
            msg += "\nCommands:" + "".join(lines)
    return msg


def paginate(text: str, page: int, page_size: int) -> str:
    """Return roughly *page_size* characters of *text*, cut on line breaks."""
    if page < 1:
        raise ValueError("page must be >= 1")

    start = (page - 1) * page_size
    end = start + page_size

    if page > 1:
        # Skip the line the previous page finished.
        while start < end and start < len(text) and text[start] != "\n":
            start += 1

    while end < len(text) and text[end] != "\n":
        end += 1

    return text[start:end].strip()


def page_count(text: str, page_size: int) -> int:
    count = 1
    while paginate(text, count + 1, page_size):
        count += 1
    return count
