"""Loaded plugins and the command/interaction indexes."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, ValidationError

from parley.exceptions import PluginError

if TYPE_CHECKING:
    from parley.core.interactions import InteractionRef
    from parley.plugins.base import Command, InteractionHandler, Plugin

logger = structlog.get_logger()


class PluginRegistry:
    def __init__(self) -> None:
        # Insertion order is load order.
        self._plugins: dict[str, Plugin] = {}
        self._commands: dict[str, Command] = {}
        self._interactions: dict[tuple[str, str], InteractionHandler] = {}

    @staticmethod
    def validate_config(
        plugin: Plugin, raw_config: dict[str, Any] | None
    ) -> BaseModel | None:
        schema = plugin.config_schema
        if schema is None:
            if raw_config:
                logger.warning("plugin_config_ignored", plugin=plugin.id)
            return None
        try:
            return schema.model_validate(raw_config or {})
        except ValidationError as e:
            raise PluginError(f"Invalid configuration for plugin {plugin.id}: {e}") from e

    def register(
        self, plugin: Plugin, raw_config: dict[str, Any] | None = None
    ) -> BaseModel | None:
        """Validate *raw_config*, then index the plugin. Returns the typed config.

        A command whose name is already indexed stays with its first owner;
        the newcomer's copy is logged and skipped.
        """
        plugin_id = plugin.id
        if plugin_id in self._plugins:
            raise PluginError(f"Plugin already registered: {plugin_id}")

        plugin_config = self.validate_config(plugin, raw_config)

        self._plugins[plugin_id] = plugin
        for cmd in plugin.commands:
            owner = self._commands.get(cmd.name)
            if owner is not None:
                logger.error(
                    "command_collision",
                    command=cmd.name,
                    plugin=plugin_id,
                    owner=owner.plugin_id,
                )
                continue
            self._commands[cmd.name] = cmd
        for name, handler in plugin.interactions.items():
            self._interactions[(plugin_id, name)] = handler

        logger.info(
            "plugin_registered",
            plugin=plugin_id,
            version=plugin.meta.version,
            commands=len(self.commands_of(plugin_id)),
        )
        return plugin_config

    def unregister(self, plugin_id: str) -> Plugin | None:
        plugin = self._plugins.pop(plugin_id, None)
        if plugin is None:
            return None
        self._commands = {
            name: cmd
            for name, cmd in self._commands.items()
            if cmd.plugin_id != plugin_id
        }
        self._interactions = {
            key: handler
            for key, handler in self._interactions.items()
            if key[0] != plugin_id
        }
        logger.info("plugin_unregistered", plugin=plugin_id)
        return plugin

    def get(self, plugin_id: str) -> Plugin | None:
        return self._plugins.get(plugin_id)

    def __contains__(self, plugin_id: object) -> bool:
        return plugin_id in self._plugins

    def __len__(self) -> int:
        return len(self._plugins)

    @property
    def plugins(self) -> list[Plugin]:
        return list(self._plugins.values())

    @property
    def plugin_ids(self) -> list[str]:
        return list(self._plugins)

    @property
    def commands(self) -> list[Command]:
        return list(self._commands.values())

    def commands_of(self, plugin_id: str) -> list[Command]:
        """Indexed commands owned by *plugin_id*, in declaration order."""
        return [c for c in self._commands.values() if c.plugin_id == plugin_id]

    def get_command(self, name: str) -> Command | None:
        return self._commands.get(name.lower())

    def has_command(self, name: str) -> bool:
        return name.lower() in self._commands

    def get_interaction(self, ref: InteractionRef) -> InteractionHandler | None:
        return self._interactions.get((ref.plugin_id, ref.name))
