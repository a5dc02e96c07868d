"""Plugin base class, command/interaction declarations and handler contexts."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, ClassVar

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator

from parley.connectors.base import BaseConnector, InboundMessage, InboundReaction
from parley.core.config import ParleyConfig
from parley.core.events import EventBus
from parley.core.permissions import PermissionLevel
from parley.core.ratelimit import RateLimit
from parley.exceptions import PluginError
from parley.storage.base import PluginStore

_COMMAND_MARKER = "__parley_command__"
_INTERACTION_MARKER = "__parley_interaction__"


class PluginMeta(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    version: str
    description: str = ""
    hidden: bool = False
    depends_on: tuple[str, ...] = ()
    uses_storage: bool = False
    rate_limits: tuple[RateLimit, ...] = ()

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not v or not v.replace("_", "").replace("-", "").isalnum():
            raise ValueError(f"invalid plugin id: {v!r}")
        return v.lower()


class Command(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    description: str = ""
    handler: Callable[..., Any] = Field(repr=False)
    min_level: PermissionLevel = PermissionLevel.NONE
    hidden: bool = False
    rate_limits: tuple[RateLimit, ...] = ()
    points: int = Field(default=1, ge=0)
    plugin_id: str = ""

    @field_validator("name")
    @classmethod
    def normalize_name(cls, v: str) -> str:
        name = v.strip().lstrip("/").lower()
        if not name or any(c.isspace() for c in name):
            raise ValueError(f"invalid command name: {v!r}")
        return name

    @property
    def qualified_name(self) -> str:
        return f"{self.plugin_id}/{self.name}"


class InteractionHandler(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    handler: Callable[..., Any] = Field(repr=False)
    plugin_id: str = ""


def command(
    name: str | None = None,
    *,
    description: str = "",
    min_level: PermissionLevel = PermissionLevel.NONE,
    hidden: bool = False,
    rate_limits: list[RateLimit] | tuple[RateLimit, ...] = (),
    points: int = 1,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Declare a plugin method as a command handler."""

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        setattr(
            fn,
            _COMMAND_MARKER,
            {
                "name": name or fn.__name__,
                "description": description or (fn.__doc__ or "").strip(),
                "min_level": min_level,
                "hidden": hidden,
                "rate_limits": tuple(rate_limits),
                "points": points,
            },
        )
        return fn

    return decorator


def interaction(
    name: str | None = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Declare a plugin method as a resumable interaction handler."""

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        setattr(fn, _INTERACTION_MARKER, name or fn.__name__)
        return fn

    return decorator


class PluginContext(BaseModel):
    """Resources handed to a plugin when it is registered."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    plugin_id: str
    config: ParleyConfig
    event_bus: EventBus
    plugin_config: BaseModel | None = None
    store: PluginStore | None = None
    connector: BaseConnector | None = None
    logger: Any = None


class Plugin:
    """Base class for plugins.

    Subclasses set ``meta`` and may set ``config_schema`` to a pydantic model
    that validates their entry in ``plugins_config``. Commands and interaction
    handlers are methods marked with :func:`command` and :func:`interaction`.
    """

    meta: ClassVar[PluginMeta]
    config_schema: ClassVar[type[BaseModel] | None] = None

    def __init__(self) -> None:
        self._context: PluginContext | None = None
        self._commands: list[Command] = []
        self._interactions: dict[str, InteractionHandler] = {}
        self._collect_declared()

    def _collect_declared(self) -> None:
        found: dict[str, Any] = {}
        for klass in reversed(type(self).__mro__):
            for attr, value in vars(klass).items():
                if hasattr(value, _COMMAND_MARKER) or hasattr(
                    value, _INTERACTION_MARKER
                ):
                    found[attr] = value
                else:
                    found.pop(attr, None)

        for attr, value in found.items():
            bound = getattr(self, attr)
            spec = getattr(value, _COMMAND_MARKER, None)
            if spec is not None:
                self.register_command(Command(handler=bound, **spec))
            iname = getattr(value, _INTERACTION_MARKER, None)
            if iname is not None:
                self.register_interaction(iname, bound)

    @property
    def id(self) -> str:
        return self.meta.id

    @property
    def commands(self) -> list[Command]:
        return list(self._commands)

    @property
    def interactions(self) -> dict[str, InteractionHandler]:
        return dict(self._interactions)

    def register_command(self, cmd: Command) -> None:
        """Add a command; only meaningful before the plugin is registered."""
        cmd = cmd.model_copy(update={"plugin_id": self.meta.id})
        if any(c.name == cmd.name for c in self._commands):
            raise PluginError(f"Duplicate command {cmd.name} in plugin {self.id}")
        self._commands.append(cmd)

    def register_interaction(self, name: str, handler: Callable[..., Any]) -> None:
        if name in self._interactions:
            raise PluginError(f"Duplicate interaction {name} in plugin {self.id}")
        self._interactions[name] = InteractionHandler(
            name=name, handler=handler, plugin_id=self.meta.id
        )

    # --- resources ---

    def bind(self, context: PluginContext) -> None:
        self._context = context

    def unbind(self) -> None:
        self._context = None

    @property
    def is_bound(self) -> bool:
        return self._context is not None

    @property
    def context(self) -> PluginContext:
        if self._context is None:
            raise PluginError(f"Plugin {self.id} is not loaded")
        return self._context

    @property
    def config(self) -> Any:
        return self.context.plugin_config

    @property
    def store(self) -> PluginStore:
        store = self.context.store
        if store is None:
            raise PluginError(f"Plugin {self.id} does not use storage")
        return store

    @property
    def connector(self) -> BaseConnector:
        connector = self.context.connector
        if connector is None:
            raise PluginError(f"Plugin {self.id} has no connector")
        return connector

    @property
    def logger(self) -> Any:
        if self._context is not None and self._context.logger is not None:
            return self._context.logger
        return structlog.get_logger().bind(plugin=self.meta.id)

    # --- lifecycle hooks ---

    async def on_load(self) -> None:
        """Called once the plugin is registered and its store is open."""

    async def on_unload(self) -> None:
        """Called before the plugin is removed or the process stops."""

    async def on_message(self, ctx: ObserverContext) -> None:
        """Called for every inbound message when overridden."""

    async def on_reaction(self, ctx: ReactionContext) -> None:
        """Called for every inbound reaction when overridden."""

    @property
    def observes_messages(self) -> bool:
        return type(self).on_message is not Plugin.on_message

    @property
    def observes_reactions(self) -> bool:
        return type(self).on_reaction is not Plugin.on_reaction


class HandlerContext(BaseModel):
    """Everything a command or interaction handler receives."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    message: InboundMessage
    sender_id: str
    chat_id: str
    permission_level: PermissionLevel
    plugin: Plugin
    args: str = ""
    command: str | None = None
    state: Any = None
    connector: BaseConnector | None = None

    @property
    def text(self) -> str:
        return self.message.text

    @property
    def config(self) -> Any:
        return self.plugin.config

    @property
    def store(self) -> PluginStore:
        return self.plugin.store


Responder = Callable[[Any], Awaitable[Any]]


class ObserverContext(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    message: InboundMessage
    sender_id: str
    chat_id: str
    permission_level: PermissionLevel
    did_handle: bool
    respond: Responder = Field(repr=False)
    connector: BaseConnector | None = None


class ReactionContext(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    reaction: InboundReaction
    sender_id: str
    chat_id: str
    permission_level: PermissionLevel
    connector: BaseConnector | None = None
