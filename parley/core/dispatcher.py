"""Message dispatcher — routes inbound messages to commands and interactions."""

from __future__ import annotations

import asyncio
import functools
import inspect
from collections.abc import Callable, Coroutine
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from parley.connectors.base import InboundMessage, InboundReaction, Media
from parley.core.aliases import CommandAliases
from parley.core.events import (
    COMMAND_EXECUTED,
    COMMAND_FAILED,
    COMMAND_REJECTED,
    DISPATCHER_STARTED,
    DISPATCHER_STOPPED,
    INTERACTION_EXPIRED,
    INTERACTION_REQUESTED,
    INTERACTION_RESOLVED,
    MESSAGE_IN,
    MESSAGE_OUT,
    Event,
    EventBus,
)
from parley.core.interactions import (
    InteractionRef,
    InteractionStore,
    PendingInteraction,
    conversation_key,
)
from parley.core.permissions import PermissionLevel, PermissionResolver
from parley.core.ratelimit import RateLimiter
from parley.core.results import (
    EXPIRED_REACTION,
    NEGATIVE_REACTION,
    POSITIVE_REACTION,
    Continue,
    MediaReply,
    OutboundAction,
    ReactionReply,
    TextReply,
)
from parley.exceptions import (
    CommandError,
    CommandPermissionError,
    PluginError,
    RateLimitedError,
)
from parley.plugins.base import (
    Command,
    HandlerContext,
    ObserverContext,
    Plugin,
    ReactionContext,
)

if TYPE_CHECKING:
    from parley.connectors.base import BaseConnector
    from parley.core.config import ParleyConfig
    from parley.plugins.loader import PluginLoader
    from parley.plugins.registry import PluginRegistry

logger = structlog.get_logger()

PERMISSION_REQUEST_PLUGIN = "adminutils"
PERMISSION_REQUEST_COMMAND = "requestpermission"
GENERIC_FAILURE = "something went wrong while handling your message"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Dispatcher:
    """Runs every inbound message through the dispatch state machine.

    A message either resumes the pending interaction of its conversation,
    invokes a command, or is passive. Whatever the handler returns is
    normalised into at most one outbound action, which is returned and, when
    a connector is attached, sent. Plugin observers see every message
    afterwards.
    """

    def __init__(
        self,
        config: ParleyConfig,
        loader: PluginLoader,
        *,
        connector: BaseConnector | None = None,
        permissions: PermissionResolver | None = None,
        rate_limiter: RateLimiter | None = None,
        interactions: InteractionStore | None = None,
        aliases: CommandAliases | None = None,
        event_bus: EventBus | None = None,
        core_plugin: Plugin | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config = config
        self.loader = loader
        self.registry: PluginRegistry = loader.registry
        self.connector = connector
        self.permissions = permissions or PermissionResolver(
            admin_ids=config.admin_ids, trusted_ids=config.trusted_ids
        )
        self.rate_limiter = rate_limiter or RateLimiter()
        if interactions is None:
            interactions = InteractionStore(
                timeout_seconds=config.interaction_timeout_seconds
            )
        self.interactions = interactions
        self.interactions.on_expire = self._on_interaction_expired
        self.aliases = aliases or CommandAliases(config.aliases)
        self.event_bus = event_bus or loader.event_bus
        self._core_plugin = core_plugin
        self._clock = clock
        self._background: set[asyncio.Task[Any]] = set()

        if connector:
            loader.connector = connector
            connector.set_message_handler(self.handle_message)
            connector.set_reaction_handler(self.handle_reaction)

    # --- lifecycle ---

    async def startup(self) -> None:
        if self._core_plugin is not None:
            await self.loader.install(self._core_plugin)
        await self.loader.load()
        await self.event_bus.emit(
            Event(
                name=DISPATCHER_STARTED,
                data={"plugins": self.registry.plugin_ids},
            )
        )
        logger.info("dispatcher_started", plugins=self.registry.plugin_ids)

    async def shutdown(self) -> None:
        await self.event_bus.emit(Event(name=DISPATCHER_STOPPED))
        self.interactions.clear()
        await self.loader.unload_all()
        for task in list(self._background):
            task.cancel()
        logger.info("dispatcher_stopped")

    # --- inbound ---

    async def handle_message(self, message: InboundMessage) -> OutboundAction | None:
        if not message.text.strip():
            return None
        if self._is_stale(message):
            logger.debug(
                "message_ignored_stale",
                message_id=message.message_id,
                chat_id=message.chat_id,
            )
            return None

        level = self.permissions.resolve_effective(message.sender_id, message.chat_id)
        logger.info(
            "message_received",
            sender_id=message.sender_id,
            chat_id=message.chat_id,
            level=level.name,
            text_length=len(message.text),
        )
        await self.event_bus.emit(
            Event(
                name=MESSAGE_IN,
                data={
                    "sender_id": message.sender_id,
                    "chat_id": message.chat_id,
                    "text": message.text,
                },
            )
        )

        key = conversation_key(message.chat_id, message.sender_id)
        pending = self.interactions.take(key)
        action: OutboundAction | None = None
        handled = True
        if pending is not None:
            action = await self._resume(pending, message, level)
        else:
            parsed = self.parse_command(message.text)
            if parsed is None:
                handled = False
            else:
                name, args = parsed
                action = await self._run_command(name, args, message, level)

        await self._run_observers(message, level, did_handle=handled)
        return action

    async def handle_reaction(self, reaction: InboundReaction) -> None:
        level = self.permissions.resolve_effective(reaction.sender_id, reaction.chat_id)
        for plugin in self.registry.plugins:
            if not plugin.observes_reactions:
                continue
            ctx = ReactionContext(
                reaction=reaction,
                sender_id=reaction.sender_id,
                chat_id=reaction.chat_id,
                permission_level=level,
                connector=self.connector,
            )
            try:
                await plugin.on_reaction(ctx)
            except Exception:
                logger.exception("reaction_observer_failed", plugin=plugin.id)

    def parse_command(self, text: str) -> tuple[str, str] | None:
        """Split ``<prefix><name> <args>`` into a lowercased name and the raw args."""
        prefix = self.config.command_prefix
        stripped = text.lstrip()
        if not stripped.startswith(prefix):
            return None
        body = stripped[len(prefix) :]
        if not body or body[0].isspace():
            return None
        parts = body.split(None, 1)
        name = parts[0].lower()
        args = parts[1] if len(parts) > 1 else ""
        return name, args

    def _is_stale(self, message: InboundMessage) -> bool:
        max_age = self.config.max_message_age_seconds
        if not max_age:
            return False
        sent = message.timestamp
        if sent.tzinfo is None:
            sent = sent.replace(tzinfo=UTC)
        return (self._clock() - sent).total_seconds() > max_age

    # --- commands ---

    async def _run_command(
        self,
        name: str,
        args: str,
        message: InboundMessage,
        level: PermissionLevel,
    ) -> OutboundAction | None:
        resolved = self.aliases.resolve(
            name, message.sender_id, self.registry.has_command
        )
        command = self.registry.get_command(resolved) if resolved else None
        plugin = self.registry.get(command.plugin_id) if command else None
        if command is None or plugin is None:
            logger.info("command_unknown", command=name, sender_id=message.sender_id)
            prefix = self.config.command_prefix
            return await self._reply_error(
                message,
                CommandError(
                    f"unknown command `{prefix}{name}`. "
                    f"Send `{prefix}help` to see what is available"
                ),
            )

        try:
            self._check_permission(command, level)
            self._check_rate_limits(command, plugin, message.sender_id, level)
        except CommandError as e:
            logger.info(
                "command_rejected",
                command=command.qualified_name,
                sender_id=message.sender_id,
                reason=type(e).__name__,
            )
            await self.event_bus.emit(
                Event(
                    name=COMMAND_REJECTED,
                    data={
                        "command": command.name,
                        "plugin_id": plugin.id,
                        "sender_id": message.sender_id,
                        "reason": e.message,
                    },
                )
            )
            return await self._reply_error(message, e)

        # Recorded before any await so concurrent messages see this use.
        self.rate_limiter.record(
            message.sender_id,
            command.points,
            plugin_id=plugin.id,
            command=command.name,
        )

        ctx = HandlerContext(
            message=message,
            sender_id=message.sender_id,
            chat_id=message.chat_id,
            permission_level=level,
            plugin=plugin,
            args=args,
            command=command.name,
            connector=self.connector,
        )
        await self._send_typing(message.chat_id)

        try:
            result = await self._invoke(command.handler, ctx)
            action = await self._finish(result, message, plugin)
        except CommandError as e:
            return await self._reply_error(message, e)
        except Exception as e:
            return await self._fault(e, message, where=command.qualified_name)

        logger.info(
            "command_executed",
            command=command.qualified_name,
            sender_id=message.sender_id,
            chat_id=message.chat_id,
        )
        await self.event_bus.emit(
            Event(
                name=COMMAND_EXECUTED,
                data={
                    "command": command.name,
                    "plugin_id": plugin.id,
                    "sender_id": message.sender_id,
                    "chat_id": message.chat_id,
                },
            )
        )
        return action

    def _check_permission(self, command: Command, level: PermissionLevel) -> None:
        if level >= command.min_level:
            return
        hint = ""
        request = self.registry.get_command(PERMISSION_REQUEST_COMMAND)
        if request is not None and request.plugin_id == PERMISSION_REQUEST_PLUGIN:
            hint = (
                f"Send `{self.config.command_prefix}{PERMISSION_REQUEST_COMMAND}` "
                "to ask an admin for access"
            )
        raise CommandPermissionError(command.name, command.min_level, hint)

    def _check_rate_limits(
        self,
        command: Command,
        plugin: Plugin,
        sender_id: str,
        level: PermissionLevel,
    ) -> None:
        points = command.points
        limited = (
            self.rate_limiter.is_limited(
                sender_id, self.config.quotas_for(level), points=points
            )
            or self.rate_limiter.is_limited(
                sender_id, plugin.meta.rate_limits, plugin_id=plugin.id, points=points
            )
            or self.rate_limiter.is_limited(
                sender_id,
                command.rate_limits,
                plugin_id=plugin.id,
                command=command.name,
                points=points,
            )
        )
        if limited:
            raise RateLimitedError(command.name)

    # --- interactions ---

    async def _resume(
        self,
        pending: PendingInteraction,
        message: InboundMessage,
        level: PermissionLevel,
    ) -> OutboundAction | None:
        ref = pending.handler_ref
        handler = self.registry.get_interaction(ref)
        plugin = self.registry.get(ref.plugin_id)
        if handler is None or plugin is None:
            logger.warning("interaction_handler_missing", handler=str(ref))
            return await self._reply_error(
                message, CommandError("this conversation is no longer available")
            )

        ctx = HandlerContext(
            message=message,
            sender_id=message.sender_id,
            chat_id=message.chat_id,
            permission_level=level,
            plugin=plugin,
            args=message.text,
            state=pending.state,
            connector=self.connector,
        )
        await self._send_typing(message.chat_id)

        try:
            result = await self._invoke(handler.handler, ctx)
            action = await self._finish(result, message, plugin)
        except CommandError as e:
            if e.preserve_interaction and not self.interactions.has_pending(
                pending.key
            ):
                self.interactions.put(pending)
            return await self._reply_error(message, e)
        except Exception as e:
            return await self._fault(e, message, where=str(ref))

        await self.event_bus.emit(
            Event(
                name=INTERACTION_RESOLVED,
                data={
                    "key": pending.key,
                    "handler": str(ref),
                    "continued": self.interactions.has_pending(pending.key),
                },
            )
        )
        return action

    def _on_interaction_expired(self, pending: PendingInteraction) -> None:
        self._spawn(self._announce_expiry(pending))

    async def _announce_expiry(self, pending: PendingInteraction) -> None:
        chat_id = pending.key.rpartition(":")[0]
        if self.connector and pending.prompt_message_id:
            try:
                await self.connector.send_reaction(
                    chat_id, pending.prompt_message_id, EXPIRED_REACTION
                )
            except Exception:
                logger.exception("expiry_reaction_failed", key=pending.key)
        await self.event_bus.emit(
            Event(
                name=INTERACTION_EXPIRED,
                data={"key": pending.key, "handler": str(pending.handler_ref)},
            )
        )

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # --- results ---

    @staticmethod
    async def _invoke(handler: Callable[..., Any], ctx: HandlerContext) -> Any:
        result = handler(ctx)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _finish(
        self, result: Any, message: InboundMessage, plugin: Plugin
    ) -> OutboundAction | None:
        """Normalise a handler result into an outbound action and deliver it."""
        chat_id = message.chat_id
        reply_to = message.message_id

        if result is None:
            return None
        if isinstance(result, bool):
            emoji = POSITIVE_REACTION if result else NEGATIVE_REACTION
            action: OutboundAction = ReactionReply(
                chat_id=chat_id, message_id=message.message_id, emoji=emoji
            )
            await self._deliver(action)
            return action
        if isinstance(result, str):
            action = TextReply(chat_id=chat_id, text=result, reply_to=reply_to)
            await self._deliver(action)
            return action
        if isinstance(result, Media):
            action = MediaReply(chat_id=chat_id, media=result, reply_to=reply_to)
            await self._deliver(action)
            return action
        if isinstance(result, Continue):
            return await self._continue(result, message, plugin)
        raise PluginError(
            f"Handler of plugin {plugin.id} returned unsupported {type(result).__name__}"
        )

    async def _continue(
        self, result: Continue, message: InboundMessage, plugin: Plugin
    ) -> OutboundAction:
        ref = InteractionRef(plugin_id=plugin.id, name=result.interaction)
        if self.registry.get_interaction(ref) is None:
            raise PluginError(f"Unknown interaction handler: {ref}")

        key = conversation_key(message.chat_id, message.sender_id)
        pending = self.interactions.set(key, ref, result.state, prompt=result.prompt)
        action = TextReply(
            chat_id=message.chat_id, text=result.prompt, reply_to=message.message_id
        )
        pending.prompt_message_id = await self._deliver(action)
        logger.debug("interaction_requested", key=key, handler=str(ref))
        await self.event_bus.emit(
            Event(name=INTERACTION_REQUESTED, data={"key": key, "handler": str(ref)})
        )
        return action

    async def _reply_error(
        self, message: InboundMessage, error: CommandError
    ) -> OutboundAction:
        action = TextReply(
            chat_id=message.chat_id,
            text=f"Error: {error.message}",
            reply_to=message.message_id,
        )
        await self._deliver(action)
        return action

    async def _fault(
        self, error: Exception, message: InboundMessage, *, where: str
    ) -> OutboundAction:
        logger.error(
            "handler_failed",
            handler=where,
            sender_id=message.sender_id,
            chat_id=message.chat_id,
            error=str(error),
            exc_info=error,
        )
        await self.event_bus.emit(
            Event(
                name=COMMAND_FAILED,
                data={"handler": where, "error": repr(error)},
            )
        )
        detail = repr(error) if self.config.debug_errors else GENERIC_FAILURE
        action = TextReply(
            chat_id=message.chat_id,
            text=f"Error: {detail}",
            reply_to=message.message_id,
        )
        await self._deliver(action)
        if self.config.notify_admins_on_error:
            await self._notify_admins(
                f"Error while handling `{where}` for {message.sender_id} "
                f"in {message.chat_id}:\n{error!r}"
            )
        return action

    async def _notify_admins(self, text: str) -> None:
        if self.connector is None:
            return
        for admin_id in sorted(self.permissions.admin_ids):
            try:
                await self.connector.send_text(admin_id, text)
            except Exception:
                logger.exception("admin_notify_failed", admin_id=admin_id)

    async def _deliver(self, action: OutboundAction | None) -> str | None:
        """Hand *action* to the connector. Returns the sent message id, if any."""
        if action is None or self.connector is None:
            return None
        message_id: str | None = None
        try:
            if isinstance(action, TextReply):
                message_id = await self.connector.send_text(
                    action.chat_id, action.text, reply_to=action.reply_to
                )
            elif isinstance(action, ReactionReply):
                await self.connector.send_reaction(
                    action.chat_id, action.message_id, action.emoji
                )
            else:
                await self.connector.send_media(
                    action.chat_id,
                    action.media,
                    caption=action.caption,
                    reply_to=action.reply_to,
                )
        except Exception:
            logger.exception("reply_send_failed", chat_id=action.chat_id, kind=action.kind)
            return None

        await self.event_bus.emit(
            Event(
                name=MESSAGE_OUT,
                data={"chat_id": action.chat_id, "kind": action.kind},
            )
        )
        return message_id

    async def _send_typing(self, chat_id: str) -> None:
        if self.connector is None:
            return
        try:
            await self.connector.send_typing_indicator(chat_id)
        except Exception:
            logger.debug("typing_indicator_failed", chat_id=chat_id)

    # --- observers ---

    async def _run_observers(
        self, message: InboundMessage, level: PermissionLevel, *, did_handle: bool
    ) -> None:
        for plugin in self.registry.plugins:
            if not plugin.observes_messages:
                continue
            ctx = ObserverContext(
                message=message,
                sender_id=message.sender_id,
                chat_id=message.chat_id,
                permission_level=level,
                did_handle=did_handle,
                respond=functools.partial(self._finish, message=message, plugin=plugin),
                connector=self.connector,
            )
            try:
                await plugin.on_message(ctx)
            except Exception:
                logger.exception("message_observer_failed", plugin=plugin.id)
