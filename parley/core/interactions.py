"""Pending multi-turn continuations keyed by conversation."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

logger = structlog.get_logger()


def conversation_key(chat_id: str, sender_id: str) -> str:
    return f"{chat_id}:{sender_id}"


class InteractionRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    plugin_id: str
    name: str

    def __str__(self) -> str:
        return f"{self.plugin_id}/{self.name}"


class PendingInteraction(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    key: str
    handler_ref: InteractionRef
    state: Any = None
    prompt: str = ""
    prompt_message_id: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    _timer: asyncio.TimerHandle | None = PrivateAttr(default=None)


class InteractionStore:
    """At most one pending interaction per conversation key.

    ``take`` reads and removes in one synchronous step, so two messages for
    the same key can never both resume the same interaction.
    """

    def __init__(
        self,
        timeout_seconds: float | None = 300.0,
        on_expire: Callable[[PendingInteraction], None] | None = None,
    ) -> None:
        self._timeout = timeout_seconds
        self.on_expire = on_expire
        self._pending: dict[str, PendingInteraction] = {}

    def set(
        self,
        key: str,
        handler_ref: InteractionRef,
        state: Any = None,
        *,
        prompt: str = "",
    ) -> PendingInteraction:
        pending = PendingInteraction(
            key=key, handler_ref=handler_ref, state=state, prompt=prompt
        )
        self.put(pending)
        return pending

    def put(self, pending: PendingInteraction) -> None:
        previous = self._pending.pop(pending.key, None)
        if previous is not None:
            self._disarm(previous)
            logger.debug(
                "interaction_replaced",
                key=pending.key,
                previous=str(previous.handler_ref),
                handler=str(pending.handler_ref),
            )
        self._pending[pending.key] = pending
        self._arm(pending)

    def take(self, key: str) -> PendingInteraction | None:
        pending = self._pending.pop(key, None)
        if pending is not None:
            self._disarm(pending)
        return pending

    def get(self, key: str) -> PendingInteraction | None:
        return self._pending.get(key)

    def has_pending(self, key: str) -> bool:
        return key in self._pending

    def cancel(self, key: str) -> bool:
        return self.take(key) is not None

    def clear(self) -> None:
        for pending in self._pending.values():
            self._disarm(pending)
        self._pending.clear()

    def __len__(self) -> int:
        return len(self._pending)

    def _arm(self, pending: PendingInteraction) -> None:
        if not self._timeout:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        pending._timer = loop.call_later(self._timeout, self._expire, pending)

    @staticmethod
    def _disarm(pending: PendingInteraction) -> None:
        if pending._timer is not None:
            pending._timer.cancel()
            pending._timer = None

    def _expire(self, pending: PendingInteraction) -> None:
        if self._pending.get(pending.key) is not pending:
            return
        del self._pending[pending.key]
        pending._timer = None
        logger.info(
            "interaction_expired",
            key=pending.key,
            handler=str(pending.handler_ref),
        )
        if self.on_expire is not None:
            self.on_expire(pending)
