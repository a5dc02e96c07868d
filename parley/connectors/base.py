"""Abstract connector protocol and the transport-neutral message types."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Coroutine
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class InboundMessage(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    message_id: str
    sender_id: str
    chat_id: str
    text: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    quoted_message_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    # Transport-native object, for capability calls a handler may need.
    raw: Any = Field(default=None, repr=False)


class InboundReaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    message_id: str
    chat_id: str
    sender_id: str
    emoji: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class Media(BaseModel):
    """A file to send, either from disk or from memory."""

    model_config = ConfigDict(frozen=True)

    path: Path | None = None
    data: bytes | None = Field(default=None, repr=False)
    filename: str | None = None
    mime_type: str = "application/octet-stream"

    @model_validator(mode="after")
    def _require_source(self) -> Media:
        if self.path is None and self.data is None:
            raise ValueError("media needs either a path or data")
        return self

    @property
    def display_name(self) -> str:
        if self.filename:
            return self.filename
        if self.path is not None:
            return self.path.name
        return "file"

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")


MessageHandler = Callable[[InboundMessage], Coroutine[Any, Any, Any]]
ReactionHandler = Callable[[InboundReaction], Coroutine[Any, Any, None]]


class BaseConnector(ABC):
    def __init__(self) -> None:
        self._message_handler: MessageHandler | None = None
        self._reaction_handler: ReactionHandler | None = None

    @abstractmethod
    async def start(self) -> None: ...

    @abstractmethod
    async def stop(self) -> None: ...

    @abstractmethod
    async def send_text(
        self,
        chat_id: str,
        text: str,
        *,
        reply_to: str | None = None,
    ) -> str | None:
        """Send a text message. Returns the platform message ID if known."""

    @abstractmethod
    async def send_reaction(self, chat_id: str, message_id: str, emoji: str) -> None: ...

    @abstractmethod
    async def send_media(
        self,
        chat_id: str,
        media: Media,
        *,
        caption: str | None = None,
        reply_to: str | None = None,
    ) -> None: ...

    async def send_typing_indicator(self, chat_id: str) -> None:  # noqa: B027
        """Show a typing indicator. Default: no-op."""

    def set_message_handler(self, handler: MessageHandler) -> None:
        """Register handler(message) for incoming messages."""
        self._message_handler = handler

    def set_reaction_handler(self, handler: ReactionHandler) -> None:
        """Register handler(reaction) for incoming reactions."""
        self._reaction_handler = handler
