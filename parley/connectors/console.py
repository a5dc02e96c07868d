"""Console connector for a single local user talking to the bot through stdio."""

from __future__ import annotations

import itertools
import sys
from typing import TextIO

import structlog

from parley.connectors.base import BaseConnector, InboundMessage, Media

logger = structlog.get_logger()


class ConsoleConnector(BaseConnector):
    def __init__(
        self,
        user_id: str = "console",
        chat_id: str = "console",
        stream: TextIO | None = None,
    ) -> None:
        super().__init__()
        self.user_id = user_id
        self.chat_id = chat_id
        self._stream = stream or sys.stdout
        self._ids = itertools.count(1)
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True
        logger.info("console_connector_started", user_id=self.user_id)

    async def stop(self) -> None:
        self._running = False
        logger.info("console_connector_stopped")

    def _write(self, line: str) -> None:
        print(line, file=self._stream, flush=True)

    def _next_id(self) -> str:
        return str(next(self._ids))

    async def send_text(
        self,
        chat_id: str,
        text: str,
        *,
        reply_to: str | None = None,
    ) -> str | None:
        message_id = self._next_id()
        prefix = f"[{chat_id}]" if chat_id != self.chat_id else ""
        self._write(f"{prefix}< {text}".strip())
        return message_id

    async def send_reaction(self, chat_id: str, message_id: str, emoji: str) -> None:
        self._write(f"< ({emoji} on #{message_id})")

    async def send_media(
        self,
        chat_id: str,
        media: Media,
        *,
        caption: str | None = None,
        reply_to: str | None = None,
    ) -> None:
        line = f"< [{media.mime_type}: {media.display_name}]"
        if caption:
            line += f" {caption}"
        self._write(line)

    async def feed(self, text: str) -> None:
        """Hand one line typed by the local user to the registered handler."""
        if self._message_handler is None:
            logger.warning("console_no_message_handler")
            return
        message = InboundMessage(
            message_id=self._next_id(),
            sender_id=self.user_id,
            chat_id=self.chat_id,
            text=text,
        )
        await self._message_handler(message)
