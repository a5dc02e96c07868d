"""Translates between the Telegram Bot API and BaseConnector."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from telegram import ReactionTypeEmoji, ReplyParameters, Update
from telegram.constants import ChatAction
from telegram.ext import (
    Application,
    MessageHandler,
    MessageReactionHandler,
    filters,
)

from parley.connectors.base import BaseConnector, InboundMessage, InboundReaction

if TYPE_CHECKING:
    from telegram import Message
    from telegram.ext import ContextTypes

    from parley.connectors.base import Media

logger = structlog.get_logger()

_MAX_MESSAGE_LENGTH = 4000  # Telegram limit is 4096; leave buffer


class TelegramConnector(BaseConnector):
    def __init__(self, bot_token: str) -> None:
        super().__init__()
        self._token = bot_token
        self._app: Application | None = None  # type: ignore[type-arg]

    async def start(self) -> None:
        self._app = (
            Application.builder().token(self._token).concurrent_updates(True).build()
        )
        self._app.add_handler(MessageHandler(filters.TEXT, self._on_message))
        self._app.add_handler(MessageReactionHandler(self._on_reaction))
        self._app.add_error_handler(self._on_error)
        await self._app.initialize()
        await self._app.start()
        await self._app.updater.start_polling(  # type: ignore[union-attr]
            allowed_updates=Update.ALL_TYPES,
            drop_pending_updates=True,
        )
        logger.info("telegram_connector_started")

    async def stop(self) -> None:
        if self._app is None:
            return
        await self._app.updater.stop()  # type: ignore[union-attr]
        await self._app.stop()
        await self._app.shutdown()
        logger.info("telegram_connector_stopped")

    async def send_text(
        self,
        chat_id: str,
        text: str,
        *,
        reply_to: str | None = None,
    ) -> str | None:
        if self._app is None:
            return None
        chunks = _split_text(text)
        last_id: str | None = None
        try:
            for i, chunk in enumerate(chunks):
                msg = await self._app.bot.send_message(
                    chat_id=int(chat_id),
                    text=chunk,
                    reply_parameters=_reply_parameters(reply_to) if i == 0 else None,
                )
                last_id = str(msg.message_id)
            logger.info(
                "telegram_message_sent",
                chat_id=chat_id,
                text_length=len(text),
                chunk_count=len(chunks),
            )
        except Exception:
            logger.exception("telegram_send_message_failed", chat_id=chat_id)
        return last_id

    async def send_reaction(self, chat_id: str, message_id: str, emoji: str) -> None:
        if self._app is None:
            return
        try:
            await self._app.bot.set_message_reaction(
                chat_id=int(chat_id),
                message_id=int(message_id),
                reaction=emoji,
            )
        except Exception:
            # Telegram only accepts a fixed set of reaction emoji.
            logger.warning(
                "telegram_reaction_failed", chat_id=chat_id, emoji=emoji
            )

    async def send_media(
        self,
        chat_id: str,
        media: Media,
        *,
        caption: str | None = None,
        reply_to: str | None = None,
    ) -> None:
        if self._app is None:
            return
        send = self._app.bot.send_photo if media.is_image else self._app.bot.send_document
        field = "photo" if media.is_image else "document"
        try:
            if media.data is not None:
                await send(
                    chat_id=int(chat_id),
                    caption=caption,
                    filename=media.display_name,
                    reply_parameters=_reply_parameters(reply_to),
                    **{field: media.data},
                )
            else:
                with media.path.open("rb") as f:  # type: ignore[union-attr]
                    await send(
                        chat_id=int(chat_id),
                        caption=caption,
                        filename=media.display_name,
                        reply_parameters=_reply_parameters(reply_to),
                        **{field: f},
                    )
            logger.info(
                "telegram_media_sent",
                chat_id=chat_id,
                filename=media.display_name,
            )
        except Exception:
            logger.exception(
                "telegram_send_media_failed",
                chat_id=chat_id,
                filename=media.display_name,
            )

    async def send_typing_indicator(self, chat_id: str) -> None:
        if self._app is None:
            return
        try:
            await self._app.bot.send_chat_action(
                chat_id=int(chat_id), action=ChatAction.TYPING
            )
        except Exception:
            logger.exception("telegram_typing_indicator_failed", chat_id=chat_id)

    async def _on_message(
        self, update: Update, _context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        if not update.message or not update.message.text:
            return
        if not update.message.from_user:
            return
        if self._message_handler is None:
            return

        message = to_inbound_message(update.message)
        logger.info(
            "telegram_message_received",
            user_id=message.sender_id,
            chat_id=message.chat_id,
            text_length=len(message.text),
        )

        try:
            await self._message_handler(message)
        except Exception:
            logger.exception("telegram_message_handler_error", chat_id=message.chat_id)

    async def _on_reaction(
        self, update: Update, _context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        reaction = update.message_reaction
        if reaction is None or reaction.user is None:
            return
        if self._reaction_handler is None:
            return

        for added in reaction.new_reaction:
            if not isinstance(added, ReactionTypeEmoji):
                continue
            try:
                await self._reaction_handler(
                    InboundReaction(
                        message_id=str(reaction.message_id),
                        chat_id=str(reaction.chat.id),
                        sender_id=str(reaction.user.id),
                        emoji=added.emoji,
                        timestamp=reaction.date,
                    )
                )
            except Exception:
                logger.exception(
                    "telegram_reaction_handler_error", chat_id=str(reaction.chat.id)
                )

    async def _on_error(
        self, update: object, context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        logger.error(
            "telegram_error",
            error=str(context.error),
            update=str(update),
        )


def to_inbound_message(message: Message) -> InboundMessage:
    """Build an InboundMessage, dropping the ``@botname`` suffix of a command."""
    text = message.text or ""
    first, sep, rest = text.partition(" ")
    if first.startswith("/") and "@" in first:
        text = first.split("@", 1)[0] + sep + rest

    user = message.from_user
    quoted = message.reply_to_message
    return InboundMessage(
        message_id=str(message.message_id),
        sender_id=str(user.id) if user else "",
        chat_id=str(message.chat_id),
        text=text,
        timestamp=message.date,
        quoted_message_id=str(quoted.message_id) if quoted else None,
        metadata={"username": user.username} if user and user.username else {},
        raw=message,
    )


def _reply_parameters(reply_to: str | None) -> ReplyParameters | None:
    if reply_to is None:
        return None
    return ReplyParameters(
        message_id=int(reply_to), allow_sending_without_reply=True
    )


def _split_text(text: str) -> list[str]:
    if not text:
        return [""]
    if len(text) <= _MAX_MESSAGE_LENGTH:
        return [text]

    chunks: list[str] = []
    while text:
        if len(text) <= _MAX_MESSAGE_LENGTH:
            chunks.append(text)
            break

        split_at = text.rfind("\n", 0, _MAX_MESSAGE_LENGTH)
        if split_at <= 0:
            split_at = text.rfind(" ", 0, _MAX_MESSAGE_LENGTH)
        if split_at <= 0:
            split_at = _MAX_MESSAGE_LENGTH

        chunks.append(text[:split_at])
        text = (
            text[split_at + 1 :] if split_at < _MAX_MESSAGE_LENGTH else text[split_at:]
        )

    return chunks
