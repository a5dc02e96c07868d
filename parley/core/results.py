"""Handler return values and the outbound actions they normalise into."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict

from parley.connectors.base import Media

POSITIVE_REACTION = "\U0001f44d"
NEGATIVE_REACTION = "\U0001f44e"
EXPIRED_REACTION = "\u231b"


class Continue(BaseModel):
    """Returned by a handler to wait for the user's next message.

    ``interaction`` names an interaction handler of the same plugin; ``state``
    is handed back to it untouched when the conversation resumes.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    prompt: str
    interaction: str
    state: Any = None


class TextReply(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["text"] = "text"
    chat_id: str
    text: str
    reply_to: str | None = None


class ReactionReply(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["reaction"] = "reaction"
    chat_id: str
    message_id: str
    emoji: str


class MediaReply(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["media"] = "media"
    chat_id: str
    media: Media
    caption: str | None = None
    reply_to: str | None = None


OutboundAction = TextReply | ReactionReply | MediaReply

# What a command or interaction handler may return.
HandlerResult = str | bool | Media | Continue | None
