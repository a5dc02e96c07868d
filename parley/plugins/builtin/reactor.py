"""Reacts to matching messages with an emoji."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from pydantic import BaseModel, PrivateAttr, field_validator, model_validator

from parley.core.permissions import PermissionLevel
from parley.plugins.base import Plugin, PluginMeta

if TYPE_CHECKING:
    from parley.plugins.base import ObserverContext

_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE}


class ReactionRule(BaseModel):
    """One rule; every given condition must hold for the emoji to be sent.

    ``regex`` is a pattern or a ``[pattern, flags]`` pair with flags from
    ``imsx``.
    """

    regex: str | tuple[str, str] | None = None
    senders: list[str] | None = None
    min_level: PermissionLevel | None = None
    emoji: str

    _pattern: re.Pattern[str] | None = PrivateAttr(default=None)

    @field_validator("min_level", mode="before")
    @classmethod
    def parse_level(cls, v: object) -> PermissionLevel | None:
        if v is None:
            return None
        return PermissionLevel.parse(v)  # type: ignore[arg-type]

    @model_validator(mode="after")
    def compile_regex(self) -> ReactionRule:
        if self.regex is None:
            return self
        pattern, flag_chars = (
            (self.regex, "") if isinstance(self.regex, str) else self.regex
        )
        flags = 0
        for char in flag_chars:
            if char not in _FLAGS:
                raise ValueError(f"unsupported regex flag: {char!r}")
            flags |= _FLAGS[char]
        try:
            self._pattern = re.compile(pattern, flags)
        except re.error as e:
            raise ValueError(f"invalid regex {pattern!r}: {e}") from e
        return self

    def matches(self, text: str, sender_id: str, level: PermissionLevel) -> bool:
        if self.min_level is not None and level < self.min_level:
            return False
        if self.senders is not None and sender_id not in self.senders:
            return False
        return not (self._pattern is not None and not self._pattern.search(text))


class ReactorConfig(BaseModel):
    reactions: list[ReactionRule] = []


class ReactorPlugin(Plugin):
    meta = PluginMeta(
        id="reactor",
        name="Reactor",
        version="0.1.0",
        description="React to messages with emojis.",
    )
    config_schema = ReactorConfig

    async def on_load(self) -> None:
        self.logger.info("reaction_rules_loaded", count=len(self.config.reactions))

    async def on_message(self, ctx: ObserverContext) -> None:
        if ctx.connector is None:
            return
        config: ReactorConfig = self.config
        for rule in config.reactions:
            if rule.matches(ctx.message.text, ctx.sender_id, ctx.permission_level):
                await ctx.connector.send_reaction(
                    ctx.chat_id, ctx.message.message_id, rule.emoji
                )
