"""Multi-turn games played through interactions."""

from __future__ import annotations

import random
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from parley.core.results import Continue
from parley.exceptions import CommandError
from parley.plugins.base import Plugin, PluginMeta, command, interaction

if TYPE_CHECKING:
    from parley.plugins.base import HandlerContext

_GIVE_UP = frozenset({"stop", "quit", "give up"})


class GamesConfig(BaseModel):
    max_number: int = Field(default=100, ge=2)
    max_attempts: int = Field(default=7, ge=1)


class GuessState(BaseModel):
    model_config = ConfigDict(frozen=True)

    secret: int
    high: int
    max_attempts: int
    attempts: int = 0

    @property
    def remaining(self) -> int:
        return self.max_attempts - self.attempts


class GamesPlugin(Plugin):
    meta = PluginMeta(
        id="games",
        name="Games",
        version="0.1.0",
        description="A collection of fun games to play with friends",
    )
    config_schema = GamesConfig

    def __init__(self, rng: random.Random | None = None) -> None:
        super().__init__()
        self._rng = rng or random.Random()

    @command(description="Guess the number I'm thinking of (`/guess [max]`)")
    def guess(self, ctx: HandlerContext) -> Continue:
        config: GamesConfig = self.config
        high = config.max_number
        if ctx.args.strip():
            try:
                high = int(ctx.args.strip())
            except ValueError:
                raise CommandError("Usage: `/guess [max]`") from None
            if high < 2:
                raise CommandError("the upper bound must be at least 2")

        state = GuessState(
            secret=self._rng.randint(1, high),
            high=high,
            max_attempts=config.max_attempts,
        )
        return Continue(
            prompt=(
                f"I'm thinking of a number between 1 and {high}. "
                f"You have {state.max_attempts} attempts. Send `stop` to give up."
            ),
            interaction="guess_turn",
            state=state,
        )

    @interaction()
    def guess_turn(self, ctx: HandlerContext) -> Continue | str:
        state: GuessState = ctx.state
        text = ctx.args.strip().lower()
        if text in _GIVE_UP:
            return f"Game over. The number was {state.secret}"

        try:
            guess = int(text)
        except ValueError:
            raise CommandError(
                "send a whole number, or `stop` to give up",
                preserve_interaction=True,
            ) from None
        if not 1 <= guess <= state.high:
            raise CommandError(
                f"the number is between 1 and {state.high}",
                preserve_interaction=True,
            )

        state = state.model_copy(update={"attempts": state.attempts + 1})
        if guess == state.secret:
            return f"You got it! The number was {state.secret} ({state.attempts} attempt(s))"
        if state.remaining <= 0:
            return f"Out of attempts! The number was {state.secret}"

        hint = "Higher" if guess < state.secret else "Lower"
        return Continue(
            prompt=f"{hint}! {state.remaining} attempt(s) left",
            interaction="guess_turn",
            state=state,
        )
