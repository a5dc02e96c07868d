"""Delayed messages that survive restarts via the plugin store."""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from parley.exceptions import CommandError
from parley.plugins.base import Plugin, PluginMeta, command

if TYPE_CHECKING:
    from parley.plugins.base import HandlerContext

REMINDER_KEY_PREFIX = "reminder:"
NEXT_ID_KEY = "next_id"

_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}
_DURATION = re.compile(r"^(?:\d+[smhdw])+$")
_DURATION_PART = re.compile(r"(\d+)([smhdw])")


def parse_duration(text: str) -> float | None:
    """Parse compact durations like ``90s``, ``10m`` or ``1h30m`` into seconds."""
    text = text.strip().lower()
    if not _DURATION.match(text):
        return None
    return float(sum(int(n) * _UNITS[u] for n, u in _DURATION_PART.findall(text)))


def format_time(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, UTC).strftime("%Y-%m-%d %H:%M UTC")


class Reminder(BaseModel):
    id: int
    user_id: str
    chat_id: str
    message: str
    due: float  # unix timestamp


class RemindersConfig(BaseModel):
    max_per_user: int = Field(default=10, ge=1)
    max_delay_seconds: float = Field(default=365 * 86400, gt=0)


class RemindersPlugin(Plugin):
    meta = PluginMeta(
        id="reminders",
        name="Reminders",
        version="0.1.0",
        description="Set reminders for yourself.",
        uses_storage=True,
    )
    config_schema = RemindersConfig

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        super().__init__()
        self._clock = clock
        self._reminders: dict[int, Reminder] = {}
        self._tasks: dict[int, asyncio.Task[None]] = {}

    async def on_load(self) -> None:
        for key in await self.store.keys(REMINDER_KEY_PREFIX):
            reminder = Reminder.model_validate(await self.store.get(key))
            self._schedule(reminder)
        self.logger.info("reminders_loaded", count=len(self._reminders))

    async def on_unload(self) -> None:
        for task in self._tasks.values():
            task.cancel()
        self._tasks.clear()
        self._reminders.clear()

    @command(
        description=(
            "Set a reminder: `/reminder <duration> <message>`, "
            "e.g. `/reminder 1h30m stretch`"
        )
    )
    async def reminder(self, ctx: HandlerContext) -> str:
        config: RemindersConfig = self.config
        duration_text, _, message = ctx.args.strip().partition(" ")
        delay = parse_duration(duration_text)
        message = message.strip()
        if delay is None or not message:
            raise CommandError(
                "Usage: `/reminder <duration> <message>`, with a duration like "
                "`10m`, `2h` or `1d12h`"
            )
        if delay <= 0:
            raise CommandError("reminder time is in the past")
        if delay > config.max_delay_seconds:
            raise CommandError("that is too far in the future")
        if len(self.reminders_for(ctx.sender_id)) >= config.max_per_user:
            raise CommandError(
                f"you already have {config.max_per_user} reminders set"
            )

        next_id = await self.store.get(NEXT_ID_KEY, 1)
        await self.store.set(NEXT_ID_KEY, next_id + 1)
        reminder = Reminder(
            id=next_id,
            user_id=ctx.sender_id,
            chat_id=ctx.chat_id,
            message=message,
            due=self._clock() + delay,
        )
        await self.store.set(f"{REMINDER_KEY_PREFIX}{reminder.id}", reminder.model_dump())
        self._schedule(reminder)
        return f"Reminder #{reminder.id} set for {format_time(reminder.due)}"

    @command(description="List your reminders")
    def reminders(self, ctx: HandlerContext) -> str:
        mine = self.reminders_for(ctx.sender_id)
        if not mine:
            return "No reminders set."
        lines = ["*Reminders:*"]
        lines.extend(f"* #{r.id} {format_time(r.due)}: {r.message}" for r in mine)
        return "\n".join(lines)

    @command(description="Cancel one of your reminders: `/cancelreminder <id>`")
    async def cancelreminder(self, ctx: HandlerContext) -> bool:
        try:
            reminder_id = int(ctx.args.strip().lstrip("#"))
        except ValueError:
            raise CommandError("Usage: `/cancelreminder <id>`") from None

        reminder = self._reminders.get(reminder_id)
        if reminder is None or reminder.user_id != ctx.sender_id:
            raise CommandError(f"no reminder #{reminder_id}")

        task = self._tasks.pop(reminder_id, None)
        if task is not None:
            task.cancel()
        await self._forget(reminder)
        return True

    def reminders_for(self, user_id: str) -> list[Reminder]:
        return sorted(
            (r for r in self._reminders.values() if r.user_id == user_id),
            key=lambda r: r.due,
        )

    def _schedule(self, reminder: Reminder) -> None:
        self._reminders[reminder.id] = reminder
        task = asyncio.get_running_loop().create_task(self._fire_later(reminder))
        self._tasks[reminder.id] = task
        task.add_done_callback(lambda _t, rid=reminder.id: self._tasks.pop(rid, None))

    async def _fire_later(self, reminder: Reminder) -> None:
        delay = reminder.due - self._clock()
        if delay > 0:
            await asyncio.sleep(delay)

        if reminder.chat_id != reminder.user_id:
            text = f"Reminder for {reminder.user_id}: {reminder.message}"
        else:
            text = f"Reminder: {reminder.message}"
        try:
            await self.connector.send_text(reminder.chat_id, text)
        except Exception:
            self.logger.exception("reminder_send_failed", reminder_id=reminder.id)
        else:
            self.logger.info("reminder_sent", reminder_id=reminder.id)
        await self._forget(reminder)

    async def _forget(self, reminder: Reminder) -> None:
        self._reminders.pop(reminder.id, None)
        await self.store.delete(f"{REMINDER_KEY_PREFIX}{reminder.id}")
