"""Permission levels and allow-list resolution."""

from __future__ import annotations

from collections.abc import Iterable
from enum import IntEnum


class PermissionLevel(IntEnum):
    NONE = 0
    TRUSTED = 1
    ADMIN = 2
    # Never assigned to a real identifier; marks a command as unreachable.
    MAX = 3

    @classmethod
    def parse(cls, value: str | int | PermissionLevel) -> PermissionLevel:
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            return cls(value)
        try:
            return cls[value.strip().upper()]
        except KeyError:
            raise ValueError(f"unknown permission level: {value!r}") from None


class PermissionResolver:
    """Maps user and chat identifiers to a permission level.

    Admin membership wins over trusted; anything else is NONE.
    """

    def __init__(
        self,
        admin_ids: Iterable[str] = (),
        trusted_ids: Iterable[str] = (),
    ) -> None:
        self._admin = frozenset(admin_ids)
        self._trusted = frozenset(trusted_ids)

    @property
    def admin_ids(self) -> frozenset[str]:
        return self._admin

    def resolve(self, identifier: str) -> PermissionLevel:
        if identifier in self._admin:
            return PermissionLevel.ADMIN
        if identifier in self._trusted:
            return PermissionLevel.TRUSTED
        return PermissionLevel.NONE

    def resolve_effective(self, sender_id: str, chat_id: str | None) -> PermissionLevel:
        """Higher of the sender's and the enclosing chat's level."""
        level = self.resolve(sender_id)
        if chat_id is not None and chat_id != sender_id:
            level = max(level, self.resolve(chat_id))
        return level
