"""Command aliases, configured globally or set per user."""

from __future__ import annotations

from collections.abc import Callable, Mapping

import structlog

logger = structlog.get_logger()


def normalize_name(name: str) -> str:
    return name.strip().lstrip("/").lower()


class CommandAliases:
    def __init__(self, global_aliases: Mapping[str, str] | None = None) -> None:
        self._global = {
            normalize_name(k): normalize_name(v)
            for k, v in (global_aliases or {}).items()
        }
        self._user: dict[str, dict[str, str]] = {}

    def user_aliases(self, user_id: str) -> dict[str, str]:
        return dict(self._user.get(user_id, {}))

    def set_user_alias(self, user_id: str, alias: str, command: str) -> None:
        self._user.setdefault(user_id, {})[normalize_name(alias)] = normalize_name(
            command
        )

    def remove_user_alias(self, user_id: str, alias: str) -> bool:
        aliases = self._user.get(user_id)
        if not aliases or aliases.pop(normalize_name(alias), None) is None:
            return False
        if not aliases:
            del self._user[user_id]
        return True

    def clear_user_aliases(self) -> None:
        self._user.clear()

    def resolve(
        self,
        name: str,
        user_id: str | None,
        exists: Callable[[str], bool],
    ) -> str | None:
        """Follow aliases from *name* to a registered command name.

        Registered names win over aliases; a user's own aliases win over the
        configured ones. Alias loops resolve to None.
        """
        seen: set[str] = set()
        current = normalize_name(name)
        while current not in seen:
            if exists(current):
                return current
            seen.add(current)
            user_map = self._user.get(user_id, {}) if user_id is not None else {}
            if current in user_map:
                current = user_map[current]
            elif current in self._global:
                current = self._global[current]
            else:
                return None
        logger.warning("alias_loop", name=name, user_id=user_id)
        return None
