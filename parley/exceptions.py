"""Shared exception types for Parley."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from parley.core.permissions import PermissionLevel


class ParleyError(Exception):
    """Base exception for all Parley errors."""


class ConfigError(ParleyError):
    """Configuration is invalid or missing."""


class PluginError(ParleyError):
    """Plugin lifecycle error (load, register, unload)."""


class DependencyError(PluginError):
    """Plugin dependency graph cannot be satisfied."""


class StorageError(ParleyError):
    """Persistent storage error."""


class ConnectorError(ParleyError):
    """Connector failed after exhausting retries."""


class CommandError(ParleyError):
    """Expected, user-caused failure, shown to the user as a plain reply."""

    def __init__(self, message: str, *, preserve_interaction: bool = False) -> None:
        super().__init__(message)
        self.message = message
        self.preserve_interaction = preserve_interaction


class CommandPermissionError(CommandError):
    def __init__(
        self,
        command: str,
        min_level: PermissionLevel | None = None,
        extra: str = "",
    ) -> None:
        message = f"you don't have permission to use the command `{command}`"
        if min_level is not None:
            message += f". Requires at least permission level `{min_level.name}`"
        if extra:
            message += f". {extra}"
        super().__init__(message)
        self.command = command
        self.min_level = min_level


class RateLimitedError(CommandError):
    def __init__(self, command: str) -> None:
        super().__init__(
            f"you are sending `{command}` too often. Please wait before trying again"
        )
        self.command = command
