"""Per-plugin store protocol."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class PluginStore(Protocol):
    """Key/value store owned by a single plugin. Values must be JSON-serialisable."""

    async def get(self, key: str, default: Any = ...) -> Any: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> bool: ...

    async def keys(self, prefix: str = ...) -> list[str]: ...

    async def setup(self) -> None: ...

    async def teardown(self) -> None: ...
