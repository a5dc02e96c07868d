"""In-memory plugin store. Nothing survives a restart."""

from __future__ import annotations

import copy
from typing import Any


class MemoryPluginStore:
    def __init__(self, plugin_id: str = "") -> None:
        self.plugin_id = plugin_id
        self._data: dict[str, Any] = {}
        self.is_open = False

    async def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return copy.deepcopy(self._data[key])

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> bool:
        if key not in self._data:
            return False
        del self._data[key]
        return True

    async def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._data if k.startswith(prefix))

    async def setup(self) -> None:
        self.is_open = True

    async def teardown(self) -> None:
        self.is_open = False
