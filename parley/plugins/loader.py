"""Plugin loader — manifest discovery, dependency ordering and lifecycle."""

from __future__ import annotations

import heapq
import importlib
import importlib.util
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from typing import TYPE_CHECKING

import structlog

from parley.core.events import (
    PLUGIN_LOAD_FAILED,
    PLUGIN_LOADED,
    PLUGIN_UNLOADED,
    Event,
    EventBus,
)
from parley.exceptions import ConfigError, DependencyError, PluginError
from parley.plugins.base import Plugin, PluginContext
from parley.storage.memory import MemoryPluginStore

if TYPE_CHECKING:
    from parley.connectors.base import BaseConnector
    from parley.core.config import ParleyConfig
    from parley.plugins.registry import PluginRegistry
    from parley.storage.base import PluginStore

logger = structlog.get_logger()

CORE_PLUGIN_ID = "core"

BUILTIN_PLUGINS: dict[str, str] = {
    "adminutils": "parley.plugins.builtin.adminutils:AdminUtilsPlugin",
    "debug": "parley.plugins.builtin.debug:DebugPlugin",
    "games": "parley.plugins.builtin.games:GamesPlugin",
    "reactor": "parley.plugins.builtin.reactor:ReactorPlugin",
    "reminders": "parley.plugins.builtin.reminders:RemindersPlugin",
}

PluginFactory = Callable[[], Plugin]
Locator = str | PluginFactory
StoreFactory = Callable[[str], "PluginStore"]


class PluginLoader:
    """Turns plugin ids into registered, running plugin instances.

    The manifest maps ids to ``"module.path:ClassName"`` strings or to
    zero-argument factories. Built-in plugins are always listed; entries
    from ``plugin_paths`` extend or override them.
    """

    def __init__(
        self,
        registry: PluginRegistry,
        config: ParleyConfig,
        event_bus: EventBus | None = None,
        *,
        connector: BaseConnector | None = None,
        store_factory: StoreFactory | None = None,
        manifest: Mapping[str, Locator] | None = None,
    ) -> None:
        self.registry = registry
        self.config = config
        self.event_bus = event_bus or EventBus()
        self.connector = connector
        self._store_factory: StoreFactory = store_factory or MemoryPluginStore
        if manifest is None:
            manifest = {**BUILTIN_PLUGINS, **config.plugin_paths}
        self._manifest: dict[str, Locator] = {k.lower(): v for k, v in manifest.items()}
        # Ids loaded through the manifest, in load order; install() is excluded.
        self._managed: list[str] = []

    @property
    def manifest(self) -> dict[str, Locator]:
        return dict(self._manifest)

    @property
    def managed(self) -> list[str]:
        return list(self._managed)

    def scan(self) -> dict[str, Locator]:
        """Check every configured plugin id against the manifest.

        Raises ConfigError for an unknown id, a malformed locator or a module
        that cannot be found.
        """
        for plugin_id in self.config.plugins:
            if plugin_id == CORE_PLUGIN_ID:
                continue
            locator = self._manifest.get(plugin_id)
            if locator is None:
                raise ConfigError(f"Unknown plugin: {plugin_id}")
            if callable(locator):
                continue
            module_name, sep, attr = locator.partition(":")
            if not sep or not module_name or not attr:
                raise ConfigError(
                    f"Plugin {plugin_id}: locator must look like 'module:Class', "
                    f"got {locator!r}"
                )
            try:
                found = importlib.util.find_spec(module_name)
            except (ImportError, ValueError) as e:
                raise ConfigError(f"Plugin {plugin_id}: {e}") from e
            if found is None:
                raise ConfigError(
                    f"Plugin {plugin_id}: module {module_name} not found"
                )
        logger.debug("plugins_scanned", manifest=sorted(self._manifest))
        return self.manifest

    def _resolve(self, plugin_id: str, *, fresh: bool = False) -> PluginFactory:
        locator = self._manifest.get(plugin_id)
        if locator is None:
            raise PluginError(f"Unknown plugin: {plugin_id}")
        if callable(locator):
            return locator

        module_name, _, attr = locator.partition(":")
        try:
            module = importlib.import_module(module_name)
            if fresh:
                module = importlib.reload(module)
        except Exception as e:
            raise PluginError(f"Cannot import plugin {plugin_id}: {e}") from e
        factory = getattr(module, attr, None)
        if factory is None:
            raise PluginError(f"Plugin {plugin_id}: {module_name} has no {attr}")
        return factory

    def _instantiate(self, plugin_id: str, *, fresh: bool = False) -> Plugin:
        factory = self._resolve(plugin_id, fresh=fresh)
        try:
            plugin = factory()
        except PluginError:
            raise
        except Exception as e:
            raise PluginError(f"Cannot construct plugin {plugin_id}: {e}") from e
        if not isinstance(plugin, Plugin):
            raise PluginError(f"Plugin {plugin_id} did not produce a Plugin instance")
        if plugin.id != plugin_id:
            raise PluginError(
                f"Plugin listed as {plugin_id} declares id {plugin.id}"
            )
        return plugin

    async def load(
        self,
        plugin_ids: Iterable[str] | None = None,
        *,
        fresh: bool = False,
    ) -> list[str]:
        """Load *plugin_ids* (default: the configured list) and their dependencies.

        Plugins are registered in dependency order, ties broken by listing
        order. A fault (bad plugin, missing dependency, cycle) is logged and
        only affects the plugins that need the faulty one. Returns the ids
        that were loaded by this call.
        """
        requested = list(self.config.plugins if plugin_ids is None else plugin_ids)

        index: dict[str, int] = {}
        candidates: dict[str, Plugin] = {}
        failed: dict[str, Exception] = {}

        queue = deque(p.lower() for p in requested)
        while queue:
            plugin_id = queue.popleft()
            if plugin_id in index:
                continue
            index[plugin_id] = len(index)
            if plugin_id in self.registry:
                continue
            try:
                plugin = self._instantiate(plugin_id, fresh=fresh)
            except PluginError as e:
                failed[plugin_id] = e
                continue
            candidates[plugin_id] = plugin
            queue.extend(d.lower() for d in plugin.meta.depends_on)

        waiting: dict[str, set[str]] = {
            plugin_id: {
                d.lower() for d in plugin.meta.depends_on if d.lower() not in self.registry
            }
            for plugin_id, plugin in candidates.items()
        }
        dependents: dict[str, list[str]] = {}
        for plugin_id, deps in waiting.items():
            for dep in deps:
                dependents.setdefault(dep, []).append(plugin_id)

        ready = [(index[p], p) for p, deps in waiting.items() if not deps]
        heapq.heapify(ready)
        loaded: list[str] = []

        while ready:
            _, plugin_id = heapq.heappop(ready)
            del waiting[plugin_id]
            try:
                await self._activate(candidates[plugin_id])
            except PluginError as e:
                failed[plugin_id] = e
                continue
            loaded.append(plugin_id)
            self._managed.append(plugin_id)
            for dependent in dependents.get(plugin_id, []):
                deps = waiting.get(dependent)
                if deps is None:
                    continue
                deps.discard(plugin_id)
                if not deps:
                    heapq.heappush(ready, (index[dependent], dependent))

        # Whatever is still waiting sits on a cycle or depends on something
        # that never loaded. Cycle members are classified first.
        stuck = sorted(waiting, key=index.__getitem__)
        cyclic = {p for p in stuck if _reaches(p, p, waiting)}
        for plugin_id in stuck:
            deps = sorted(waiting[plugin_id])
            if plugin_id in cyclic:
                failed[plugin_id] = DependencyError(
                    f"Plugin {plugin_id} is part of a dependency cycle: "
                    f"{', '.join(deps)}"
                )
            else:
                failed[plugin_id] = DependencyError(
                    f"Plugin {plugin_id} needs unavailable plugin(s): {', '.join(deps)}"
                )

        for plugin_id in sorted(failed, key=index.__getitem__):
            await self._report_failure(plugin_id, failed[plugin_id])

        logger.info("plugins_loaded", loaded=loaded, failed=sorted(failed))
        return loaded

    async def install(self, plugin: Plugin) -> None:
        """Register a ready-made plugin instance outside the manifest.

        Used for the core plugin; failures propagate.
        """
        await self._activate(plugin)

    async def _activate(self, plugin: Plugin) -> None:
        plugin_id = plugin.id
        if plugin_id in self.registry:
            raise PluginError(f"Plugin already registered: {plugin_id}")

        store: PluginStore | None = None
        if plugin.meta.uses_storage:
            store = self._store_factory(plugin_id)
            try:
                await store.setup()
            except Exception as e:
                raise PluginError(f"Cannot open storage for {plugin_id}: {e}") from e

        try:
            plugin_config = self.registry.register(
                plugin, self.config.plugin_config(plugin_id)
            )
        except PluginError:
            await self._close_store(plugin_id, store)
            raise

        plugin.bind(
            PluginContext(
                plugin_id=plugin_id,
                config=self.config,
                event_bus=self.event_bus,
                plugin_config=plugin_config,
                store=store,
                connector=self.connector,
                logger=structlog.get_logger().bind(plugin=plugin_id),
            )
        )

        try:
            await plugin.on_load()
        except Exception as e:
            self.registry.unregister(plugin_id)
            plugin.unbind()
            await self._close_store(plugin_id, store)
            raise PluginError(f"Plugin {plugin_id} failed in on_load: {e}") from e

        logger.info("plugin_loaded", plugin=plugin_id, version=plugin.meta.version)
        await self.event_bus.emit(
            Event(
                name=PLUGIN_LOADED,
                data={"plugin_id": plugin_id, "version": plugin.meta.version},
            )
        )

    async def _report_failure(self, plugin_id: str, error: Exception) -> None:
        logger.error(
            "plugin_load_failed",
            plugin=plugin_id,
            error=str(error),
            error_type=type(error).__name__,
        )
        await self.event_bus.emit(
            Event(
                name=PLUGIN_LOAD_FAILED,
                data={"plugin_id": plugin_id, "error": str(error)},
            )
        )

    @staticmethod
    async def _close_store(plugin_id: str, store: PluginStore | None) -> None:
        if store is None:
            return
        try:
            await store.teardown()
        except Exception:
            logger.exception("plugin_store_close_failed", plugin=plugin_id)

    async def unload(self, plugin_id: str, *, run_hook: bool = True) -> bool:
        """Remove a plugin. Returns False if it was not loaded.

        The instance keeps its context, so an invocation already in flight
        finishes against it.
        """
        plugin = self.registry.get(plugin_id)
        if plugin is None:
            return False

        if run_hook:
            try:
                await plugin.on_unload()
            except Exception:
                logger.exception("plugin_unload_hook_failed", plugin=plugin_id)

        self.registry.unregister(plugin_id)
        if plugin_id in self._managed:
            self._managed.remove(plugin_id)
        if plugin.is_bound:
            await self._close_store(plugin_id, plugin.context.store)

        logger.info("plugin_unloaded", plugin=plugin_id)
        await self.event_bus.emit(
            Event(name=PLUGIN_UNLOADED, data={"plugin_id": plugin_id})
        )
        return True

    async def reload(self, plugin_ids: Iterable[str] | None = None) -> list[str]:
        """Unload and re-import plugins, then load them again.

        With no ids every manifest-loaded plugin is unloaded and the configured
        list is loaded again. Not atomic: a plugin that fails to come back is
        logged and stays absent.
        """
        if plugin_ids is None:
            targets = list(self._managed)
            to_load: list[str] | None = None
        else:
            targets = [p.lower() for p in plugin_ids]
            if CORE_PLUGIN_ID in targets:
                raise PluginError("The core plugin cannot be reloaded")
            unknown = [p for p in targets if p not in self._manifest]
            if unknown:
                raise PluginError(f"Unknown plugin(s): {', '.join(unknown)}")
            to_load = targets

        for plugin_id in reversed(self.registry.plugin_ids):
            if plugin_id in targets:
                await self.unload(plugin_id)

        loaded = await self.load(to_load, fresh=True)
        logger.info("plugins_reloaded", requested=targets, loaded=loaded)
        return loaded

    async def unload_all(self) -> None:
        for plugin_id in reversed(self.registry.plugin_ids):
            await self.unload(plugin_id)


def _reaches(start: str, target: str, graph: Mapping[str, set[str]]) -> bool:
    """True if *target* is reachable from *start* along dependency edges in *graph*."""
    seen: set[str] = set()
    stack = list(graph.get(start, ()))
    while stack:
        node = stack.pop()
        if node == target:
            return True
        if node in seen:
            continue
        seen.add(node)
        stack.extend(graph.get(node, ()))
    return False
