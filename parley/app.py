"""Bootstrap: wires all components together."""

from __future__ import annotations

import logging
import logging.handlers
from typing import TYPE_CHECKING

import structlog

from parley.core.aliases import CommandAliases
from parley.core.config import ParleyConfig, load_config
from parley.core.dispatcher import Dispatcher
from parley.core.events import EventBus
from parley.core.interactions import InteractionStore
from parley.core.permissions import PermissionResolver
from parley.core.ratelimit import RateLimiter
from parley.plugins.builtin.core import CorePlugin
from parley.plugins.loader import BUILTIN_PLUGINS, PluginLoader
from parley.plugins.registry import PluginRegistry
from parley.storage.memory import MemoryPluginStore
from parley.storage.sqlite import SqlitePluginStore

if TYPE_CHECKING:
    from collections.abc import Mapping

    from parley.connectors.base import BaseConnector
    from parley.plugins.loader import Locator, StoreFactory
    from parley.storage.base import PluginStore

logger = structlog.get_logger()


def _configure_logging(config: ParleyConfig) -> None:
    """Set up structlog with console output and optional rotating JSON file handler."""
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]

    root_logger = logging.getLogger()
    root_logger.setLevel(config.log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(),
        )
    )
    root_logger.addHandler(console_handler)

    # JSON lines for machine parsing
    if config.log_dir is not None:
        config.log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            config.log_dir / "parley.log",
            maxBytes=config.log_max_bytes,
            backupCount=config.log_backup_count,
        )
        file_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=structlog.processors.JSONRenderer(),
            )
        )
        root_logger.addHandler(file_handler)

    # HTTP transport chatter from the Telegram client floods INFO/DEBUG.
    for noisy_logger in ("httpx", "httpcore", "hpack", "telegram", "telegram.ext"):
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)

    structlog.configure(
        processors=shared_processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _plugin_store_factory(config: ParleyConfig) -> StoreFactory:
    if config.storage_backend == "sqlite":
        storage_dir = config.storage_dir

        def _sqlite(plugin_id: str) -> PluginStore:
            return SqlitePluginStore(storage_dir / f"{plugin_id}.sqlite")

        return _sqlite
    return MemoryPluginStore


def build_dispatcher(
    config: ParleyConfig | None = None,
    connector: BaseConnector | None = None,
    plugins: Mapping[str, Locator] | None = None,
) -> Dispatcher:
    """Build a ready-to-start Dispatcher.

    *plugins* adds manifest entries on top of the built-ins and the
    configured ``plugin_paths``. Plugins are only loaded by ``startup()``.
    """
    if config is None:
        config = load_config()

    _configure_logging(config)

    logger.info(
        "dispatcher_building",
        storage_backend=config.storage_backend,
        has_connector=connector is not None,
        plugins=config.plugins,
        log_level=config.log_level,
    )

    event_bus = EventBus()
    registry = PluginRegistry()
    loader = PluginLoader(
        registry,
        config,
        event_bus,
        connector=connector,
        store_factory=_plugin_store_factory(config),
        manifest={**BUILTIN_PLUGINS, **config.plugin_paths, **(plugins or {})},
    )
    loader.scan()

    aliases = CommandAliases(config.aliases)
    dispatcher = Dispatcher(
        config,
        loader,
        connector=connector,
        permissions=PermissionResolver(
            admin_ids=config.admin_ids, trusted_ids=config.trusted_ids
        ),
        rate_limiter=RateLimiter(),
        interactions=InteractionStore(
            timeout_seconds=config.interaction_timeout_seconds
        ),
        aliases=aliases,
        event_bus=event_bus,
        core_plugin=CorePlugin(loader, aliases),
    )

    logger.info(
        "dispatcher_built",
        admin_count=len(config.admin_ids),
        trusted_count=len(config.trusted_ids),
        manifest=sorted(loader.manifest),
    )
    return dispatcher
