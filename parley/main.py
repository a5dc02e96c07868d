"""CLI entry point for Parley."""

import asyncio
import signal
import sys

import structlog

from parley.app import build_dispatcher
from parley.connectors.console import ConsoleConnector
from parley.core.config import ParleyConfig, load_config
from parley.exceptions import ConfigError, ConnectorError

logger = structlog.get_logger()


async def _run_cli(config: ParleyConfig) -> None:
    connector = ConsoleConnector()
    dispatcher = build_dispatcher(config, connector=connector)
    await dispatcher.startup()
    await connector.start()

    logger.info("cli_starting", plugins=dispatcher.registry.plugin_ids)
    print(f"Parley ready — plugins: {', '.join(dispatcher.registry.plugin_ids)}")
    print(f"Send {config.command_prefix}help to list commands (Ctrl+D to exit).\n")

    try:
        while True:
            try:
                line = await asyncio.to_thread(input, "> ")
            except EOFError:
                break

            if not line.strip():
                continue

            await connector.feed(line)
    except KeyboardInterrupt:
        pass
    finally:
        logger.info("cli_shutting_down")
        await connector.stop()
        await dispatcher.shutdown()
        print("\nShutdown complete.")


async def _run_telegram(config: ParleyConfig) -> None:
    from parley.connectors.telegram import TelegramConnector

    connector = TelegramConnector(config.telegram_bot_token)  # type: ignore[arg-type]
    dispatcher = build_dispatcher(config, connector=connector)
    await dispatcher.startup()
    try:
        await connector.start()
    except Exception:
        logger.error("telegram_startup_failed")
        await dispatcher.shutdown()
        raise

    logger.info("telegram_starting", plugins=dispatcher.registry.plugin_ids)
    print("Parley ready via Telegram")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await stop_event.wait()
    finally:
        logger.info("telegram_shutting_down")
        await connector.stop()
        await dispatcher.shutdown()
        print("\nShutdown complete.")


async def main() -> None:
    try:
        config = load_config()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        print(
            "Set PARLEY_CONFIG_FILE to a YAML file or use PARLEY_* variables.",
            file=sys.stderr,
        )
        sys.exit(1)

    try:
        if config.telegram_bot_token:
            await _run_telegram(config)
        else:
            await _run_cli(config)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)
    except ConnectorError as e:
        print(f"Connector failed: {e}", file=sys.stderr)
        sys.exit(1)


def run() -> None:
    asyncio.run(main())
