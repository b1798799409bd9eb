"""Entry point: ``python -m workshop_relay``."""

import asyncio
import signal

from .config import load_config, validate_production_config
from .logging_config import configure_logging, get_logger
from .server import RelayServer

logger = get_logger(__name__)


async def main():
    config = load_config()
    configure_logging(log_level=config.logging.level, log_format=config.logging.format)

    errors, warnings = validate_production_config(config)
    if errors:
        logger.error("Configuration validation FAILED", errors=errors, warnings=warnings)
        raise RuntimeError(f"Configuration errors: {errors}")
    if warnings:
        logger.warning("Configuration warnings", warnings=warnings)
    logger.info("Configuration validation passed")

    server = RelayServer(config)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    await server.start()
    try:
        await shutdown_event.wait()
    finally:
        await server.stop()


def run() -> None:
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        pass
    finally:
        logger.info("Workshop relay has shut down.")


if __name__ == "__main__":
    run()
