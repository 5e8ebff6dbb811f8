import asyncio
import logging

from .config import Settings, configure_logging
from .controller import Controller

log = logging.getLogger(__name__)


async def run(settings: Settings):
    controller = await Controller.create(settings)
    await controller.start()
    try:
        await asyncio.Event().wait()
    finally:
        await controller.stop()


def main():
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    log.info("Starting mulebridge (history db: %s)", settings.db_path)
    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        log.info("Shutting down")


if __name__ == "__main__":
    main()
