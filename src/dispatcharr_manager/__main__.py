import asyncio
import logging

from dispatcharr_manager.app import Application
from dispatcharr_manager.config import configure_logging, get_settings

logger = logging.getLogger("dispatcharr_manager")


async def main():
    settings = get_settings()
    configure_logging(settings.log_level)
    async with Application(settings) as app:
        logger.info("Scheduler running in timezone %s, press Ctrl+C to exit", app.scheduler.get_timezone())
        await asyncio.Event().wait()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
