import asyncio
import logging
import signal

from loguru import logger

from config import settings
from database import create_tables
from scheduler import add_profile_log, scheduler

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(settings.log_file),
        logging.StreamHandler()
    ]
)

# Add loguru logger for profiling
add_profile_log()

# Runs the scheduler without the API, e.g. with RUN_SCHEDULER=false on the API
# process. Only run one: the drain is single-flight per process, not across processes.


async def main():
    create_tables()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, scheduler.stop)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    await scheduler.run_forever()


if __name__ == "__main__":
    logger.info("Starting job worker")
    asyncio.run(main())
