"""Run a worker agent: ``python -m fleet.agent``."""

import asyncio
import signal

from fleet.agent.config import agent_settings
from fleet.agent.worker import AutomationWorker
from fleet.utils.logging import get_logger, setup_logging

setup_logging()
logger = get_logger(__name__)


async def main() -> None:
    worker = AutomationWorker(agent_settings)
    stopping = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stopping.set)

    await worker.start()
    await stopping.wait()
    logger.info("Shutdown signal received")
    await worker.stop()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
