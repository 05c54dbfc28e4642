# switchboard/__main__.py
import asyncio
import signal
import sys

from loguru import logger

from switchboard.config import load_settings
from switchboard.errors import SwitchboardError
from switchboard.log import configure_logging
from switchboard.supervisor import Supervisor


async def main() -> None:
    """
    Main entry point for the switchboard daemon.

    This function loads the settings, installs SIGINT and SIGTERM handlers that
    fire a single stop event, and runs the supervisor until every daemon has
    exited. The data directory comes from ``SWITCHBOARD_DATADIR``.

    Returns:
        None
    """
    settings = load_settings()
    configure_logging(settings.log_level)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    logger.info(f"Starting switchboard in {settings.datadir}")
    supervisor = Supervisor(settings, stop_event)
    await supervisor.run()


def run() -> None:
    try:
        asyncio.run(main())
    except SwitchboardError as exc:
        logger.error(f"switchboardd: {exc}")
        sys.exit(1)


if __name__ == "__main__":
    run()
