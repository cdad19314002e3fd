import time
import signal
import logging

import schedule

from netipam.config import SETTINGS_POLL_SEC, setup_logging
from netipam.api.database import init_db
from .services import Services

logger = logging.getLogger(__name__)


def poll_settings_job(services: Services):
    try:
        services.settings.reload_if_changed()
    except Exception as e:
        logger.error(f"settings poll failed: {e}")


def main():
    setup_logging()
    init_db()

    services = Services()
    services.settings.load()

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}; shutting down.")
        services.stop_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    services.start()
    schedule.every(SETTINGS_POLL_SEC).seconds.do(poll_settings_job, services)

    logger.info("Agent started.")
    while not services.stop_event.is_set():
        schedule.run_pending()
        time.sleep(1)

    schedule.clear()
    services.stop()
    logger.info("Agent stopped.")


if __name__ == "__main__":
    main()
