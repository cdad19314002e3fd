import os
import logging
from datetime import tzinfo
from typing import Optional
from zoneinfo import ZoneInfo

DATABASE_URL = os.getenv("NETIPAM_DATABASE_URL", "sqlite:///./netipam.db")
LOG_LEVEL = os.getenv("NETIPAM_LOG_LEVEL", "INFO").upper()
LOCAL_TZ = os.getenv("NETIPAM_TZ", "").strip()

STARTUP_DELAY_SEC = int(os.getenv("NETIPAM_STARTUP_DELAY_SEC", "60"))
HOSTMAP_STARTUP_DELAY_SEC = int(os.getenv("NETIPAM_HOSTMAP_STARTUP_DELAY_SEC", "45"))
SETTINGS_POLL_SEC = int(os.getenv("NETIPAM_SETTINGS_POLL_SEC", "30"))

PROBE_TIMEOUT_MS = int(os.getenv("NETIPAM_PROBE_TIMEOUT_MS", "1000"))
PROBE_CONCURRENCY = int(os.getenv("NETIPAM_PROBE_CONCURRENCY", "20"))
REQ_TIMEOUT = float(os.getenv("NETIPAM_REQ_TIMEOUT", "15"))

API_RUN_WORKERS = os.getenv("NETIPAM_API_RUN_WORKERS", "true").lower() == "true"

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def setup_logging(level: Optional[str] = None):
    logging.basicConfig(level=level or LOG_LEVEL, format=LOG_FORMAT)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def local_tz() -> Optional[tzinfo]:
    """Zone used for calendar-day rollups; None means the host's local zone."""
    if not LOCAL_TZ:
        return None
    return ZoneInfo(LOCAL_TZ)
