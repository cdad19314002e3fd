import logging
import threading
from typing import Optional, Tuple

from sqlalchemy.orm import sessionmaker

from netipam.config import local_tz
from netipam.api.database import SessionLocal
from netipam.api.settings import SettingsService
from netipam.api.store import RecordStore
from .control import Trigger, UpdaterControl
from .controller import ControllerClient, check_connection
from .hostmap import HostMapper, HostMappingUpdater
from .reconciler import Reconciler
from .updater import OnlineStatusUpdater

logger = logging.getLogger(__name__)


class Services:
    """Process-wide wiring of the settings, controller gate and both loops."""

    def __init__(self, session_factory: sessionmaker = SessionLocal,
                 settings: Optional[SettingsService] = None,
                 client: Optional[ControllerClient] = None):
        self.stop_event = threading.Event()
        self.store = RecordStore(session_factory)
        self.settings = settings or SettingsService(session_factory)
        self.control = UpdaterControl()
        self.client = client or ControllerClient(self.settings.snapshot)
        self.reconciler = Reconciler(self.client, self.store, self.settings.snapshot,
                                     control=self.control, tz=local_tz())
        self.updater = OnlineStatusUpdater(self.reconciler, self.control, self.settings, self.stop_event)

        self.hostmap_trigger = Trigger()
        self.mapper = HostMapper(self.store, unprotect=self.settings.unprotect)
        self.hostmap = HostMappingUpdater(self.mapper, self.hostmap_trigger, self.stop_event)

    def start(self):
        self.updater.start()
        self.hostmap.start()
        logger.info("Background workers started.")

    def stop(self, timeout: float = 10.0):
        self.updater.stop()
        self.hostmap.stop()
        for t in (self.updater, self.hostmap):
            if t.is_alive():
                t.join(timeout)
        logger.info("Background workers stopped.")

    def check_connection(self) -> Tuple[bool, str]:
        return check_connection(self.client, self.control, self.stop_event)
