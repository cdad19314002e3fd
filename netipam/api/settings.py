import logging
import threading
from typing import Callable, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from .models import AppSettings
from .schemas import SettingsSnapshot, SettingsUpdate

logger = logging.getLogger(__name__)

SINGLETON_ID = 1

Listener = Callable[[SettingsSnapshot], None]


def _identity(value: Optional[str]) -> Optional[str]:
    return value


class SettingsService:
    """Runtime settings backed by the singleton ``app_settings`` row.

    ``snapshot()`` hands out the last loaded immutable snapshot. ``update()``
    and ``reload_if_changed()`` persist/refresh the row and broadcast the new
    snapshot to every subscriber. Secrets are stored protected; ``unprotect``
    turns them back into plain values when a snapshot is built.
    """

    def __init__(self, session_factory: sessionmaker,
                 unprotect: Callable[[Optional[str]], Optional[str]] = _identity,
                 protect: Callable[[Optional[str]], Optional[str]] = _identity):
        self._session_factory = session_factory
        self._unprotect = unprotect
        self._protect = protect
        self._gate = threading.Lock()
        self._listeners: List[Listener] = []
        self._snapshot: Optional[SettingsSnapshot] = None

    def subscribe(self, listener: Listener):
        self._listeners.append(listener)

    def unsubscribe(self, listener: Listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def snapshot(self) -> SettingsSnapshot:
        snap = self._snapshot
        if snap is None:
            snap = self.load()
        return snap

    def load(self) -> SettingsSnapshot:
        with self._session_factory() as db:
            row = self._ensure_row(db)
            snap = self._to_snapshot(row)
        self._snapshot = snap
        return snap

    def update(self, changes: SettingsUpdate, password: Optional[str] = None,
               api_key: Optional[str] = None) -> SettingsSnapshot:
        with self._gate:
            with self._session_factory() as db:
                row = self._ensure_row(db)
                for field, value in changes.model_dump(exclude_unset=True).items():
                    setattr(row, field, value)
                if password is not None:
                    row.controller_password_protected = self._protect(password)
                if api_key is not None:
                    row.controller_api_key_protected = self._protect(api_key)
                db.commit()
                snap = self._to_snapshot(row)
            self._snapshot = snap
        self._broadcast(snap)
        return snap

    def reload_if_changed(self) -> bool:
        """Re-read the row and broadcast when another writer changed it."""
        previous = self._snapshot
        snap = self.load()
        if previous is not None and previous.version == snap.version:
            return False
        if previous is not None:
            logger.info("Settings changed outside this process; applying.")
        self._broadcast(snap)
        return True

    def unprotect(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        try:
            return self._unprotect(value)
        except ValueError:
            logger.warning("Stored secret could not be decrypted; treating it as unset.")
            return None

    def _broadcast(self, snap: SettingsSnapshot):
        for listener in list(self._listeners):
            try:
                listener(snap)
            except Exception:
                logger.exception("Settings listener failed")

    def _to_snapshot(self, row: AppSettings) -> SettingsSnapshot:
        return SettingsSnapshot(
            updater_enabled=row.updater_enabled,
            updater_interval_seconds=row.updater_interval_seconds,
            update_connection_fields_when_online=row.update_connection_fields_when_online,
            sync_ip_address=row.sync_ip_address,
            sync_online_status=row.sync_online_status,
            sync_name=row.sync_name,
            sync_hostname=row.sync_hostname,
            sync_manufacturer=row.sync_manufacturer,
            sync_model=row.sync_model,
            controller_base_url=row.controller_base_url,
            controller_site=row.controller_site,
            controller_username=row.controller_username,
            controller_password=self.unprotect(row.controller_password_protected),
            controller_auth_mode=row.controller_auth_mode,
            controller_api_key=self.unprotect(row.controller_api_key_protected),
            version=row.updated_at,
        )

    @staticmethod
    def _ensure_row(db: Session) -> AppSettings:
        row = db.get(AppSettings, SINGLETON_ID)
        if row is None:
            row = AppSettings(id=SINGLETON_ID)
            db.add(row)
            db.commit()
            db.refresh(row)
        return row
