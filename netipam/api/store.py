import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, tzinfo
from typing import Dict, Iterable, Iterator, List, Optional, Set

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, sessionmaker

from netipam.cidr import try_parse_cidr, try_parse_ipv4
from .database import SessionLocal
from .models import (
    DailyUptime, Device, DiscoveryAlert, FirmwareAlert, IgnoredDiscoveryMac, IpHistory,
    MonitorMode, OfflineAlert, RunLog, StatusEvent, Subnet, WanInterfaceStatus, utcnow,
)

logger = logging.getLogger(__name__)

STATUS_EVENT_RETENTION_DAYS = 30
ROLLUP_RETENTION_DAYS = 180
RUN_LOG_RETENTION_HOURS = 24


def _same(a: Optional[str], b: Optional[str]) -> bool:
    return (a or "").casefold() == (b or "").casefold()


class RecordStore:
    """Persistence contract for one reconciliation pass.

    ``session_scope()`` is the unit of work: everything a pass reads and
    writes goes through the yielded session and is committed once at the
    end, or rolled back if anything raises.
    """

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self.session_factory = session_factory

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
            db.commit()
        except BaseException:
            db.rollback()
            raise
        finally:
            db.close()

    # ---------------- loaders ----------------

    def trackable_devices(self, db: Session) -> List[Device]:
        """Devices matchable by MAC plus any with a custom monitor mode, in id order."""
        stmt = (
            select(Device)
            .where(or_(
                Device.mac_address.isnot(None) & (Device.mac_address != ""),
                Device.monitor_mode != MonitorMode.NORMAL,
            ))
            .order_by(Device.id)
        )
        return list(db.scalars(stmt))

    def open_offline_alerts(self, db: Session, device_ids: Iterable[int]) -> Dict[int, OfflineAlert]:
        ids = list(device_ids)
        if not ids:
            return {}
        stmt = (
            select(OfflineAlert)
            .where(OfflineAlert.device_id.in_(ids), OfflineAlert.came_online_at.is_(None))
            .order_by(OfflineAlert.went_offline_at)
        )
        # latest wins
        return {a.device_id: a for a in db.scalars(stmt)}

    def open_firmware_alerts(self, db: Session, device_ids: Iterable[int]) -> Dict[int, List[FirmwareAlert]]:
        ids = list(device_ids)
        if not ids:
            return {}
        stmt = select(FirmwareAlert).where(
            FirmwareAlert.device_id.in_(ids), FirmwareAlert.resolved_at.is_(None)
        )
        out: Dict[int, List[FirmwareAlert]] = {}
        for a in db.scalars(stmt):
            out.setdefault(a.device_id, []).append(a)
        return out

    def open_ip_intervals(self, db: Session, device_ids: Iterable[int]) -> Dict[int, IpHistory]:
        ids = list(device_ids)
        if not ids:
            return {}
        stmt = (
            select(IpHistory)
            .where(IpHistory.device_id.in_(ids), IpHistory.last_seen.is_(None))
            .order_by(IpHistory.first_seen)
        )
        return {h.device_id: h for h in db.scalars(stmt)}

    def devices_with_history(self, db: Session, device_ids: Iterable[int]) -> Set[int]:
        ids = list(device_ids)
        if not ids:
            return set()
        stmt = select(IpHistory.device_id).where(IpHistory.device_id.in_(ids)).distinct()
        return set(db.scalars(stmt))

    def ignored_macs(self, db: Session) -> Set[str]:
        return {m.lower() for m in db.scalars(select(IgnoredDiscoveryMac.mac))}

    def open_discovery_macs(self, db: Session) -> Set[str]:
        stmt = select(DiscoveryAlert.mac).where(DiscoveryAlert.is_acknowledged.is_(False))
        return {m.lower() for m in db.scalars(stmt)}

    # ---------------- writers ----------------

    def replace_wan_interfaces(self, db: Session, interfaces, now: datetime) -> int:
        for row in db.scalars(select(WanInterfaceStatus)):
            db.delete(row)
        for w in interfaces:
            db.add(WanInterfaceStatus(
                gateway_name=w.gateway_name,
                gateway_mac=w.gateway_mac,
                interface_name=w.interface_name,
                is_up=w.is_up,
                ip_address=w.ip_address,
                updated_at=now,
            ))
        return len(interfaces)

    def update_subnets(self, db: Session, networks) -> int:
        """Refresh existing subnets whose CIDR matches a controller network."""
        by_cidr = {
            s.cidr.strip().lower(): s
            for s in db.scalars(select(Subnet))
            if s.cidr and s.cidr.strip()
        }
        updated = 0
        for n in networks:
            if not n.cidr or not n.cidr.strip():
                continue
            cidr = n.cidr.strip()
            subnet = by_cidr.get(cidr.lower())
            if subnet is None:
                continue
            subnet.name = (n.name or "").strip()
            subnet.cidr = cidr
            subnet.dhcp_range_start = n.dhcp_start.strip() if n.dhcp_start else None
            subnet.dhcp_range_end = n.dhcp_end.strip() if n.dhcp_end else None
            subnet.vlan_id = n.vlan_id
            subnet.dns1 = n.dns1.strip() if n.dns1 else None
            subnet.dns2 = n.dns2.strip() if n.dns2 else None
            updated += 1
        return updated

    def merge_rollups(self, db: Session, accumulator, now: datetime) -> int:
        keys = [k for k, (online, observed) in accumulator.items() if online > 0 or observed > 0]
        if not keys:
            return 0

        device_ids = {k[0] for k in keys}
        dates = {k[1] for k in keys}
        stmt = select(DailyUptime).where(DailyUptime.device_id.in_(device_ids), DailyUptime.date.in_(dates))
        existing = {(r.device_id, r.date): r for r in db.scalars(stmt)}

        for key in keys:
            online, observed = accumulator.buckets[key]
            row = existing.get(key)
            if row is None:
                db.add(DailyUptime(
                    device_id=key[0],
                    date=key[1],
                    online_seconds=online,
                    observed_seconds=max(observed, online),
                    updated_at=now,
                ))
                continue
            row.online_seconds += online
            row.observed_seconds += observed
            if row.observed_seconds < row.online_seconds:
                row.observed_seconds = row.online_seconds
            row.updated_at = now
        return len(keys)

    def prune(self, db: Session, now: datetime, rollup_cutoff) -> Dict[str, int]:
        """Drop status events older than 30 days, rollups before ``rollup_cutoff`` and day-old run logs."""
        event_cutoff = now - timedelta(days=STATUS_EVENT_RETENTION_DAYS)
        run_cutoff = now - timedelta(hours=RUN_LOG_RETENTION_HOURS)

        counts = {"events": 0, "rollups": 0, "runs": 0}
        for row in db.scalars(select(StatusEvent).where(StatusEvent.changed_at < event_cutoff)):
            db.delete(row)
            counts["events"] += 1
        for row in db.scalars(select(DailyUptime).where(DailyUptime.date < rollup_cutoff)):
            db.delete(row)
            counts["rollups"] += 1
        for row in db.scalars(select(RunLog).where(RunLog.started_at < run_cutoff)):
            db.delete(row)
            counts["runs"] += 1
        return counts

    def record_failed_run(self, started_at: datetime, error: str, source: str):
        """Write an error run log in its own transaction after a pass rolled back."""
        finished = utcnow()
        try:
            with self.session_scope() as db:
                db.add(RunLog(
                    started_at=started_at,
                    finished_at=finished,
                    duration_ms=max(0, int((finished - started_at).total_seconds() * 1000)),
                    changed_count=0,
                    error=error[:2000],
                    source=source,
                ))
        except Exception:
            logger.exception("Failed to record run log for failed pass")


def monitored_port(device: Device) -> Optional[int]:
    mode = MonitorMode(device.monitor_mode or MonitorMode.NORMAL)
    if mode.requires_port or mode.requires_http:
        return device.monitor_port
    return None


def track_ip_change(db: Session, device: Device, source: Optional[str], now: datetime,
                    open_intervals: Optional[Dict[int, IpHistory]] = None) -> bool:
    """Close the device's open IP interval and open a new one if (IP, port) changed."""
    ip = (device.ip_address or "").strip()
    if not ip:
        return False

    port = monitored_port(device)
    if open_intervals is not None:
        current = open_intervals.get(device.id)
    else:
        current = db.scalars(
            select(IpHistory)
            .where(IpHistory.device_id == device.id, IpHistory.last_seen.is_(None))
            .order_by(IpHistory.first_seen.desc())
        ).first()

    if current is not None and _same(current.ip_address, ip) and current.port == port:
        return False

    if current is not None:
        current.last_seen = now

    row = IpHistory(
        device_id=device.id,
        ip_address=ip,
        port=port,
        source=source.strip() if source and source.strip() else None,
        first_seen=now,
    )
    db.add(row)
    if open_intervals is not None:
        open_intervals[device.id] = row
    return True


def resolve_subnet_for_ip(db: Session, ip: Optional[str]) -> Optional[int]:
    """Id of the first subnet whose network..broadcast range contains ``ip``."""
    ip_int, _ = try_parse_ipv4(ip)
    if ip_int is None:
        return None

    for subnet_id, cidr in db.execute(select(Subnet.id, Subnet.cidr).order_by(Subnet.id)):
        info, _ = try_parse_cidr(cidr)
        if info is not None and info.contains(ip_int):
            return subnet_id
    return None
