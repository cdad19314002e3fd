import logging
import threading
import concurrent.futures
from collections import Counter
from datetime import datetime, tzinfo
from typing import Callable, Dict, List, NamedTuple, Optional

from netipam.config import PROBE_CONCURRENCY
from netipam.api.models import (
    ChangeLog, Device, DiscoveryAlert, FirmwareAlert, MonitorMode, OfflineAlert, RunLog,
    StatusEvent, utcnow,
)
from netipam.api.schemas import SettingsSnapshot
from netipam.api.store import RecordStore, resolve_subnet_for_ip, track_ip_change
from . import parsers
from .control import Cancelled, UpdaterControl
from .controller import ControllerClient
from .probe import Prober
from .uptime import UptimeAccumulator, local_cutoff_date

logger = logging.getLogger(__name__)

RUN_SOURCE = "Controller"
OFFLINE_ALERT_SOURCE = "Controller+Ping"

INFRA_CONNECTED = "InfraConnected"
ACTIVE_CLIENT = "ActiveClient"
PING = "Ping"
CUSTOM_MONITOR = "CustomMonitor"

IP_SOURCE_INITIAL = "Initial"
IP_SOURCE_CONTROLLER = "Controller"
IP_SOURCE_MANUAL = "Manual"

# (settings flag, device attribute, merged-client attribute, change-log field)
IDENTITY_FIELDS = (
    ("sync_ip_address", "ip_address", "ip_address", "IpAddress"),
    ("sync_name", "name", "name", "Name"),
    ("sync_hostname", "hostname", "hostname", "Hostname"),
    ("sync_manufacturer", "manufacturer", "manufacturer", "Manufacturer"),
    ("sync_model", "model", "model", "Model"),
)


class Verdict(NamedTuple):
    online: bool
    source: str


class ProbeTarget(NamedTuple):
    device_id: int
    ip_address: Optional[str]
    mode: MonitorMode
    port: Optional[int]
    use_https: bool
    http_path: Optional[str]

    @classmethod
    def of(cls, d: Device) -> "ProbeTarget":
        return cls(d.id, d.ip_address, MonitorMode(d.monitor_mode), d.monitor_port,
                   bool(d.monitor_use_https), d.monitor_http_path)


class PassResult(NamedTuple):
    changed_count: int
    probed: int
    sources: Dict[str, int]


def _mac_of(d: Device) -> Optional[str]:
    return parsers.normalize_mac_or_none(d.mac_address)


def fuse_signal(d: Device, infra_by_mac: Dict[str, parsers.InfraDevice],
                active_by_mac: Dict[str, parsers.ActiveClientStatus]) -> Optional[Verdict]:
    """Controller-side verdict for a Normal-mode device; None means probe it."""
    if MonitorMode(d.monitor_mode) != MonitorMode.NORMAL:
        return None
    mac = _mac_of(d)
    if mac is None:
        return None
    infra = infra_by_mac.get(mac)
    if infra is not None and infra.is_online:
        return Verdict(True, INFRA_CONNECTED)
    if mac in active_by_mac:
        return Verdict(True, ACTIVE_CLIENT)
    return None


def evaluate_monitor(prober: Prober, t: ProbeTarget) -> bool:
    """AND of every check the monitor mode requires."""
    if t.mode == MonitorMode.NORMAL:
        return prober.is_alive(t.ip_address)
    if t.mode.requires_ping and not prober.is_alive(t.ip_address):
        return False
    if t.mode.requires_port and not prober.is_tcp_open(t.ip_address, t.port or 0):
        return False
    if t.mode.requires_http and not prober.is_http_ok(t.ip_address, t.port, t.use_https, t.http_path):
        return False
    return True


def _check_cancel(cancel: Optional[threading.Event]):
    if cancel is not None and cancel.is_set():
        raise Cancelled()


class Reconciler:
    """One controller reconciliation pass.

    Fetches the four controller lists, syncs identity fields, fuses
    reachability signals with probe fallback, and writes events, rollups,
    alerts, IP history and a run log in one transaction.
    """

    def __init__(self, client: ControllerClient, store: RecordStore,
                 settings: Callable[[], SettingsSnapshot],
                 control: Optional[UpdaterControl] = None,
                 prober: Optional[Prober] = None,
                 tz: Optional[tzinfo] = None,
                 clock: Callable[[], datetime] = utcnow,
                 concurrency: int = PROBE_CONCURRENCY):
        self.client = client
        self.store = store
        self.settings = settings
        self.control = control
        self.prober = prober or Prober()
        self.tz = tz
        self.clock = clock
        self.concurrency = max(1, concurrency)

    def run_once(self, cancel: Optional[threading.Event] = None) -> PassResult:
        started = self.clock()
        try:
            result = self.run_pass(started, cancel)
        except Cancelled:
            raise
        except Exception as e:
            self.store.record_failed_run(started, str(e) or e.__class__.__name__, RUN_SOURCE)
            raise

        if self.control is not None:
            self.control.last_run = utcnow()
            self.control.last_changed_count = result.changed_count
            self.control.last_error = None
            self.control.notify_status_changed()
        return result

    def run_pass(self, now: datetime, cancel: Optional[threading.Event] = None) -> PassResult:
        s = self.settings()

        active_doc = self.client.get_active_clients(cancel)
        _check_cancel(cancel)
        known_doc = self.client.get_known_clients(cancel)
        _check_cancel(cancel)
        devices_doc = self.client.get_devices(cancel)
        _check_cancel(cancel)
        networks_doc = self.client.get_networks(cancel)
        _check_cancel(cancel)

        device_names = parsers.build_device_name_map(devices_doc)
        active_by_mac = parsers.parse_active_status(active_doc, device_names) if s.sync_online_status else {}
        clients = parsers.merge_clients(active_doc, known_doc, device_names, now)
        client_by_mac: Dict[str, parsers.ControllerClient] = {}
        for c in clients:
            client_by_mac.setdefault(c.mac, c)
        infra_by_mac = {d.mac: d for d in parsers.parse_infra_devices(devices_doc)}
        wans = parsers.parse_wan_interfaces(devices_doc)
        networks = parsers.parse_networks(networks_doc)

        with self.store.session_scope() as db:
            run_log = RunLog(started_at=now, source=RUN_SOURCE)
            db.add(run_log)

            if wans:
                self.store.replace_wan_interfaces(db, wans, now)
            if networks:
                self.store.update_subnets(db, networks)

            devices = self.store.trackable_devices(db)
            ids = [d.id for d in devices]
            with_history = self.store.devices_with_history(db, ids)
            open_intervals = self.store.open_ip_intervals(db, ids)
            open_firmware = self.store.open_firmware_alerts(db, ids)

            changed = 0
            for d in devices:
                if d.id not in with_history and d.ip_address and d.ip_address.strip():
                    track_ip_change(db, d, IP_SOURCE_INITIAL, now, open_intervals)
                    with_history.add(d.id)

                mac = _mac_of(d)
                if mac is None:
                    continue

                client = client_by_mac.get(mac)
                if client is not None:
                    changed += self._sync_identity(db, run_log, s, d, client, now, open_intervals)

                infra = infra_by_mac.get(mac)
                if infra is not None:
                    self._sync_firmware(db, d, infra, open_firmware.get(d.id, []), now)

            for d in devices:
                track_ip_change(db, d, IP_SOURCE_MANUAL, now, open_intervals)

            self._detect_discoveries(db, devices, clients, now)

            if not s.sync_online_status:
                self._finish_run(run_log, changed)
                logger.info(f"Controller pass completed (online status sync disabled). Changed={changed}.")
                return PassResult(changed, 0, {})

            verdicts, probed = self._fuse(devices, infra_by_mac, active_by_mac, cancel)
            changed += self._apply_verdicts(db, run_log, s, devices, verdicts, active_by_mac, client_by_mac, now)

            counts = self.store.prune(db, now, local_cutoff_date(now, 180, self.tz))
            if any(counts.values()):
                logger.debug(f"Pruned {counts}")

            self._finish_run(run_log, changed)

        sources = dict(sorted(Counter(v.source for v in verdicts.values()).items()))
        summary = ", ".join(f"{k}={v}" for k, v in sources.items())
        logger.info(f"Controller pass completed. Changed={changed}. Probed={probed}. StatusSources=[{summary}]")
        return PassResult(changed, probed, sources)

    # ---------------- identity / firmware / discovery ----------------

    def _sync_identity(self, db, run_log, s: SettingsSnapshot, d: Device,
                       client: parsers.ControllerClient, now: datetime, open_intervals) -> int:
        changed = 0
        for flag, attr, incoming_attr, field_name in IDENTITY_FIELDS:
            if not getattr(s, flag):
                continue
            incoming = (getattr(client, incoming_attr) or "").strip()
            current = getattr(d, attr)
            if not incoming or incoming.casefold() == (current or "").casefold():
                continue

            setattr(d, attr, incoming)
            db.add(self._change(run_log, d, field_name, current, incoming))
            if attr == "ip_address":
                track_ip_change(db, d, IP_SOURCE_CONTROLLER, now, open_intervals)
                subnet_id = resolve_subnet_for_ip(db, incoming)
                if subnet_id is not None:
                    d.subnet_id = subnet_id
            changed += 1
        return changed

    @staticmethod
    def _change(run_log, d: Device, field_name, old, new) -> ChangeLog:
        return ChangeLog(
            run=run_log,
            device_id=d.id,
            device_name=d.name,
            ip_address=d.ip_address,
            field_name=field_name,
            old_value=old,
            new_value=new,
        )

    @staticmethod
    def _sync_firmware(db, d: Device, infra: parsers.InfraDevice,
                       open_alerts: List[FirmwareAlert], now: datetime):
        target = (infra.upgrade_to_version or "").strip()
        current = (infra.version or "").strip() or None
        open_alerts = [a for a in open_alerts if a.resolved_at is None]

        if infra.is_upgradable is not True or not target:
            for a in open_alerts:
                a.resolved_at = now
            return

        matching = next(
            (a for a in open_alerts if (a.target_version or "").casefold() == target.casefold()), None
        )
        if matching is not None:
            if (matching.current_version or "").casefold() != (current or "").casefold():
                matching.current_version = current
            return

        for a in open_alerts:
            a.resolved_at = now
        db.add(FirmwareAlert(
            device_id=d.id,
            name_at_time=d.name,
            mac_at_time=d.mac_address,
            model_at_time=d.model,
            current_version=current,
            target_version=target,
            detected_at=now,
            source=RUN_SOURCE,
        ))
        logger.info(f"Firmware update available for {d.name}: {current} -> {target}")

    def _detect_discoveries(self, db, devices: List[Device], clients, now: datetime) -> int:
        known = {m for m in (_mac_of(d) for d in devices) if m}
        skip = known | self.store.ignored_macs(db) | self.store.open_discovery_macs(db)

        created = 0
        for c in clients:
            if not c.is_online or c.mac in skip:
                continue
            skip.add(c.mac)
            db.add(DiscoveryAlert(
                mac=c.mac,
                name=c.name.strip() if c.name else None,
                hostname=c.hostname.strip() if c.hostname else None,
                ip_address=c.ip_address.strip() if c.ip_address else None,
                connection_type=c.connection_type,
                upstream_device_name=c.upstream_device_name,
                upstream_device_mac=c.upstream_device_mac,
                upstream_connection=c.upstream_connection,
                connection_detail=c.connection_detail,
                is_online=True,
                detected_at=now,
                source=RUN_SOURCE,
            ))
            created += 1
        if created:
            logger.info(f"Discovered {created} new client(s)")
        return created

    # ---------------- fusion ----------------

    def _fuse(self, devices: List[Device], infra_by_mac, active_by_mac,
              cancel: Optional[threading.Event]):
        verdicts: Dict[int, Verdict] = {}
        targets: List[ProbeTarget] = []

        for d in devices:
            if not d.is_status_tracked:
                continue
            verdict = fuse_signal(d, infra_by_mac, active_by_mac)
            if verdict is not None:
                verdicts[d.id] = verdict
            else:
                targets.append(ProbeTarget.of(d))

        if targets:
            with concurrent.futures.ThreadPoolExecutor(max_workers=self.concurrency) as executor:
                futures = {executor.submit(evaluate_monitor, self.prober, t): t for t in targets}
                for fut in concurrent.futures.as_completed(futures):
                    t = futures[fut]
                    source = PING if t.mode == MonitorMode.NORMAL else CUSTOM_MONITOR
                    verdicts[t.device_id] = Verdict(fut.result(), source)
            _check_cancel(cancel)

        return verdicts, len(targets)

    def _apply_verdicts(self, db, run_log, s: SettingsSnapshot, devices: List[Device],
                        verdicts: Dict[int, Verdict], active_by_mac, client_by_mac,
                        now: datetime) -> int:
        open_alerts = self.store.open_offline_alerts(db, [d.id for d in devices])
        uptime = UptimeAccumulator(self.tz)
        changed = 0

        for d in devices:
            open_alert = open_alerts.get(d.id)

            if not d.is_status_tracked:
                if open_alert is not None:
                    open_alert.came_online_at = now
                continue

            was_online = bool(d.is_online)
            verdict = verdicts.get(d.id, Verdict(False, "Unknown"))
            logger.debug(
                f"Status resolve: id={d.id} name={d.name} mac={d.mac_address} source={verdict.source} "
                f"previous={'Online' if was_online else 'Offline'} current={'Online' if verdict.online else 'Offline'}"
            )

            if d.last_status_rollup_at is not None and d.last_status_rollup_at < now:
                uptime.add(d.id, d.last_status_rollup_at, now, was_online)
            if d.last_status_rollup_at is None or d.last_status_rollup_at < now:
                d.last_status_rollup_at = now

            if was_online != verdict.online:
                changed += 1
                db.add(StatusEvent(device_id=d.id, is_online=verdict.online, changed_at=now, source=verdict.source))
                db.add(self._change(
                    run_log, d, "OnlineStatus",
                    "Online" if was_online else "Offline",
                    "Online" if verdict.online else "Offline",
                ))

            if verdict.online:
                self._update_connection(s, d, active_by_mac, client_by_mac)
                d.is_online = True
                d.last_seen_at = now
                d.last_online_at = now
                if open_alert is not None:
                    open_alert.came_online_at = now
                continue

            d.is_online = False
            if d.ignore_offline:
                if open_alert is not None:
                    open_alert.came_online_at = now
            elif was_online and open_alert is None:
                db.add(OfflineAlert(
                    device_id=d.id,
                    name_at_time=d.name,
                    ip_at_time=d.ip_address,
                    went_offline_at=now,
                    source=OFFLINE_ALERT_SOURCE,
                ))
                logger.info(f"Device went offline: {d.name} ({d.ip_address})")

        self.store.merge_rollups(db, uptime, now)
        return changed

    @staticmethod
    def _update_connection(s: SettingsSnapshot, d: Device, active_by_mac, client_by_mac):
        if not s.update_connection_fields_when_online:
            return
        mac = _mac_of(d)
        status = active_by_mac.get(mac) if mac else None
        if status is None:
            return

        d.connection_type = status.connection_type
        d.connection_detail = status.connection_detail

        client = client_by_mac.get(mac)
        if d.host_device_id is None and client is not None:
            d.upstream_device_name = client.upstream_device_name
            d.upstream_device_mac = client.upstream_device_mac
            d.upstream_connection = client.upstream_connection

    @staticmethod
    def _finish_run(run_log: RunLog, changed: int):
        run_log.finished_at = utcnow()
        run_log.duration_ms = max(0, int((run_log.finished_at - run_log.started_at).total_seconds() * 1000))
        run_log.changed_count = changed
