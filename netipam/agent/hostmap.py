import re
import logging
import threading
from typing import Any, Callable, Dict, Iterator, List, NamedTuple, Optional
from urllib.parse import quote

import requests
from sqlalchemy import select

from netipam.config import HOSTMAP_STARTUP_DELAY_SEC, REQ_TIMEOUT
from netipam.api.models import Device, HypervisorProfile
from netipam.api.store import RecordStore
from . import parsers
from .control import Cancelled, Trigger, wait

logger = logging.getLogger(__name__)

MAC_RE = re.compile(r"([0-9A-Fa-f]{2}[:-]){5}[0-9A-Fa-f]{2}")

DEFAULT_INTERVAL_SEC = 300
MIN_INTERVAL_SEC = 30
MAX_INTERVAL_SEC = 86400
GUEST_TYPES = ("qemu", "lxc")


class HypervisorError(Exception):
    pass


class GuestRef(NamedTuple):
    node: str
    vm_type: str
    vmid: int


class HostRef(NamedTuple):
    id: int
    name: str


def normalize_interval(seconds: Optional[int]) -> int:
    if not seconds or seconds <= 0:
        return DEFAULT_INTERVAL_SEC
    return max(MIN_INTERVAL_SEC, min(MAX_INTERVAL_SEC, seconds))


def normalize_node(node: Optional[str]) -> str:
    return (node or "").strip().lower()


def node_keys(node: Optional[str]) -> List[str]:
    """Full and short (before the first dot) lower-case node names."""
    full = normalize_node(node)
    if not full:
        return []
    short = full.split(".", 1)[0]
    return [full] if not short or short == full else [full, short]


def extract_macs(config: Any) -> Iterator[str]:
    if not isinstance(config, dict):
        return
    for value in config.values():
        if not isinstance(value, str) or not value.strip():
            continue
        for m in MAC_RE.finditer(value):
            yield parsers.normalize_mac(m.group(0))


class HypervisorClient:
    """Token-authenticated reads against the hypervisor cluster API."""

    def __init__(self, base_url: str, token_id: str, token_secret: str,
                 session: Optional[requests.Session] = None, timeout: float = REQ_TIMEOUT):
        if not (base_url or "").strip() or not (token_id or "").strip() or not (token_secret or "").strip():
            raise HypervisorError("Hypervisor profile is not fully configured. Set base URL, token id and token secret.")
        self.base_url = base_url.strip().rstrip("/")
        self._http = session or requests.Session()
        self._http.verify = False
        self._http.headers.update({
            "Accept": "application/json",
            "Authorization": f"PVEAPIToken={token_id.strip()}={token_secret.strip()}",
        })
        self._timeout = timeout

    def _get(self, path: str, params: Optional[dict] = None) -> Any:
        resp = self._http.get(f"{self.base_url}{path}", params=params, timeout=self._timeout)
        if not resp.ok:
            body = resp.text if resp.text and resp.text.strip() else "(empty)"
            raise HypervisorError(f"Hypervisor request failed: {resp.status_code} {resp.reason}. Body: {body[:600]}")
        if not resp.text or not resp.text.strip():
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise HypervisorError(f"Hypervisor returned invalid JSON for {path}: {e}") from e

    def cluster_resources(self, type_filter: Optional[str] = None) -> Any:
        return self._get("/api2/json/cluster/resources", {"type": type_filter} if type_filter else None)

    def nodes(self) -> Any:
        return self._get("/api2/json/nodes")

    def node_guests(self, node: str, vm_type: str) -> Any:
        return self._get(f"/api2/json/nodes/{quote(node, safe='')}/{vm_type}")

    def guest_config(self, guest: GuestRef) -> Any:
        return self._get(f"/api2/json/nodes/{quote(guest.node, safe='')}/{guest.vm_type}/{guest.vmid}/config")


def _rows(payload: Any) -> List[dict]:
    data = payload.get("data") if isinstance(payload, dict) else None
    return [r for r in data if isinstance(r, dict)] if isinstance(data, list) else []


def _resource_refs(rows: List[dict]) -> List[GuestRef]:
    refs = []
    for r in rows:
        vm_type = parsers.as_strict_str(r.get("type"))
        node = parsers.as_strict_str(r.get("node"))
        vmid = parsers.as_int(r.get("vmid"))
        if not vm_type or not node or vmid is None:
            continue
        if vm_type.lower() not in GUEST_TYPES:
            continue
        refs.append(GuestRef(node, vm_type.lower(), vmid))
    return refs


def discover_guests(client: HypervisorClient) -> List[GuestRef]:
    """Guests from filtered resources, then unfiltered resources, then per-node listings."""
    refs = _resource_refs(_rows(client.cluster_resources("vm")))
    if not refs:
        refs = _resource_refs(_rows(client.cluster_resources()))
    if not refs:
        for n in _rows(client.nodes()):
            node = parsers.as_strict_str(n.get("node"))
            if not node:
                continue
            for vm_type in GUEST_TYPES:
                for r in _rows(client.node_guests(node, vm_type)):
                    vmid = parsers.as_int(r.get("vmid"))
                    if vmid is not None:
                        refs.append(GuestRef(node, vm_type, vmid))
    return list(dict.fromkeys(refs))


class HostMapper:
    """Assigns guests to their hypervisor host device by harvested MAC."""

    def __init__(self, store: RecordStore,
                 unprotect: Callable[[Optional[str]], Optional[str]] = lambda v: v,
                 client_factory: Callable[..., HypervisorClient] = HypervisorClient):
        self.store = store
        self.unprotect = unprotect
        self.client_factory = client_factory

    def run_once(self, cancel: Optional[threading.Event] = None) -> int:
        """Scan every enabled profile; return the interval to wait before the next scan."""
        with self.store.session_scope() as db:
            profiles = list(db.scalars(
                select(HypervisorProfile).where(HypervisorProfile.enabled.is_(True)).order_by(HypervisorProfile.name)
            ))
            if not profiles:
                return DEFAULT_INTERVAL_SEC
            interval = min(normalize_interval(p.interval_seconds) for p in profiles)

            hosts = list(db.scalars(select(Device).where(
                Device.is_vm_host.is_(True),
                Device.hypervisor_profile_id.isnot(None),
                Device.hypervisor_node.isnot(None),
            )))
            if not hosts:
                return interval

            client_by_mac: Dict[str, Device] = {}
            for d in db.scalars(select(Device).where(Device.mac_address.isnot(None)).order_by(Device.id)):
                mac = parsers.normalize_mac_or_none(d.mac_address)
                if mac:
                    client_by_mac.setdefault(mac, d)

            changes = 0
            for profile in profiles:
                if cancel is not None and cancel.is_set():
                    raise Cancelled()
                try:
                    changes += self._map_profile(profile, hosts, client_by_mac)
                except (HypervisorError, requests.RequestException) as e:
                    logger.warning(f"Hypervisor profile '{profile.name}' scan failed: {e}")

            if changes:
                logger.info(f"Host mapping updated {changes} client host assignment(s).")
            return interval

    def _map_profile(self, profile: HypervisorProfile, hosts: List[Device],
                     client_by_mac: Dict[str, Device]) -> int:
        secret = self.unprotect(profile.api_token_secret_protected)
        if not (profile.base_url or "").strip() or not (profile.api_token_id or "").strip() or not secret:
            logger.warning(f"Skipping hypervisor profile '{profile.name}' because URL/token settings are incomplete.")
            return 0

        host_by_node: Dict[str, HostRef] = {}
        for h in hosts:
            if h.hypervisor_profile_id != profile.id:
                continue
            for key in node_keys(h.hypervisor_node):
                host_by_node.setdefault(key, HostRef(h.id, h.name))
        if not host_by_node:
            logger.debug(f"Skipping hypervisor profile '{profile.name}': no host devices assigned.")
            return 0

        client = self.client_factory(profile.base_url, profile.api_token_id, secret)
        guests = discover_guests(client)
        logger.debug(f"Hypervisor profile '{profile.name}' discovered {len(guests)} guest(s)")

        changes = matched = errors = 0
        for guest in guests:
            host = None
            for key in node_keys(guest.node):
                host = host_by_node.get(key)
                if host:
                    break
            if host is None:
                continue

            try:
                config = client.guest_config(guest)
            except (HypervisorError, requests.RequestException) as e:
                errors += 1
                logger.warning(
                    f"Hypervisor profile '{profile.name}' could not read config for "
                    f"{guest.vm_type}/{guest.vmid} on node '{guest.node}': {e}"
                )
                continue

            data = config.get("data") if isinstance(config, dict) else None
            for mac in extract_macs(data):
                device = client_by_mac.get(mac)
                if device is None or device.is_vm_host:
                    continue
                matched += 1
                if (not profile.update_existing_host_assignments
                        and device.host_device_id is not None
                        and device.host_device_id != host.id):
                    continue
                if device.host_device_id != host.id:
                    device.host_device_id = host.id
                    changes += 1

        logger.debug(f"Hypervisor profile '{profile.name}' scan completed. Guests={len(guests)} Matched={matched}")
        if errors:
            logger.warning(f"Hypervisor profile '{profile.name}' had {errors} config read error(s); mapping may be incomplete.")
        return changes


class HostMappingUpdater(threading.Thread):
    """Interval/trigger loop for host mapping; interval comes from the last scan."""

    def __init__(self, mapper: HostMapper, trigger: Trigger,
                 stop_event: Optional[threading.Event] = None,
                 startup_delay: float = HOSTMAP_STARTUP_DELAY_SEC):
        super().__init__(name="host-mapping-updater", daemon=True)
        self.mapper = mapper
        self.trigger = trigger
        self.stop_event = stop_event or threading.Event()
        self.startup_delay = startup_delay
        self.interval = DEFAULT_INTERVAL_SEC

    def run(self):
        try:
            wait(self.startup_delay, self.stop_event)
            self.trigger.trigger_now()
            while not self.stop_event.is_set():
                try:
                    self.trigger.wait_for_trigger(normalize_interval(self.interval), self.stop_event)
                    self.interval = self.mapper.run_once(self.stop_event)
                except Cancelled:
                    raise
                except Exception:
                    logger.exception("Host mapping updater failed")
        except Cancelled:
            pass
        logger.info("Host mapping updater stopped")

    def stop(self):
        self.stop_event.set()
        self.trigger.wake()
