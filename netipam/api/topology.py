"""Best-effort parent/child topology among devices.

All devices are loaded into an id-indexed table once; parent pointers are
resolved against that table and the tree walk keeps a visited set, so bad
manual overrides that form cycles can never loop.
"""
import re
from typing import Dict, Iterable, List, NamedTuple, Optional

from .models import Device

UNASSIGNED_LABEL = "Unassigned / Unknown"
GATEWAY_WORDS = ("gateway", "router")

_NON_ALNUM = re.compile(r"[^0-9A-Za-z]")


class TopologyRow(NamedTuple):
    level: int
    parent: Optional[str]
    device_id: Optional[int]
    name: str
    upstream: Optional[str]
    status: str


class Topology(NamedTuple):
    rows: List[TopologyRow]
    unassigned: List[TopologyRow]


class _Item(NamedTuple):
    device: Device
    parent_id: Optional[int]
    upstream_name: Optional[str]
    upstream_conn: Optional[str]


def normalize_mac(raw: Optional[str]) -> str:
    if not raw:
        return ""
    return _NON_ALNUM.sub("", raw).upper()


def extract_upstream_name(detail: Optional[str]) -> Optional[str]:
    """Name before ``|`` or before ``" ("`` in a free-text connection detail."""
    if not detail or not detail.strip():
        return None
    text = detail.strip()
    pipe = text.find("|")
    if pipe > 0:
        return text[:pipe].strip() or None
    paren = text.find(" (")
    if paren > 0:
        return text[:paren].strip() or None
    return None


def is_gateway(d: Device) -> bool:
    text = f"{d.device_type or ''} {d.name or ''}".lower()
    return any(w in text for w in GATEWAY_WORDS)


def status_label(d: Device) -> str:
    if not d.is_status_tracked:
        return "Not Tracked"
    return "Online" if d.is_online else "Offline"


class TopologyResolver:
    def __init__(self, devices: Iterable[Device]):
        self.devices = list(devices)
        self.by_id: Dict[int, Device] = {d.id: d for d in self.devices}
        self.by_name: Dict[str, Device] = {}
        self.by_mac: Dict[str, Device] = {}
        for d in self.devices:
            if d.name and d.name.strip():
                self.by_name.setdefault(d.name.strip().casefold(), d)
            mac = normalize_mac(d.mac_address)
            if mac:
                self.by_mac.setdefault(mac, d)

    def _ref(self, d: Device, ref_id: Optional[int]) -> Optional[Device]:
        if ref_id is None or ref_id == d.id:
            return None
        return self.by_id.get(ref_id)

    def _named(self, d: Device, name: Optional[str]) -> Optional[Device]:
        if not name or not name.strip():
            return None
        found = self.by_name.get(name.strip().casefold())
        return found if found is not None and found.id != d.id else None

    def resolve_parent(self, d: Device) -> Optional[Device]:
        if d.is_topology_root:
            return None
        for ref in (d.host_device_id, d.manual_upstream_device_id, d.parent_device_id):
            parent = self._ref(d, ref)
            if parent is not None:
                return parent

        parent = self._named(d, d.upstream_device_name)
        if parent is not None:
            return parent
        parent = self._named(d, extract_upstream_name(d.connection_detail))
        if parent is not None:
            return parent

        mac = normalize_mac(d.upstream_device_mac)
        if mac:
            found = self.by_mac.get(mac)
            if found is not None and found.id != d.id:
                return found
        return None

    def _item(self, d: Device) -> _Item:
        parent = self.resolve_parent(d)
        upstream_name = (
            parent.name if parent is not None
            else d.upstream_device_name or extract_upstream_name(d.connection_detail)
        )
        upstream_conn = "Hosted" if d.host_device_id is not None else d.upstream_connection or d.connection_detail
        return _Item(d, parent.id if parent is not None else None, upstream_name, upstream_conn)

    @staticmethod
    def _is_unassigned(item: _Item) -> bool:
        d = item.device
        return (
            item.parent_id is None
            and not (item.upstream_name or "").strip()
            and not (item.upstream_conn or "").strip()
            and not d.is_topology_root
            and not is_gateway(d)
        )

    def build(self) -> Topology:
        items = [self._item(d) for d in self.devices]

        def by_name(i: _Item) -> str:
            return (i.device.name or "").casefold()

        children: Dict[int, List[_Item]] = {}
        for item in items:
            if item.parent_id is not None:
                children.setdefault(item.parent_id, []).append(item)
        for group in children.values():
            group.sort(key=by_name)

        unassigned = sorted((i for i in items if self._is_unassigned(i)), key=by_name)
        unassigned_ids = {i.device.id for i in unassigned}
        roots = sorted(
            (i for i in items if i.device.id not in unassigned_ids and i.parent_id is None),
            key=by_name,
        )

        visited = set()

        def walk(item: _Item, level: int, parent_label: Optional[str], out: List[TopologyRow]):
            stack = [(item, level, parent_label)]
            while stack:
                cur, lvl, plabel = stack.pop()
                if cur.device.id in visited:
                    continue
                visited.add(cur.device.id)
                upstream = " | ".join(p for p in (cur.upstream_name, cur.upstream_conn) if p) or None
                out.append(TopologyRow(lvl, plabel, cur.device.id, cur.device.name, upstream,
                                       status_label(cur.device)))
                for child in reversed(children.get(cur.device.id, [])):
                    stack.append((child, lvl + 1, cur.device.name))

        rows: List[TopologyRow] = []
        for root in roots:
            walk(root, 0, None, rows)

        bucket: List[TopologyRow] = []
        for item in unassigned:
            walk(item, 1, UNASSIGNED_LABEL, bucket)

        # Members of parent cycles never reach a root; emit them at top level.
        for item in sorted(items, key=by_name):
            if item.device.id not in visited and item.device.id not in unassigned_ids:
                walk(item, 0, None, rows)
        return Topology(rows, bucket)


def build_topology(devices: Iterable[Device]) -> Topology:
    return TopologyResolver(devices).build()
