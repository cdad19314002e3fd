"""Lenient parsers for controller payloads.

Every read endpoint answers ``{"data": [...]}``. Fields are looked up through
ordered fallback lists kept in the ``*_FIELDS`` tables below, so supporting a
renamed controller property means touching a table, not the fusion logic.
A missing or malformed field is ``None``; it never aborts parsing. Strings,
numbers and booleans are coerced to the requested kind.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Mapping, NamedTuple, Optional, Tuple

from pydantic import BaseModel

STR = "str"
STRICT = "strict"  # only genuine JSON strings
INT = "int"
BOOL = "bool"
UNIX_TIME = "unix_time"


class FieldSpec(NamedTuple):
    kind: str
    names: Tuple[str, ...]


def _f(kind: str, *names: str) -> FieldSpec:
    return FieldSpec(kind, names)


INFRA_FIELDS = {
    "mac": _f(STR, "mac"),
    "name": _f(STR, "name", "display_name", "adopted_name"),
    "ip_address": _f(STR, "ip", "ip_address"),
    "model": _f(STR, "model"),
    "type": _f(STR, "type"),
    "version": _f(STR, "version"),
    "serial": _f(STR, "serial"),
    "is_upgradable": _f(BOOL, "upgradable"),
    "upgrade_to_version": _f(STR, "upgrade_to_firmware", "upgrade_to_version", "required_version"),
    "connected": _f(BOOL, "is_connected", "connected"),
    "state": _f(INT, "state"),
}

UPLINK_FIELDS = {
    "uplink_mac": _f(STRICT, "uplink_mac", "remote_mac"),
    "uplink_port": _f(INT, "uplink_remote_port", "remote_port"),
}

WAN_FIELDS = {
    "ip_address": _f(STR, "ip", "ip_address", "ipaddr"),
    "is_up": _f(BOOL, "up", "is_up", "link_up"),
    "status": _f(STR, "status"),
}

NETWORK_FIELDS = {
    "name": _f(STR, "name"),
    "purpose": _f(STR, "purpose"),
    "cidr": _f(STR, "ip_subnet"),
    "vlan_id": _f(INT, "vlan", "vlan_id"),
    "dhcp_enabled": _f(BOOL, "dhcpd_enabled"),
    "dhcp_start": _f(STR, "dhcpd_start"),
    "dhcp_end": _f(STR, "dhcpd_stop", "dhcpd_end"),
    "dns_enabled": _f(BOOL, "dhcpd_dns_enabled"),
    "dns1": _f(STR, "dhcpd_dns_1"),
    "dns2": _f(STR, "dhcpd_dns_2"),
}

KNOWN_CLIENT_FIELDS = {
    "mac": _f(STR, "mac"),
    "name": _f(STR, "name", "display_name", "device_name"),
    "hostname": _f(STR, "hostname", "host"),
    "fixed_ip": _f(STR, "fixed_ip"),
    "ip": _f(STR, "ip"),
    "last_ip": _f(STR, "last_ip"),
    "use_fixed_ip": _f(BOOL, "use_fixedip", "use_fixed_ip"),
    "last_seen": _f(UNIX_TIME, "last_seen"),
}

ACTIVE_CLIENT_FIELDS = {
    "mac": _f(STR, "mac"),
    "name": _f(STR, "name", "display_name"),
    "hostname": _f(STR, "hostname", "host"),
    "ip": _f(STR, "ip"),
}

CONNECTION_FIELDS = {
    "is_wired": _f(BOOL, "is_wired"),
    "uplink_name": _f(STR, "last_uplink_name"),
    "sw_mac": _f(STRICT, "sw_mac"),
    "port": _f(INT, "sw_port", "last_uplink_remote_port"),
    "ap_mac": _f(STRICT, "ap_mac"),
    "ssid": _f(STRICT, "essid"),
    "radio_table": _f(INT, "radio_table"),
    "last_radio": _f(STR, "last_radio"),
}

HINT_FIELDS = {
    "manufacturer": _f(STRICT, "oui", "vendor"),
    "model": _f(STRICT, "dev_id", "model"),
    "operating_system": _f(STRICT, "os_name", "os_class", "os"),
}

GATEWAY_MARKERS = ("ugw", "usg", "udm", "uxg")
DEFAULT_VLAN_NAMES = ("lan", "default", "default lan")


class ActiveClientStatus(BaseModel):
    connection_type: Optional[str] = None
    connection_detail: Optional[str] = None


class ControllerClient(BaseModel):
    mac: str
    name: Optional[str] = None
    hostname: Optional[str] = None
    ip_address: Optional[str] = None
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    operating_system: Optional[str] = None
    is_online: bool = False
    last_seen: Optional[datetime] = None
    connection_type: Optional[str] = None
    upstream_device_name: Optional[str] = None
    upstream_device_mac: Optional[str] = None
    upstream_connection: Optional[str] = None
    connection_detail: Optional[str] = None


class InfraDevice(BaseModel):
    mac: str
    name: Optional[str] = None
    ip_address: Optional[str] = None
    model: Optional[str] = None
    type: Optional[str] = None
    version: Optional[str] = None
    serial: Optional[str] = None
    uplink_mac: Optional[str] = None
    uplink_port: Optional[int] = None
    is_upgradable: Optional[bool] = None
    upgrade_to_version: Optional[str] = None
    is_online: bool = False


class WanInterface(BaseModel):
    gateway_name: Optional[str] = None
    gateway_mac: Optional[str] = None
    interface_name: str
    is_up: Optional[bool] = None
    ip_address: Optional[str] = None


class ControllerNetwork(BaseModel):
    name: Optional[str] = None
    cidr: Optional[str] = None
    purpose: Optional[str] = None
    vlan_id: Optional[int] = None
    dhcp_start: Optional[str] = None
    dhcp_end: Optional[str] = None
    dns1: Optional[str] = None
    dns2: Optional[str] = None


# ---------------- value coercion ----------------

def as_str(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return value if value.strip() else None
    return None


def as_strict_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        v = value.strip().lower()
        if v == "true":
            return True
        if v == "false":
            return False
    return None


def as_unix_time(value: Any) -> Optional[datetime]:
    seconds = as_int(value)
    if seconds is None or seconds <= 0:
        return None
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
    except (OverflowError, OSError, ValueError):
        return None


_COERCE = {
    STR: as_str,
    STRICT: as_strict_str,
    INT: as_int,
    BOOL: as_bool,
    UNIX_TIME: as_unix_time,
}


def read(obj: Any, spec: FieldSpec):
    """First non-null value among ``spec.names``, coerced to ``spec.kind``."""
    if not isinstance(obj, Mapping):
        return None
    coerce = _COERCE[spec.kind]
    for name in spec.names:
        if name in obj:
            value = coerce(obj[name])
            if value is not None:
                return value
    return None


def extract(obj: Any, table: Mapping[str, FieldSpec]) -> Dict[str, Any]:
    return {key: read(obj, spec) for key, spec in table.items()}


def data_items(payload: Any) -> Iterator[Mapping]:
    if not isinstance(payload, Mapping):
        return
    data = payload.get("data")
    if not isinstance(data, list):
        return
    for item in data:
        if isinstance(item, Mapping):
            yield item


def normalize_mac(mac: str) -> str:
    return mac.strip().lower().replace("-", ":").replace(".", ":")


def normalize_mac_or_none(mac: Optional[str]) -> Optional[str]:
    if not mac or not mac.strip():
        return None
    return normalize_mac(mac)


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _sort_key(*values: Optional[str]) -> str:
    for v in values:
        if v:
            return v.casefold()
    return ""


# ---------------- infrastructure devices ----------------

def build_device_name_map(payload: Any) -> Dict[str, str]:
    """MAC -> display name for every infra device, used to name upstreams."""
    names = {}
    for d in data_items(payload):
        mac = as_strict_str(d.get("mac"))
        if not mac:
            continue
        name = read(d, INFRA_FIELDS["name"]) or mac
        names[normalize_mac(mac)] = name.strip()
    return names


def parse_infra_devices(payload: Any) -> List[InfraDevice]:
    devices = []
    for d in data_items(payload):
        f = extract(d, INFRA_FIELDS)
        if not f["mac"]:
            continue
        uplink = extract(d.get("uplink"), UPLINK_FIELDS)

        is_online = f["connected"]
        if is_online is None:
            is_online = (f["state"] or 0) == 1

        devices.append(InfraDevice(
            mac=normalize_mac(f["mac"]),
            name=f["name"],
            ip_address=f["ip_address"],
            model=f["model"],
            type=f["type"],
            version=f["version"],
            serial=f["serial"],
            uplink_mac=uplink["uplink_mac"],
            uplink_port=uplink["uplink_port"],
            is_upgradable=f["is_upgradable"],
            upgrade_to_version=f["upgrade_to_version"],
            is_online=is_online,
        ))
    return sorted(devices, key=lambda x: _sort_key(x.name, x.mac))


def is_gateway_device(device_type: Optional[str], model: Optional[str]) -> bool:
    t = (device_type or "").lower()
    m = (model or "").lower()
    return any(marker in t or marker in m for marker in GATEWAY_MARKERS)


def _wan_from(obj: Any, gateway_name, gateway_mac, interface_name) -> Optional[WanInterface]:
    if not isinstance(obj, Mapping):
        return None
    f = extract(obj, WAN_FIELDS)
    is_up = f["is_up"]
    if is_up is None and f["status"]:
        is_up = f["status"].strip().lower() == "up"
    if not f["ip_address"] and is_up is None:
        return None
    return WanInterface(
        gateway_name=gateway_name,
        gateway_mac=normalize_mac_or_none(gateway_mac),
        interface_name=interface_name,
        is_up=is_up,
        ip_address=f["ip_address"],
    )


def parse_wan_interfaces(payload: Any) -> List[WanInterface]:
    wans = []
    for d in data_items(payload):
        f = extract(d, INFRA_FIELDS)
        if not is_gateway_device(f["type"], f["model"]):
            continue
        for interface_name in ("wan1", "wan2", "wan"):
            wan = _wan_from(d.get(interface_name), f["name"], f["mac"], interface_name)
            if wan:
                wans.append(wan)

        uplink = d.get("uplink")
        if isinstance(uplink, Mapping):
            ip = read(uplink, WAN_FIELDS["ip_address"])
            up = read(uplink, _f(BOOL, "up", "is_up"))
            if ip or up is not None:
                wans.append(WanInterface(
                    gateway_name=f["name"],
                    gateway_mac=normalize_mac_or_none(f["mac"]),
                    interface_name="uplink",
                    is_up=up,
                    ip_address=ip,
                ))
    return sorted(wans, key=lambda w: (_sort_key(w.gateway_name, w.gateway_mac), w.interface_name.casefold()))


# ---------------- networks ----------------

def _default_vlan(vlan: Optional[int], name: Optional[str], purpose: Optional[str]) -> Optional[int]:
    if vlan is not None:
        return vlan
    if purpose and purpose.strip().lower() == "corporate":
        return 1
    if name and name.strip().lower() in DEFAULT_VLAN_NAMES:
        return 1
    return None


def parse_networks(payload: Any) -> List[ControllerNetwork]:
    networks = []
    for n in data_items(payload):
        f = extract(n, NETWORK_FIELDS)
        if not f["cidr"]:
            continue

        dhcp_start = dhcp_end = None
        if f["dhcp_enabled"] is True:
            dhcp_start, dhcp_end = f["dhcp_start"], f["dhcp_end"]

        if f["dns_enabled"] is True:
            dns1, dns2 = f["dns1"], f["dns2"]
        else:
            dns1, dns2 = "Auto", None

        networks.append(ControllerNetwork(
            name=f["name"],
            cidr=f["cidr"],
            purpose=f["purpose"],
            vlan_id=_default_vlan(f["vlan_id"], f["name"], f["purpose"]),
            dhcp_start=dhcp_start,
            dhcp_end=dhcp_end,
            dns1=dns1,
            dns2=dns2,
        ))
    return networks


# ---------------- clients ----------------

def map_band(radio_table: Optional[int], last_radio: Optional[str]) -> Optional[str]:
    if radio_table == 0:
        return "2.4 GHz"
    if radio_table == 1:
        return "5 GHz"
    if radio_table == 2:
        return "6 GHz"

    radio = (last_radio or "").lower()
    if "6" in radio:
        return "6 GHz"
    if "5" in radio or "na" in radio:
        return "5 GHz"
    if "2" in radio or "ng" in radio:
        return "2.4 GHz"
    return None


class Connection(NamedTuple):
    connection_type: str
    upstream_name: Optional[str]
    upstream_mac: Optional[str]
    upstream_connection: Optional[str]
    detail: Optional[str]


def parse_connection(client: Mapping, device_names: Optional[Mapping[str, str]] = None) -> Connection:
    f = extract(client, CONNECTION_FIELDS)

    def resolve_name(mac):
        if mac and device_names:
            mapped = device_names.get(normalize_mac(mac))
            if mapped:
                return mapped
        return _clean(f["uplink_name"])

    if f["is_wired"] is True:
        upstream_mac = f["sw_mac"]
        upstream_name = resolve_name(upstream_mac)
        upstream_conn = f"port {f['port']}" if f["port"] is not None else None
        connection_type = "Wired"
    else:
        upstream_mac = f["ap_mac"]
        upstream_name = resolve_name(upstream_mac) or "AP"
        band = map_band(f["radio_table"], f["last_radio"])
        ssid = _clean(f["ssid"])
        if ssid and band:
            upstream_conn = f"{ssid} @ {band}"
        else:
            upstream_conn = ssid or band
        connection_type = "WiFi"

    detail = " | ".join(p for p in (_clean(upstream_name), upstream_conn) if p) or None
    return Connection(connection_type, upstream_name, upstream_mac, upstream_conn, detail)


def parse_active_status(payload: Any,
                        device_names: Optional[Mapping[str, str]] = None) -> Dict[str, ActiveClientStatus]:
    """MAC -> connection info for every currently active client."""
    statuses = {}
    for c in data_items(payload):
        mac = read(c, ACTIVE_CLIENT_FIELDS["mac"])
        if not mac:
            continue
        conn = parse_connection(c, device_names)
        statuses[normalize_mac(mac)] = ActiveClientStatus(
            connection_type=conn.connection_type,
            connection_detail=conn.detail,
        )
    return statuses


def _first(*values: Optional[str]) -> Optional[str]:
    for v in values:
        if v:
            return v
    return None


def merge_clients(active_payload: Any, known_payload: Any,
                  device_names: Optional[Mapping[str, str]] = None,
                  now: Optional[datetime] = None) -> List[ControllerClient]:
    """Known clients overlaid with active ones; active brings connection info."""
    now = now or datetime.now(timezone.utc).replace(tzinfo=None)
    by_mac: Dict[str, ControllerClient] = {}

    for c in data_items(known_payload):
        f = extract(c, KNOWN_CLIENT_FIELDS)
        if not f["mac"]:
            continue
        if f["use_fixed_ip"] is True and f["fixed_ip"]:
            ip = f["fixed_ip"]
        else:
            ip = _first(f["ip"], f["last_ip"], f["fixed_ip"])
        mac = normalize_mac(f["mac"])
        by_mac[mac] = ControllerClient(
            mac=mac,
            name=f["name"],
            hostname=f["hostname"],
            ip_address=ip,
            last_seen=f["last_seen"],
            **extract(c, HINT_FIELDS),
        )

    for c in data_items(active_payload):
        f = extract(c, ACTIVE_CLIENT_FIELDS)
        if not f["mac"]:
            continue
        mac = normalize_mac(f["mac"])
        hints = extract(c, HINT_FIELDS)
        conn = parse_connection(c, device_names)
        existing = by_mac.get(mac)

        if existing is None:
            by_mac[mac] = ControllerClient(
                mac=mac,
                name=f["name"],
                hostname=f["hostname"],
                ip_address=f["ip"],
                is_online=True,
                last_seen=now,
                connection_type=conn.connection_type,
                upstream_device_name=conn.upstream_name,
                upstream_device_mac=conn.upstream_mac,
                upstream_connection=conn.upstream_connection,
                connection_detail=conn.detail,
                **hints,
            )
            continue

        by_mac[mac] = existing.model_copy(update={
            "name": _first(existing.name, f["name"]),
            "hostname": _first(f["hostname"], existing.hostname),
            "ip_address": _first(f["ip"], existing.ip_address),
            "manufacturer": _first(hints["manufacturer"], existing.manufacturer),
            "model": _first(hints["model"], existing.model),
            "operating_system": _first(hints["operating_system"], existing.operating_system),
            "is_online": True,
            "last_seen": now,
            "connection_type": _first(conn.connection_type, existing.connection_type),
            "upstream_device_name": _first(conn.upstream_name, existing.upstream_device_name),
            "upstream_device_mac": _first(conn.upstream_mac, existing.upstream_device_mac),
            "upstream_connection": _first(conn.upstream_connection, existing.upstream_connection),
            "connection_detail": _first(conn.detail, existing.connection_detail),
        })

    return sorted(by_mac.values(), key=lambda x: _sort_key(x.name, x.hostname, x.mac))
