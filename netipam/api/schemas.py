from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from .models import MonitorMode


class SettingsSnapshot(BaseModel):
    """Immutable view of the runtime settings row.

    Consumers swap the whole snapshot when settings change; fields are never
    mutated in place.
    """
    model_config = ConfigDict(frozen=True, from_attributes=True)

    updater_enabled: bool = False
    updater_interval_seconds: int = 60
    update_connection_fields_when_online: bool = True
    sync_ip_address: bool = True
    sync_online_status: bool = True
    sync_name: bool = False
    sync_hostname: bool = False
    sync_manufacturer: bool = False
    sync_model: bool = False

    controller_base_url: Optional[str] = None
    controller_site: Optional[str] = None
    controller_username: Optional[str] = None
    controller_password: Optional[str] = None
    controller_auth_mode: Literal["Session", "ApiKey"] = "Session"
    controller_api_key: Optional[str] = None

    version: Optional[datetime] = None

    @field_validator("controller_auth_mode", mode="before")
    @classmethod
    def normalize_auth_mode(cls, v):
        if isinstance(v, str) and v.strip().lower() == "apikey":
            return "ApiKey"
        return "Session"


class SettingsUpdate(BaseModel):
    updater_enabled: Optional[bool] = None
    updater_interval_seconds: Optional[int] = Field(default=None, ge=0)
    update_connection_fields_when_online: Optional[bool] = None
    sync_ip_address: Optional[bool] = None
    sync_online_status: Optional[bool] = None
    sync_name: Optional[bool] = None
    sync_hostname: Optional[bool] = None
    sync_manufacturer: Optional[bool] = None
    sync_model: Optional[bool] = None
    controller_base_url: Optional[str] = None
    controller_site: Optional[str] = None
    controller_username: Optional[str] = None
    controller_auth_mode: Optional[str] = None


class UpdaterStatusOut(BaseModel):
    enabled: bool
    last_run: Optional[datetime] = None
    last_changed_count: int = 0
    last_error: Optional[str] = None


class ConnectionTestOut(BaseModel):
    ok: bool
    message: str


class DeviceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    hostname: Optional[str] = None
    mac_address: Optional[str] = None
    ip_address: Optional[str] = None
    device_type: Optional[str] = None
    is_online: bool
    is_status_tracked: bool
    ignore_offline: bool
    monitor_mode: MonitorMode
    connection_type: Optional[str] = None
    connection_detail: Optional[str] = None
    upstream_device_name: Optional[str] = None
    upstream_device_mac: Optional[str] = None
    upstream_connection: Optional[str] = None
    host_device_id: Optional[int] = None
    last_seen_at: Optional[datetime] = None
    last_online_at: Optional[datetime] = None


class StatusEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    device_id: int
    is_online: bool
    changed_at: datetime
    source: Optional[str] = None


class DailyUptimeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    date: date
    online_seconds: int
    observed_seconds: int

    @computed_field
    @property
    def uptime_percent(self) -> Optional[float]:
        if self.observed_seconds <= 0:
            return None
        return round(100.0 * self.online_seconds / self.observed_seconds, 2)


class IpHistoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ip_address: str
    port: Optional[int] = None
    source: Optional[str] = None
    first_seen: datetime
    last_seen: Optional[datetime] = None


class OfflineAlertOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    device_id: int
    name_at_time: Optional[str] = None
    ip_at_time: Optional[str] = None
    went_offline_at: datetime
    came_online_at: Optional[datetime] = None
    is_acknowledged: bool
    acknowledged_at: Optional[datetime] = None


class FirmwareAlertOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    device_id: int
    name_at_time: Optional[str] = None
    current_version: Optional[str] = None
    target_version: Optional[str] = None
    detected_at: datetime
    resolved_at: Optional[datetime] = None
    is_acknowledged: bool


class DiscoveryAlertOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    mac: str
    name: Optional[str] = None
    hostname: Optional[str] = None
    ip_address: Optional[str] = None
    connection_detail: Optional[str] = None
    detected_at: datetime
    is_acknowledged: bool


class SubnetInfoOut(BaseModel):
    id: int
    name: str
    cidr: str
    network: str
    broadcast: str
    first_usable: Optional[str] = None
    last_usable: Optional[str] = None
    total_addresses: int
    usable_addresses: int
    vlan_id: Optional[int] = None
    dhcp_range_start: Optional[str] = None
    dhcp_range_end: Optional[str] = None
    dns1: Optional[str] = None
    dns2: Optional[str] = None


class WanInterfaceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    gateway_name: Optional[str] = None
    gateway_mac: Optional[str] = None
    interface_name: str
    is_up: Optional[bool] = None
    ip_address: Optional[str] = None
    updated_at: datetime


class RunLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    changed_count: int
    error: Optional[str] = None
    source: Optional[str] = None


class TopologyRowOut(BaseModel):
    level: int
    parent: Optional[str] = None
    device_id: Optional[int] = None
    name: str
    upstream: Optional[str] = None
    status: str


class TopologyOut(BaseModel):
    rows: List[TopologyRowOut]
    unassigned: List[TopologyRowOut]


class SettingsIn(SettingsUpdate):
    controller_password: Optional[str] = None
    controller_api_key: Optional[str] = None


class SettingsOut(BaseModel):
    updater_enabled: bool
    updater_interval_seconds: int
    update_connection_fields_when_online: bool
    sync_ip_address: bool
    sync_online_status: bool
    sync_name: bool
    sync_hostname: bool
    sync_manufacturer: bool
    sync_model: bool
    controller_base_url: Optional[str] = None
    controller_site: Optional[str] = None
    controller_username: Optional[str] = None
    controller_auth_mode: str
    has_password: bool
    has_api_key: bool

    @classmethod
    def from_snapshot(cls, s: SettingsSnapshot) -> "SettingsOut":
        return cls(
            **s.model_dump(exclude={"controller_password", "controller_api_key", "version"}),
            has_password=bool(s.controller_password),
            has_api_key=bool(s.controller_api_key),
        )
