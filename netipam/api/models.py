import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, Date, DateTime, Enum, ForeignKey, Index, Integer, String, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base


def utcnow():
    # Stored naive; every timestamp column holds UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


class MonitorMode(str, enum.Enum):
    NORMAL = "Normal"
    PING_ONLY = "PingOnly"
    PORT_ONLY = "PortOnly"
    PING_AND_PORT = "PingAndPort"
    HTTP_ONLY = "HttpOnly"
    PING_AND_HTTP = "PingAndHttp"

    @property
    def requires_ping(self):
        return self in (MonitorMode.PING_ONLY, MonitorMode.PING_AND_PORT, MonitorMode.PING_AND_HTTP)

    @property
    def requires_port(self):
        return self in (MonitorMode.PORT_ONLY, MonitorMode.PING_AND_PORT)

    @property
    def requires_http(self):
        return self in (MonitorMode.HTTP_ONLY, MonitorMode.PING_AND_HTTP)


def _enum_values(cls):
    return [m.value for m in cls]


class Device(Base):
    __tablename__ = "devices"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, default="")
    hostname = Column(String, nullable=True)
    mac_address = Column(String, unique=True, nullable=True, index=True)
    ip_address = Column(String, nullable=True)
    device_type = Column(String, nullable=True)  # free text, e.g. "Gateway", "Switch", "Laptop"
    manufacturer = Column(String, nullable=True)
    model = Column(String, nullable=True)
    operating_system = Column(String, nullable=True)
    subnet_id = Column(Integer, ForeignKey("subnets.id"), nullable=True)

    # Upstream info, either reported by the controller or entered manually
    connection_type = Column(String, nullable=True)
    connection_detail = Column(String, nullable=True)
    upstream_device_name = Column(String, nullable=True)
    upstream_device_mac = Column(String, nullable=True)
    upstream_connection = Column(String, nullable=True)  # "port 4" or "SSID @ 5 GHz"
    host_device_id = Column(Integer, ForeignKey("devices.id"), nullable=True)
    parent_device_id = Column(Integer, ForeignKey("devices.id"), nullable=True)
    manual_upstream_device_id = Column(Integer, ForeignKey("devices.id"), nullable=True)
    is_topology_root = Column(Boolean, default=False, nullable=False)

    # Virtualization host mapping
    is_vm_host = Column(Boolean, default=False, nullable=False)
    hypervisor_profile_id = Column(Integer, ForeignKey("hypervisor_profiles.id"), nullable=True)
    hypervisor_node = Column(String, nullable=True)

    is_online = Column(Boolean, default=False, nullable=False)
    is_status_tracked = Column(Boolean, default=True, nullable=False)
    ignore_offline = Column(Boolean, default=False, nullable=False)
    monitor_mode = Column(
        Enum(MonitorMode, native_enum=False, values_callable=_enum_values),
        default=MonitorMode.NORMAL,
        nullable=False,
    )
    monitor_port = Column(Integer, nullable=True)
    monitor_use_https = Column(Boolean, default=False, nullable=False)
    monitor_http_path = Column(String, nullable=True)

    last_seen_at = Column(DateTime, nullable=True)
    last_online_at = Column(DateTime, nullable=True)
    last_status_rollup_at = Column(DateTime, nullable=True)  # uptime watermark


class Subnet(Base):
    __tablename__ = "subnets"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, default="")
    cidr = Column(String, nullable=False)
    description = Column(String, nullable=True)
    dhcp_range_start = Column(String, nullable=True)
    dhcp_range_end = Column(String, nullable=True)
    vlan_id = Column(Integer, nullable=True)
    dns1 = Column(String, nullable=True)
    dns2 = Column(String, nullable=True)


class StatusEvent(Base):
    __tablename__ = "status_events"
    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(Integer, ForeignKey("devices.id", ondelete="CASCADE"), nullable=False, index=True)
    is_online = Column(Boolean, nullable=False)
    changed_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    source = Column(String, nullable=True)  # InfraConnected, ActiveClient, Ping, CustomMonitor


class DailyUptime(Base):
    __tablename__ = "daily_uptime"
    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(Integer, ForeignKey("devices.id", ondelete="CASCADE"), nullable=False)
    date = Column(Date, nullable=False)  # local calendar day
    online_seconds = Column(Integer, nullable=False, default=0)
    observed_seconds = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("device_id", "date", name="uq_daily_uptime_device_date"),
    )


class OfflineAlert(Base):
    __tablename__ = "offline_alerts"
    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(Integer, ForeignKey("devices.id", ondelete="CASCADE"), nullable=False, index=True)
    name_at_time = Column(String, nullable=True)
    ip_at_time = Column(String, nullable=True)
    went_offline_at = Column(DateTime, nullable=False)
    came_online_at = Column(DateTime, nullable=True)  # null while open
    is_acknowledged = Column(Boolean, default=False, nullable=False)
    acknowledged_at = Column(DateTime, nullable=True)
    source = Column(String, nullable=True)


class FirmwareAlert(Base):
    __tablename__ = "firmware_alerts"
    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(Integer, ForeignKey("devices.id", ondelete="CASCADE"), nullable=False, index=True)
    name_at_time = Column(String, nullable=True)
    mac_at_time = Column(String, nullable=True)
    model_at_time = Column(String, nullable=True)
    current_version = Column(String, nullable=True)
    target_version = Column(String, nullable=True)
    detected_at = Column(DateTime, nullable=False)
    resolved_at = Column(DateTime, nullable=True)  # null while open
    is_acknowledged = Column(Boolean, default=False, nullable=False)
    acknowledged_at = Column(DateTime, nullable=True)
    source = Column(String, nullable=True)


class DiscoveryAlert(Base):
    __tablename__ = "discovery_alerts"
    id = Column(Integer, primary_key=True, index=True)
    mac = Column(String, nullable=False, index=True)
    name = Column(String, nullable=True)
    hostname = Column(String, nullable=True)
    ip_address = Column(String, nullable=True)
    connection_type = Column(String, nullable=True)
    upstream_device_name = Column(String, nullable=True)
    upstream_device_mac = Column(String, nullable=True)
    upstream_connection = Column(String, nullable=True)
    connection_detail = Column(String, nullable=True)
    is_online = Column(Boolean, default=True, nullable=False)
    detected_at = Column(DateTime, nullable=False)
    is_acknowledged = Column(Boolean, default=False, nullable=False)
    acknowledged_at = Column(DateTime, nullable=True)
    source = Column(String, nullable=True)


class IgnoredDiscoveryMac(Base):
    __tablename__ = "ignored_discovery_macs"
    id = Column(Integer, primary_key=True, index=True)
    mac = Column(String, unique=True, nullable=False)
    ignored_at = Column(DateTime, nullable=False, default=utcnow)
    source = Column(String, nullable=True)


class IpHistory(Base):
    __tablename__ = "ip_history"
    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(Integer, ForeignKey("devices.id", ondelete="CASCADE"), nullable=False)
    ip_address = Column(String, nullable=False)
    port = Column(Integer, nullable=True)
    source = Column(String, nullable=True)
    first_seen = Column(DateTime, nullable=False, default=utcnow)
    last_seen = Column(DateTime, nullable=True)  # null = current interval

    __table_args__ = (
        Index("ix_ip_history_device_open", "device_id", "last_seen"),
    )


class RunLog(Base):
    __tablename__ = "run_logs"
    id = Column(Integer, primary_key=True, index=True)
    started_at = Column(DateTime, nullable=False, index=True)
    finished_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    changed_count = Column(Integer, nullable=False, default=0)
    error = Column(String, nullable=True)
    source = Column(String, nullable=True)

    changes = relationship("ChangeLog", back_populates="run", cascade="all, delete-orphan")


class ChangeLog(Base):
    __tablename__ = "change_logs"
    id = Column(Integer, primary_key=True, index=True)
    run_id = Column(Integer, ForeignKey("run_logs.id", ondelete="CASCADE"), nullable=False)
    device_id = Column(Integer, nullable=True)
    device_name = Column(String, nullable=True)
    ip_address = Column(String, nullable=True)
    field_name = Column(String, nullable=False)
    old_value = Column(String, nullable=True)
    new_value = Column(String, nullable=True)

    run = relationship("RunLog", back_populates="changes")


class WanInterfaceStatus(Base):
    __tablename__ = "wan_interface_status"
    id = Column(Integer, primary_key=True, index=True)
    gateway_name = Column(String, nullable=True)
    gateway_mac = Column(String, nullable=True)
    interface_name = Column(String, nullable=False)
    is_up = Column(Boolean, nullable=True)
    ip_address = Column(String, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class HypervisorProfile(Base):
    __tablename__ = "hypervisor_profiles"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, default="")
    enabled = Column(Boolean, default=True, nullable=False)
    base_url = Column(String, nullable=False, default="")
    api_token_id = Column(String, nullable=False, default="")
    api_token_secret_protected = Column(String, nullable=True)
    interval_seconds = Column(Integer, nullable=False, default=300)
    update_existing_host_assignments = Column(Boolean, default=True, nullable=False)


class AppSettings(Base):
    __tablename__ = "app_settings"
    id = Column(Integer, primary_key=True)  # singleton row, always 1

    updater_enabled = Column(Boolean, default=False, nullable=False)
    updater_interval_seconds = Column(Integer, default=60, nullable=False)
    update_connection_fields_when_online = Column(Boolean, default=True, nullable=False)
    sync_ip_address = Column(Boolean, default=True, nullable=False)
    sync_online_status = Column(Boolean, default=True, nullable=False)
    sync_name = Column(Boolean, default=False, nullable=False)
    sync_hostname = Column(Boolean, default=False, nullable=False)
    sync_manufacturer = Column(Boolean, default=False, nullable=False)
    sync_model = Column(Boolean, default=False, nullable=False)

    controller_base_url = Column(String, nullable=True)
    controller_site = Column(String, nullable=True)
    controller_username = Column(String, nullable=True)
    controller_password_protected = Column(String, nullable=True)
    controller_auth_mode = Column(String, default="Session", nullable=False)  # Session | ApiKey
    controller_api_key_protected = Column(String, nullable=True)

    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
