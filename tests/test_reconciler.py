import threading
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest
from sqlalchemy import select

from netipam.agent.control import UpdaterControl
from netipam.agent.controller import ControllerHTTPError
from netipam.agent.reconciler import (
    ACTIVE_CLIENT, CUSTOM_MONITOR, INFRA_CONNECTED, PING, Reconciler, Verdict, fuse_signal,
)
from netipam.agent.parsers import ActiveClientStatus, InfraDevice
from netipam.api import models
from netipam.api.store import RecordStore

NOW = datetime(2026, 3, 10, 12, 0, 0)

MAC1 = "aa:00:00:00:00:01"
MAC2 = "aa:00:00:00:00:02"
NEW_MAC = "bb:00:00:00:00:99"


def envelope(*items):
    return {"data": list(items)}


def make_prober(alive=False, tcp=False, http=False):
    prober = Mock()
    prober.is_alive.return_value = alive
    prober.is_tcp_open.return_value = tcp
    prober.is_http_ok.return_value = http
    return prober


class Env:
    def __init__(self, session_factory, snap, prober=None, control=None, concurrency=4):
        self.session_factory = session_factory
        self.snap = snap
        self.client = Mock()
        self.set_payloads()
        self.prober = prober or make_prober()
        self.reconciler = Reconciler(
            self.client, RecordStore(session_factory), lambda: self.snap,
            control=control, prober=self.prober, tz=timezone.utc, concurrency=concurrency,
        )

    def set_payloads(self, active=(), known=(), devices=(), networks=()):
        self.client.get_active_clients.return_value = envelope(*active)
        self.client.get_known_clients.return_value = envelope(*known)
        self.client.get_devices.return_value = envelope(*devices)
        self.client.get_networks.return_value = envelope(*networks)

    def run(self, at=NOW):
        return self.reconciler.run_pass(at)

    def all(self, model):
        with self.session_factory() as s:
            return list(s.scalars(select(model).order_by(model.id)))

    def device(self, device_id):
        with self.session_factory() as s:
            return s.get(models.Device, device_id)


@pytest.fixture
def env(session_factory, snapshot):
    return Env(session_factory, snapshot())


class TestFuseSignal:
    def device(self, **kw):
        kw.setdefault("mac_address", MAC1)
        kw.setdefault("monitor_mode", models.MonitorMode.NORMAL)
        return models.Device(**kw)

    def test_infra_connected_wins(self):
        infra = {MAC1: InfraDevice(mac=MAC1, is_online=True)}
        active = {MAC1: ActiveClientStatus()}
        assert fuse_signal(self.device(), infra, active) == Verdict(True, INFRA_CONNECTED)

    def test_disconnected_infra_falls_back_to_active_client(self):
        infra = {MAC1: InfraDevice(mac=MAC1, is_online=False)}
        active = {MAC1: ActiveClientStatus()}
        assert fuse_signal(self.device(mac_address="AA-00-00-00-00-01"), infra, active) == Verdict(True, ACTIVE_CLIENT)

    def test_no_signal_means_probe(self):
        assert fuse_signal(self.device(), {}, {}) is None

    def test_custom_mode_always_probes(self):
        infra = {MAC1: InfraDevice(mac=MAC1, is_online=True)}
        assert fuse_signal(self.device(monitor_mode=models.MonitorMode.PING_ONLY), infra, {}) is None


class TestReachability:
    def test_infra_device_online_without_probe(self, env, make_device):
        d = make_device(name="Switch", mac_address=MAC1)
        env.set_payloads(devices=[{"mac": MAC1, "name": "Switch", "state": 1}])

        result = env.run()

        assert result.changed_count == 1
        assert result.probed == 0
        assert result.sources == {INFRA_CONNECTED: 1}
        env.prober.is_alive.assert_not_called()
        (event,) = env.all(models.StatusEvent)
        assert event.device_id == d.id
        assert event.is_online is True
        assert event.source == INFRA_CONNECTED
        assert env.device(d.id).is_online is True
        assert env.device(d.id).last_online_at == NOW

    def test_active_client_updates_connection_fields(self, env, make_device):
        d = make_device(name="Laptop", mac_address=MAC1)
        env.set_payloads(
            active=[{"mac": MAC1, "is_wired": True, "sw_mac": MAC2, "sw_port": 4}],
            devices=[{"mac": MAC2, "name": "Core", "state": 1}],
        )

        result = env.run()

        assert result.sources == {ACTIVE_CLIENT: 1}
        device = env.device(d.id)
        assert device.connection_type == "Wired"
        assert device.connection_detail == "Core | port 4"
        assert device.upstream_device_name == "Core"
        assert device.upstream_device_mac == MAC2
        assert device.upstream_connection == "port 4"

    def test_host_override_keeps_upstream_fields(self, env, make_device):
        host = make_device(name="Hypervisor")
        d = make_device(name="VM", mac_address=MAC1, host_device_id=host.id, upstream_device_name="Hypervisor")
        env.set_payloads(active=[{"mac": MAC1, "is_wired": True, "sw_mac": MAC2, "sw_port": 4}])

        env.run()

        device = env.device(d.id)
        assert device.connection_type == "Wired"
        assert device.upstream_device_name == "Hypervisor"

    def test_ping_fallback(self, session_factory, snapshot, make_device):
        env = Env(session_factory, snapshot(), prober=make_prober(alive=True))
        d = make_device(name="Printer", mac_address=MAC1, ip_address="10.0.0.4")

        result = env.run()

        assert result.probed == 1
        assert result.sources == {PING: 1}
        env.prober.is_alive.assert_called_once_with("10.0.0.4")
        assert env.device(d.id).is_online is True

    def test_ping_checks_bounded_by_concurrency(self, session_factory, snapshot, make_device):
        lock = threading.Lock()
        in_flight = [0]
        peak = [0]

        def is_alive(ip):
            with lock:
                in_flight[0] += 1
                peak[0] = max(peak[0], in_flight[0])
            time.sleep(0.05)
            with lock:
                in_flight[0] -= 1
            return True

        pinger = make_prober()
        pinger.is_alive.side_effect = is_alive
        env = Env(session_factory, snapshot(), prober=pinger, concurrency=2)
        devices = [make_device(name=f"Host {i}", ip_address=f"10.0.0.{10 + i}") for i in range(6)]

        result = env.run()

        assert result.probed == 6
        assert pinger.is_alive.call_count == 6
        assert 1 <= peak[0] <= 2
        assert all(env.device(d.id).is_online for d in devices)

    def test_custom_monitor_requires_every_check(self, session_factory, snapshot, make_device):
        env = Env(session_factory, snapshot(), prober=make_prober(alive=True, tcp=False))
        d = make_device(name="NAS", ip_address="10.0.0.5",
                        monitor_mode=models.MonitorMode.PING_AND_PORT, monitor_port=22)

        result = env.run()
        assert result.sources == {CUSTOM_MONITOR: 1}
        assert env.device(d.id).is_online is False
        env.prober.is_tcp_open.assert_called_once_with("10.0.0.5", 22)

        env.prober.is_tcp_open.return_value = True
        env.run(NOW + timedelta(minutes=1))
        assert env.device(d.id).is_online is True
        (event,) = env.all(models.StatusEvent)
        assert event.source == CUSTOM_MONITOR

    def test_untracked_device_is_skipped_and_alert_closed(self, env, make_device, session_factory):
        d = make_device(name="Old", mac_address=MAC1, is_status_tracked=False, is_online=True)
        with session_factory() as s:
            s.add(models.OfflineAlert(device_id=d.id, went_offline_at=NOW - timedelta(hours=1)))
            s.commit()

        result = env.run()

        assert result.probed == 0
        assert env.all(models.StatusEvent) == []
        (alert,) = env.all(models.OfflineAlert)
        assert alert.came_online_at == NOW
        assert env.device(d.id).is_online is True


class TestOfflineAlerts:
    def test_offline_online_offline(self, env, make_device):
        d = make_device(name="Camera", mac_address=MAC1, ip_address="10.0.0.7", is_online=True)

        env.run(NOW)
        (alert,) = env.all(models.OfflineAlert)
        assert alert.went_offline_at == NOW
        assert alert.name_at_time == "Camera"
        assert alert.ip_at_time == "10.0.0.7"
        assert alert.came_online_at is None

        env.prober.is_alive.return_value = True
        env.run(NOW + timedelta(minutes=1))
        (alert,) = env.all(models.OfflineAlert)
        assert alert.came_online_at == NOW + timedelta(minutes=1)

        env.prober.is_alive.return_value = False
        env.run(NOW + timedelta(minutes=2))
        first, second = env.all(models.OfflineAlert)
        assert first.came_online_at is not None
        assert second.came_online_at is None
        assert second.went_offline_at == NOW + timedelta(minutes=2)

        events = env.all(models.StatusEvent)
        assert [e.is_online for e in events] == [False, True, False]
        assert all(e.device_id == d.id for e in events)

    def test_no_alert_when_already_offline(self, env, make_device):
        make_device(name="Camera", mac_address=MAC1, is_online=False)
        env.run()
        assert env.all(models.OfflineAlert) == []

    def test_ignore_offline(self, env, make_device):
        d = make_device(name="Laptop", mac_address=MAC1, is_online=True, ignore_offline=True)

        result = env.run()

        assert result.changed_count == 1
        assert env.all(models.OfflineAlert) == []
        assert env.device(d.id).is_online is False
        changes = [c for c in env.all(models.ChangeLog) if c.field_name == "OnlineStatus"]
        assert [(c.old_value, c.new_value) for c in changes] == [("Online", "Offline")]


class TestFirmware:
    def infra(self, upgradable, target=None, version="1.0"):
        return {"mac": MAC1, "name": "AP", "state": 1, "version": version,
                "upgradable": upgradable, "upgrade_to_firmware": target}

    def test_alert_lifecycle(self, env, make_device):
        make_device(name="AP", mac_address=MAC1, model="U6")

        env.set_payloads(devices=[self.infra(True, "2.0")])
        env.run(NOW)
        env.run(NOW + timedelta(minutes=1))
        (alert,) = env.all(models.FirmwareAlert)
        assert alert.target_version == "2.0"
        assert alert.current_version == "1.0"
        assert alert.model_at_time == "U6"
        assert alert.resolved_at is None

        env.set_payloads(devices=[self.infra(True, "2.1")])
        env.run(NOW + timedelta(minutes=2))
        first, second = env.all(models.FirmwareAlert)
        assert first.resolved_at == NOW + timedelta(minutes=2)
        assert second.target_version == "2.1"
        assert second.resolved_at is None

        env.set_payloads(devices=[self.infra(False)])
        env.run(NOW + timedelta(minutes=3))
        assert all(a.resolved_at is not None for a in env.all(models.FirmwareAlert))

    def test_current_version_refreshed_on_open_alert(self, env, make_device):
        make_device(name="AP", mac_address=MAC1)
        env.set_payloads(devices=[self.infra(True, "2.0", version="1.0")])
        env.run(NOW)
        env.set_payloads(devices=[self.infra(True, "2.0", version="1.5")])
        env.run(NOW + timedelta(minutes=1))

        (alert,) = env.all(models.FirmwareAlert)
        assert alert.current_version == "1.5"


class TestDiscovery:
    def test_new_active_client_alerted_once(self, env, make_device):
        make_device(name="Known", mac_address=MAC1)
        env.set_payloads(active=[
            {"mac": MAC1, "ip": "10.0.0.2"},
            {"mac": NEW_MAC.upper(), "hostname": "phone", "ip": "10.0.0.50", "is_wired": False, "essid": "Home"},
        ])

        env.run(NOW)
        env.run(NOW + timedelta(minutes=1))

        (alert,) = env.all(models.DiscoveryAlert)
        assert alert.mac == NEW_MAC
        assert alert.hostname == "phone"
        assert alert.ip_address == "10.0.0.50"
        assert alert.connection_type == "WiFi"

    def test_ignored_and_offline_clients_not_alerted(self, env, session_factory):
        with session_factory() as s:
            s.add(models.IgnoredDiscoveryMac(mac=NEW_MAC))
            s.commit()
        env.set_payloads(
            active=[{"mac": NEW_MAC, "ip": "10.0.0.50"}],
            known=[{"mac": "cc:00:00:00:00:01", "name": "offline thing"}],
        )

        env.run()

        assert env.all(models.DiscoveryAlert) == []


class TestIdentityAndHistory:
    def test_initial_history_and_controller_ip_change(self, env, make_device):
        d = make_device(name="NAS", mac_address=MAC1, ip_address="10.0.0.4")
        env.set_payloads(known=[{"mac": MAC1, "name": "NAS", "ip": "10.0.0.9"}])

        result = env.run()

        assert result.changed_count == 1
        assert env.device(d.id).ip_address == "10.0.0.9"
        initial, current = env.all(models.IpHistory)
        assert (initial.ip_address, initial.source, initial.last_seen) == ("10.0.0.4", "Initial", NOW)
        assert (current.ip_address, current.source, current.last_seen) == ("10.0.0.9", "Controller", None)
        (change,) = env.all(models.ChangeLog)
        assert (change.field_name, change.old_value, change.new_value) == ("IpAddress", "10.0.0.4", "10.0.0.9")

    def test_controller_ip_change_assigns_subnet(self, env, make_device, session_factory):
        with session_factory() as s:
            old = models.Subnet(name="old", cidr="10.0.0.0/24")
            new = models.Subnet(name="new", cidr="10.0.1.0/24")
            s.add_all([old, new])
            s.commit()
            old_id, new_id = old.id, new.id
        d = make_device(name="NAS", mac_address=MAC1, ip_address="10.0.0.4", subnet_id=old_id)
        kept = make_device(name="Far", mac_address=MAC2, ip_address="10.0.0.5", subnet_id=old_id)
        env.set_payloads(known=[
            {"mac": MAC1, "ip": "10.0.1.9"},
            {"mac": MAC2, "ip": "172.16.0.5"},
        ])

        env.run()

        assert env.device(d.id).subnet_id == new_id
        assert env.device(kept.id).ip_address == "172.16.0.5"
        assert env.device(kept.id).subnet_id == old_id

    def test_manual_edit_recorded(self, env, make_device, session_factory):
        d = make_device(name="NAS", mac_address=MAC1, ip_address="10.0.0.4")
        env.run(NOW)
        with session_factory() as s:
            s.get(models.Device, d.id).ip_address = "10.0.0.40"
            s.commit()

        env.run(NOW + timedelta(minutes=1))

        rows = env.all(models.IpHistory)
        assert [(r.ip_address, r.source) for r in rows] == [("10.0.0.4", "Initial"), ("10.0.0.40", "Manual")]
        assert rows[0].last_seen == NOW + timedelta(minutes=1)

    def test_name_sync_is_case_insensitive(self, session_factory, snapshot, make_device):
        env = Env(session_factory, snapshot(sync_name=True, sync_ip_address=False))
        same = make_device(name="NAS", mac_address=MAC1)
        renamed = make_device(name="Printer", mac_address=MAC2)
        env.set_payloads(known=[{"mac": MAC1, "name": "nas"}, {"mac": MAC2, "name": "Office Printer"}])

        result = env.run()

        assert result.changed_count == 1
        assert env.device(same.id).name == "NAS"
        assert env.device(renamed.id).name == "Office Printer"
        (change,) = env.all(models.ChangeLog)
        assert change.field_name == "Name"

    def test_disabled_flags_leave_fields_alone(self, session_factory, snapshot, make_device):
        env = Env(session_factory, snapshot(sync_ip_address=False))
        d = make_device(name="NAS", mac_address=MAC1, ip_address="10.0.0.4")
        env.set_payloads(known=[{"mac": MAC1, "ip": "10.0.0.9", "hostname": "nas-host"}])

        env.run()

        device = env.device(d.id)
        assert device.ip_address == "10.0.0.4"
        assert device.hostname is None


class TestUptime:
    def test_rollup_accumulates_from_watermark(self, session_factory, snapshot, make_device):
        env = Env(session_factory, snapshot(), prober=make_prober(alive=True))
        d = make_device(name="Server", mac_address=MAC1, is_online=True,
                        last_status_rollup_at=NOW - timedelta(minutes=10))

        env.run(NOW)
        env.prober.is_alive.return_value = False
        env.run(NOW + timedelta(minutes=5))
        env.run(NOW + timedelta(minutes=10))

        (row,) = env.all(models.DailyUptime)
        assert row.date == NOW.date()
        assert row.online_seconds == 900
        assert row.observed_seconds == 1200
        assert env.device(d.id).last_status_rollup_at == NOW + timedelta(minutes=10)

    def test_first_pass_only_sets_watermark(self, env, make_device):
        d = make_device(name="Server", mac_address=MAC1)
        env.run()
        assert env.all(models.DailyUptime) == []
        assert env.device(d.id).last_status_rollup_at == NOW


class TestRunBookkeeping:
    def test_sync_disabled_skips_status_and_pruning(self, session_factory, snapshot, make_device):
        env = Env(session_factory, snapshot(sync_online_status=False), prober=make_prober(alive=True))
        d = make_device(name="Server", mac_address=MAC1)
        with session_factory() as s:
            s.add(models.StatusEvent(device_id=d.id, is_online=True, changed_at=NOW - timedelta(days=60)))
            s.commit()
        env.set_payloads(devices=[{"mac": MAC1, "state": 1}])

        result = env.run()

        assert result.probed == 0
        env.prober.is_alive.assert_not_called()
        assert env.device(d.id).is_online is False
        assert len(env.all(models.StatusEvent)) == 1
        (run,) = env.all(models.RunLog)
        assert run.finished_at is not None
        assert run.changed_count == 0

    def test_retention(self, env, make_device, session_factory):
        d = make_device(name="Server", mac_address=MAC1)
        with session_factory() as s:
            s.add_all([
                models.StatusEvent(device_id=d.id, is_online=True, changed_at=NOW - timedelta(days=31)),
                models.StatusEvent(device_id=d.id, is_online=False, changed_at=NOW - timedelta(days=2)),
                models.DailyUptime(device_id=d.id, date=NOW.date() - timedelta(days=181)),
                models.DailyUptime(device_id=d.id, date=NOW.date() - timedelta(days=5)),
                models.RunLog(started_at=NOW - timedelta(hours=25)),
            ])
            s.commit()

        env.run()

        assert [e.changed_at for e in env.all(models.StatusEvent)] == [NOW - timedelta(days=2)]
        assert [r.date for r in env.all(models.DailyUptime)] == [NOW.date() - timedelta(days=5)]
        assert [r.started_at for r in env.all(models.RunLog)] == [NOW]

    def test_wan_and_subnets_refreshed(self, env, session_factory):
        with session_factory() as s:
            s.add(models.Subnet(name="old", cidr="192.168.1.0/24"))
            s.commit()
        env.set_payloads(
            devices=[{"mac": MAC1, "name": "Gateway", "type": "udm", "wan1": {"ip": "203.0.113.5", "up": True}}],
            networks=[
                {"name": "Default", "purpose": "corporate", "ip_subnet": "192.168.1.0/24"},
                {"name": "Guest", "ip_subnet": "10.9.0.0/24"},
            ],
        )

        env.run()

        (wan,) = env.all(models.WanInterfaceStatus)
        assert (wan.gateway_name, wan.interface_name, wan.ip_address) == ("Gateway", "wan1", "203.0.113.5")
        (subnet,) = env.all(models.Subnet)
        assert subnet.name == "Default"
        assert subnet.vlan_id == 1

    def test_failed_pass_logged_and_raised(self, env):
        env.client.get_known_clients.side_effect = ControllerHTTPError("boom", 500)

        with pytest.raises(ControllerHTTPError):
            env.reconciler.run_once()

        (run,) = env.all(models.RunLog)
        assert run.error == "boom"
        assert run.finished_at is not None

    def test_run_once_reports_to_control(self, session_factory, snapshot, make_device):
        control = UpdaterControl(min_gap=0)
        notified = []
        control.on_status_changed(lambda: notified.append(1))
        control.last_error = "old"
        env = Env(session_factory, snapshot(), control=control)
        make_device(name="Switch", mac_address=MAC1)
        env.set_payloads(devices=[{"mac": MAC1, "state": 1}])

        env.reconciler.run_once()

        assert control.last_run is not None
        assert control.last_changed_count == 1
        assert control.last_error is None
        assert notified == [1]
