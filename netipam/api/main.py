from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from sqlalchemy.orm import Session
from sqlalchemy import select
from typing import List, Optional
from datetime import timedelta

from netipam.config import API_RUN_WORKERS, setup_logging
from netipam.cidr import try_parse_cidr
from .database import init_db, get_db
from .topology import build_topology
from . import models, schemas

app = FastAPI(title="netipam API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_services(request: Request):
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Background services are not running")
    return services


@app.on_event("startup")
def startup():
    from netipam.agent.services import Services

    setup_logging()
    init_db()
    services = Services()
    services.settings.load()
    if API_RUN_WORKERS:
        services.start()
    app.state.services = services


@app.on_event("shutdown")
def shutdown():
    services = getattr(app.state, "services", None)
    if services is not None and API_RUN_WORKERS:
        services.stop()


def _get_or_404(db: Session, model, obj_id: int, what: str):
    obj = db.get(model, obj_id)
    if not obj:
        raise HTTPException(status_code=404, detail=f"{what} not found")
    return obj

# --- Updater / controller ---

@app.get("/status", response_model=schemas.UpdaterStatusOut)
def get_status(services=Depends(get_services)):
    control = services.control
    return schemas.UpdaterStatusOut(
        enabled=services.settings.snapshot().updater_enabled,
        last_run=control.last_run,
        last_changed_count=control.last_changed_count,
        last_error=control.last_error,
    )


@app.post("/updater/trigger")
def trigger_updater(services=Depends(get_services)):
    services.control.trigger_now()
    return {"status": "triggered"}


@app.post("/hostmap/trigger")
def trigger_hostmap(services=Depends(get_services)):
    services.hostmap_trigger.trigger_now()
    return {"status": "triggered"}


@app.post("/controller/test", response_model=schemas.ConnectionTestOut)
def test_controller(services=Depends(get_services)):
    ok, message = services.check_connection()
    return schemas.ConnectionTestOut(ok=ok, message=message)


@app.get("/settings", response_model=schemas.SettingsOut)
def get_settings(services=Depends(get_services)):
    return schemas.SettingsOut.from_snapshot(services.settings.snapshot())


@app.put("/settings", response_model=schemas.SettingsOut)
def update_settings(body: schemas.SettingsIn, services=Depends(get_services)):
    data = body.model_dump(exclude_unset=True)
    password = data.pop("controller_password", None)
    api_key = data.pop("controller_api_key", None)
    snap = services.settings.update(schemas.SettingsUpdate(**data), password=password, api_key=api_key)
    return schemas.SettingsOut.from_snapshot(snap)

# --- Devices ---

@app.get("/devices", response_model=List[schemas.DeviceOut])
def get_devices(online_only: Optional[bool] = None, db: Session = Depends(get_db)):
    query = select(models.Device)
    if online_only is not None:
        query = query.where(models.Device.is_online == online_only)
    query = query.order_by(models.Device.name, models.Device.id)
    return db.scalars(query).all()


@app.get("/devices/{device_id}/events", response_model=List[schemas.StatusEventOut])
def get_device_events(device_id: int, limit: int = 100, db: Session = Depends(get_db)):
    _get_or_404(db, models.Device, device_id, "Device")
    query = (
        select(models.StatusEvent)
        .where(models.StatusEvent.device_id == device_id)
        .order_by(models.StatusEvent.changed_at.desc())
        .limit(limit)
    )
    return db.scalars(query).all()


@app.get("/devices/{device_id}/uptime", response_model=List[schemas.DailyUptimeOut])
def get_device_uptime(device_id: int, days: int = 30, db: Session = Depends(get_db)):
    _get_or_404(db, models.Device, device_id, "Device")
    cutoff = models.utcnow().date() - timedelta(days=max(1, days))
    query = (
        select(models.DailyUptime)
        .where(models.DailyUptime.device_id == device_id, models.DailyUptime.date >= cutoff)
        .order_by(models.DailyUptime.date)
    )
    return db.scalars(query).all()


@app.get("/devices/{device_id}/ip-history", response_model=List[schemas.IpHistoryOut])
def get_device_ip_history(device_id: int, db: Session = Depends(get_db)):
    _get_or_404(db, models.Device, device_id, "Device")
    query = (
        select(models.IpHistory)
        .where(models.IpHistory.device_id == device_id)
        .order_by(models.IpHistory.first_seen.desc(), models.IpHistory.id.desc())
    )
    return db.scalars(query).all()

# --- Alerts ---

@app.get("/alerts/offline", response_model=List[schemas.OfflineAlertOut])
def get_offline_alerts(open_only: bool = False, limit: int = 200, db: Session = Depends(get_db)):
    query = select(models.OfflineAlert)
    if open_only:
        query = query.where(models.OfflineAlert.came_online_at.is_(None))
    query = query.order_by(models.OfflineAlert.went_offline_at.desc()).limit(limit)
    return db.scalars(query).all()


@app.post("/alerts/offline/{alert_id}/ack", response_model=schemas.OfflineAlertOut)
def ack_offline_alert(alert_id: int, db: Session = Depends(get_db)):
    alert = _get_or_404(db, models.OfflineAlert, alert_id, "Alert")
    if not alert.is_acknowledged:
        alert.is_acknowledged = True
        alert.acknowledged_at = models.utcnow()
        db.commit()
    return alert


@app.get("/alerts/firmware", response_model=List[schemas.FirmwareAlertOut])
def get_firmware_alerts(open_only: bool = True, db: Session = Depends(get_db)):
    query = select(models.FirmwareAlert)
    if open_only:
        query = query.where(models.FirmwareAlert.resolved_at.is_(None))
    query = query.order_by(models.FirmwareAlert.detected_at.desc())
    return db.scalars(query).all()


@app.get("/alerts/discovery", response_model=List[schemas.DiscoveryAlertOut])
def get_discovery_alerts(open_only: bool = True, db: Session = Depends(get_db)):
    query = select(models.DiscoveryAlert)
    if open_only:
        query = query.where(models.DiscoveryAlert.is_acknowledged.is_(False))
    query = query.order_by(models.DiscoveryAlert.detected_at.desc())
    return db.scalars(query).all()


@app.post("/alerts/discovery/{alert_id}/ignore", response_model=schemas.DiscoveryAlertOut)
def ignore_discovery_alert(alert_id: int, db: Session = Depends(get_db)):
    alert = _get_or_404(db, models.DiscoveryAlert, alert_id, "Alert")
    mac = alert.mac.strip().lower()
    existing = db.scalars(select(models.IgnoredDiscoveryMac).where(models.IgnoredDiscoveryMac.mac == mac)).first()
    if not existing:
        db.add(models.IgnoredDiscoveryMac(mac=mac, source="User"))

    now = models.utcnow()
    alert.is_acknowledged = True
    alert.acknowledged_at = now
    db.commit()
    return alert

# --- Network views ---

@app.get("/topology", response_model=schemas.TopologyOut)
def get_topology(db: Session = Depends(get_db)):
    devices = db.scalars(select(models.Device).order_by(models.Device.id)).all()
    topo = build_topology(devices)
    return schemas.TopologyOut(
        rows=[schemas.TopologyRowOut(**r._asdict()) for r in topo.rows],
        unassigned=[schemas.TopologyRowOut(**r._asdict()) for r in topo.unassigned],
    )


@app.get("/subnets/{subnet_id}/info", response_model=schemas.SubnetInfoOut)
def get_subnet_info(subnet_id: int, db: Session = Depends(get_db)):
    subnet = _get_or_404(db, models.Subnet, subnet_id, "Subnet")
    info, error = try_parse_cidr(subnet.cidr)
    if info is None:
        raise HTTPException(status_code=422, detail=error)

    return schemas.SubnetInfoOut(
        id=subnet.id,
        name=subnet.name,
        cidr=info.cidr,
        network=info.network,
        broadcast=info.broadcast,
        first_usable=info.first_usable,
        last_usable=info.last_usable,
        total_addresses=info.total_addresses,
        usable_addresses=info.usable_addresses,
        vlan_id=subnet.vlan_id,
        dhcp_range_start=subnet.dhcp_range_start,
        dhcp_range_end=subnet.dhcp_range_end,
        dns1=subnet.dns1,
        dns2=subnet.dns2,
    )


@app.get("/wan", response_model=List[schemas.WanInterfaceOut])
def get_wan(db: Session = Depends(get_db)):
    query = select(models.WanInterfaceStatus).order_by(
        models.WanInterfaceStatus.gateway_name, models.WanInterfaceStatus.interface_name
    )
    return db.scalars(query).all()


@app.get("/runs", response_model=List[schemas.RunLogOut])
def get_runs(limit: int = 50, db: Session = Depends(get_db)):
    query = select(models.RunLog).order_by(models.RunLog.started_at.desc()).limit(limit)
    return db.scalars(query).all()
