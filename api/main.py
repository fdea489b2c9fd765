"""
FastAPI backend: ingest telemetry, run the incident pipeline, serve incident/device
projections for dashboards, control device simulations, and stream live alerts.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from alerts import AlertFanout, LogAlertSink, WebSocketHub
from analytics import SnowflakeAlertSink
from core.config import Settings, load_settings
from core.engine import IncidentPipeline
from core.errors import DeviceNotFound, PipelineError, PolicyNotFound
from core.models import SEVERITY_ORDER, Policy, TelemetrySample
from notary import build_notary
from simulation import TelemetryDataset, TelemetrySource
from storage import build_store

load_dotenv(override=True)

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("incident_pipeline.api")

# -----------------------------------------------------------------------------
# Pipeline wiring
# -----------------------------------------------------------------------------
settings: Settings = load_settings()
hub = WebSocketHub()


def build_pipeline(cfg: Settings, alert_hub: Optional[WebSocketHub] = None) -> IncidentPipeline:
    """Store, notary, alert sinks and telemetry source from settings."""
    sinks = [LogAlertSink()]
    if alert_hub is not None:
        sinks.append(alert_hub)
    if SnowflakeAlertSink.configured():
        sinks.append(SnowflakeAlertSink())
    dataset = TelemetryDataset.from_csv(cfg.dataset_path)
    return IncidentPipeline(
        store=build_store(cfg.store_url),
        notary=build_notary(
            cfg.notary_url,
            token=cfg.notary_token,
            timeout=cfg.notary_timeout,
            local_latency_s=cfg.local_ledger_latency_ms / 1000.0,
        ),
        alerts=AlertFanout(sinks),
        source=TelemetrySource(dataset),
        threshold=cfg.speed_threshold,
        ledger_workers=cfg.ledger_workers,
        default_interval_ms=cfg.simulation_interval_ms,
    )


pipeline = build_pipeline(settings, hub)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "pipeline ready store=%s notary=%s threshold=%s",
        pipeline.store.backend, getattr(pipeline.notary, "name", "custom"), pipeline.threshold,
    )
    yield
    pipeline.shutdown()
    pipeline.store.close()


app = FastAPI(title="Incident Pipeline API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# -----------------------------------------------------------------------------
# No-cache for dynamic API responses (avoid 304 for stale data)
# -----------------------------------------------------------------------------
NO_CACHE_HEADERS = {"Cache-Control": "no-store, no-cache, must-revalidate", "Pragma": "no-cache"}


# -----------------------------------------------------------------------------
# Request models
# -----------------------------------------------------------------------------
class TelemetryRequest(BaseModel):
    device_id: str = Field(..., min_length=1)
    timestamp: float = Field(..., description="Unix seconds")
    latitude: float = 0.0
    longitude: float = 0.0
    speed_kmh: float


class PolicyRequest(BaseModel):
    policy_ref: str = Field(..., min_length=1)
    policy_number: Optional[str] = None
    policy_holder: Optional[str] = None
    company_ref: Optional[str] = None
    company_name: Optional[str] = None


class DeviceRequest(BaseModel):
    device_id: str = Field(..., min_length=1)
    policy_ref: Optional[str] = None


class LinkRequest(BaseModel):
    policy_ref: Optional[str] = None  # null unlinks


class SimulationStartRequest(BaseModel):
    interval_ms: Optional[int] = Field(default=None, ge=10)


# -----------------------------------------------------------------------------
# Routes: ingest
# -----------------------------------------------------------------------------
@app.post("/ingest")
def ingest(body: TelemetryRequest):
    """Run one telemetry sample through the pipeline. 404 when an anomaly comes from an unknown device."""
    sample = TelemetrySample(
        device_id=body.device_id,
        timestamp=body.timestamp,
        latitude=body.latitude,
        longitude=body.longitude,
        speed_kmh=body.speed_kmh,
    )
    try:
        outcome = pipeline.ingest(sample)
    except DeviceNotFound as e:
        logger.warning("ingest rejected: %s", e)
        raise HTTPException(status_code=404, detail=str(e))
    if outcome is None:
        return JSONResponse(content={"anomaly": False, "device_id": body.device_id}, headers=NO_CACHE_HEADERS)
    return JSONResponse(content={"anomaly": True, **outcome.to_dict()}, headers=NO_CACHE_HEADERS)


# -----------------------------------------------------------------------------
# Routes: incidents (read-only dashboard projections)
# -----------------------------------------------------------------------------
@app.get("/incidents")
def list_incidents(
    severity: Optional[str] = Query(default=None),
    company_ref: Optional[str] = Query(default=None),
    device_id: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
):
    """Recent incidents with ledger status, newest first, plus a severity breakdown."""
    if severity and severity not in {s.value for s in SEVERITY_ORDER}:
        raise HTTPException(status_code=400, detail=f"unknown severity {severity!r}")
    items = pipeline.store.list_incidents(
        severity=severity, company_ref=company_ref, device_id=device_id, limit=limit,
    )
    return JSONResponse(
        content={
            "total_incidents": len(items),
            "incidents": [i.to_dict() for i in items],
            "severity_breakdown": pipeline.store.severity_breakdown(company_ref=company_ref),
            "ledger_breakdown": pipeline.store.ledger_status_breakdown(company_ref=company_ref),
            "pending_ledger_tasks": pipeline.pending_ledger_tasks(),
        },
        headers=NO_CACHE_HEADERS,
    )


@app.get("/incidents/{incident_id}")
def get_incident(incident_id: str):
    incident = pipeline.store.get_incident(incident_id)
    if incident is None:
        logger.debug("get_incident not_found incident_id=%s", incident_id)
        raise HTTPException(status_code=404, detail="Incident not found")
    return JSONResponse(content=incident.to_dict(), headers=NO_CACHE_HEADERS)


# -----------------------------------------------------------------------------
# Routes: policies and devices (registry writes owned by collaborators)
# -----------------------------------------------------------------------------
@app.post("/policies")
def register_policy(body: PolicyRequest):
    policy = pipeline.store.register_policy(Policy(**body.model_dump()))
    logger.info("policy registered policy_ref=%s company_ref=%s", policy.policy_ref, policy.company_ref)
    return JSONResponse(content=policy.to_dict(), headers=NO_CACHE_HEADERS)


@app.post("/devices")
def register_device(body: DeviceRequest):
    try:
        device = pipeline.store.register_device(body.device_id, body.policy_ref)
    except PolicyNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    logger.info("device registered device_id=%s policy_ref=%s", device.device_id, device.policy_ref)
    return JSONResponse(content=device.to_dict(), headers=NO_CACHE_HEADERS)


@app.put("/devices/{device_id}/policy")
def link_device(device_id: str, body: LinkRequest):
    try:
        device = pipeline.store.link_device(device_id, body.policy_ref)
    except (DeviceNotFound, PolicyNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e))
    return JSONResponse(content=device.to_dict(), headers=NO_CACHE_HEADERS)


@app.get("/devices")
def device_monitoring():
    """Every device with liveness, policy context and incident summary."""
    counts = pipeline.store.incident_counts_by_device()
    active = {h.device_id for h in pipeline.active_simulations()}
    out = []
    for device in pipeline.store.list_devices():
        ctx = pipeline.store.get_device_context(device.device_id)
        total, last_incident = counts.get(device.device_id, (0, None))
        out.append({
            **device.to_dict(),
            "policy_info": {
                "policy_number": ctx.policy_number,
                "policy_holder": ctx.policy_holder,
            } if ctx.policy_ref else None,
            "insurance_company": {"company_ref": ctx.company_ref, "name": ctx.company_name},
            "incident_summary": {"total_incidents": total, "last_incident": last_incident},
            "simulation_active": device.device_id in active,
        })
    return JSONResponse(content={"total_devices": len(out), "devices": out}, headers=NO_CACHE_HEADERS)


@app.get("/companies/transparency")
def company_transparency():
    """KORA view: per-company policies, devices, incidents and ledger proof coverage, plus system totals."""
    companies = pipeline.store.company_transparency()
    devices = pipeline.store.list_devices()
    ledger = pipeline.store.ledger_status_breakdown()
    return JSONResponse(
        content={
            "system_stats": {
                "insurance_companies": len(companies),
                "policies": sum(c.total_policies for c in companies),
                "iot_devices_registered": len(devices),
                "active_monitored_devices": sum(1 for d in devices if d.policy_ref),
                "total_incidents": sum(ledger.values()),
                "ledger_status": ledger,
            },
            "total_companies": len(companies),
            "companies": [c.to_dict() for c in companies],
        },
        headers=NO_CACHE_HEADERS,
    )


# -----------------------------------------------------------------------------
# Routes: simulation harness
# -----------------------------------------------------------------------------
@app.get("/simulation/stats")
def simulation_stats():
    dataset = pipeline.source.dataset
    return JSONResponse(
        content={
            "stats": dataset.stats(pipeline.threshold),
            "sample_anomalies": [p.to_dict() for p in dataset.anomalies(pipeline.threshold)[:5]],
        },
        headers=NO_CACHE_HEADERS,
    )


@app.post("/simulation/devices/{device_id}/start")
def start_simulation(device_id: str, body: Optional[SimulationStartRequest] = None):
    interval_ms = body.interval_ms if body is not None else None
    try:
        handle = pipeline.start_simulation(device_id, interval_ms)
    except DeviceNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PipelineError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return JSONResponse(content={"message": f"simulation started for {device_id}", **handle.to_dict()}, headers=NO_CACHE_HEADERS)


@app.post("/simulation/devices/{device_id}/stop")
def stop_simulation(device_id: str):
    if not pipeline.stop_simulation(device_id):
        raise HTTPException(status_code=404, detail=f"No active simulation for device {device_id}")
    return JSONResponse(content={"message": f"simulation stopped for {device_id}", "device_id": device_id}, headers=NO_CACHE_HEADERS)


@app.get("/simulation/devices/{device_id}/test")
def simulation_test_sample(device_id: str, random: bool = Query(default=False)):
    """Pull one sample for the device and run it through the pipeline.

    With random=true the point is drawn from anywhere in the dataset instead of
    the device's next cursor position.
    """
    try:
        sample, outcome = pipeline.sample_and_ingest(device_id, randomize=random)
    except DeviceNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return JSONResponse(
        content={
            "device_id": device_id,
            "data": sample.to_dict(),
            "anomaly_detected": outcome is not None,
            "incident": outcome.incident.to_dict() if outcome is not None else None,
        },
        headers=NO_CACHE_HEADERS,
    )


@app.get("/simulation/active")
def active_simulations():
    handles = pipeline.active_simulations()
    return JSONResponse(
        content={"total_active": len(handles), "simulations": [h.to_dict() for h in handles]},
        headers=NO_CACHE_HEADERS,
    )


# -----------------------------------------------------------------------------
# Live alerts
# -----------------------------------------------------------------------------
@app.websocket("/ws/alerts")
async def alerts_websocket(websocket: WebSocket):
    await websocket.accept()
    hub.add(websocket, asyncio.get_running_loop())
    await websocket.send_json({"type": "subscribed"})
    try:
        while True:
            # clients only listen; drain anything they send until disconnect
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        hub.discard(websocket)


@app.get("/health")
def health():
    return JSONResponse(
        content={
            "status": "ok",
            "store": pipeline.store.backend,
            "notary": getattr(pipeline.notary, "name", "custom"),
            "speed_threshold": pipeline.threshold,
            "active_simulations": len(pipeline.active_simulations()),
            "pending_ledger_tasks": pipeline.pending_ledger_tasks(),
            "dashboard_clients": len(hub),
        },
        headers=NO_CACHE_HEADERS,
    )
