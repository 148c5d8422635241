"""
api.py — FastAPI REST API

Endpoints
─────────
  GET   /api/health                      → Liveness probe
  GET   /health/db                       → MongoDB ping, latency and counts
  GET   /api/readings?limit=N            → Last N readings (oldest first)
  GET   /api/readings/history?from=&to=  → Readings within an ISO time range
  GET   /api/alerts?status=&limit=       → Alerts, newest first
  PATCH /api/alerts/{id}/acknowledge     → active → acknowledged
  PATCH /api/alerts/{id}/resolve         → active|acknowledged → resolved
  GET   /api/settings                    → Threshold configuration snapshot
  POST  /api/pump/command                → Publish a pump command over MQTT

The application lifespan owns the ingestion pipeline: MongoDB indexes, the
MQTT service and the offline watchdog start with the server and stop with it.

Interactive API docs are available automatically at:
  http://127.0.0.1:5000/docs   (Swagger UI)
"""

import asyncio
import contextlib
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

import database as db
import settings
from alert_engine import AlertEngine
from config import TOPIC_COMMAND, VALID_COMMANDS
from mqtt_service import MQTTService
from offline_watchdog import OfflineWatchdog
from realtime import sio
from router import MessageRouter

logger = logging.getLogger(__name__)


# ── Lifespan ──────────────────────────────────────────────────────────────────
@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    await db.init_db()

    engine = AlertEngine(store=db, broadcaster=sio)
    router = MessageRouter(store=db, engine=engine, broadcaster=sio)
    mqtt_service = MQTTService(router, loop=asyncio.get_running_loop())
    watchdog = OfflineWatchdog(engine, db)

    app.state.alert_engine = engine
    app.state.mqtt_service = mqtt_service

    mqtt_service.start()
    watchdog_task = asyncio.create_task(watchdog.run(), name="offline-watchdog")
    try:
        yield
    finally:
        mqtt_service.stop()
        watchdog_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watchdog_task
        await db.close_db()


# ── Application ───────────────────────────────────────────────────────────────
app = FastAPI(
    title="MFC Telemetry API",
    description=(
        "Telemetry ingestion and alerting backend for a microbial fuel cell "
        "water treatment rig.\n\n"
        "Validates MQTT telemetry, stores accepted readings in MongoDB, raises "
        "and resolves threshold alerts, and streams everything to dashboards "
        "over Socket.IO."
    ),
    version="1.0.0",
    lifespan=lifespan,
)


# ── Pydantic models (for Swagger docs) ────────────────────────────────────────
class ValidationBlock(BaseModel):
    status:            str
    failed_parameters: List[str]


class Reading(BaseModel):
    timestamp:  str
    validation: Optional[ValidationBlock] = None

    class Config:
        extra = "allow"  # only the sensors that reported are present


class ReadingHistoryResponse(BaseModel):
    count:   int
    records: List[Reading]


class AlertRecord(BaseModel):
    id:         str
    severity:   str
    sensor:     str
    message:    str
    value:      Optional[float] = None
    threshold:  Optional[str] = None
    timestamp:  str
    status:     str
    resolvedAt: Optional[str] = None


class PumpCommand(BaseModel):
    command: str


class PumpCommandResponse(BaseModel):
    ok:      bool
    command: str
    topic:   str


# ── Health ────────────────────────────────────────────────────────────────────

@app.get("/api/health", summary="Liveness probe")
def health():
    return {"status": "Backend is running", "time": datetime.now(timezone.utc).isoformat()}


@app.get("/health/db", include_in_schema=False)
async def db_health():
    """Ping MongoDB and return connection status, latency, and document counts."""
    result = await db.ping_db()
    if result["status"] == "disconnected":
        return JSONResponse(status_code=503, content=result)
    return result


# ── Readings ──────────────────────────────────────────────────────────────────

def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@app.get(
    "/api/readings",
    response_model=List[Reading],
    summary="Recent readings",
    description="Returns the last N accepted readings, oldest first (max 500).",
)
async def get_readings(limit: int = Query(100, ge=1, description="Number of readings")):
    return await db.get_recent_readings(min(limit, 500))


@app.get(
    "/api/readings/history",
    response_model=ReadingHistoryResponse,
    summary="Reading history",
    description="Returns accepted readings within an ISO-8601 time range.",
)
async def get_reading_history(
    from_ts: datetime = Query(..., alias="from", description="Start of range (ISO-8601)"),
    to_ts:   datetime = Query(..., alias="to",   description="End of range (ISO-8601)"),
):
    from_ts, to_ts = _as_utc(from_ts), _as_utc(to_ts)
    if from_ts > to_ts:
        raise HTTPException(
            status_code=400,
            detail="'from' timestamp must be less than or equal to 'to' timestamp",
        )
    records = await db.get_readings_between(from_ts, to_ts)
    return {"count": len(records), "records": records}


# ── Alerts ────────────────────────────────────────────────────────────────────

@app.get(
    "/api/alerts",
    response_model=List[AlertRecord],
    summary="Alerts",
    description="Returns alerts newest first, optionally filtered by status.",
)
async def get_alerts(
    status: Optional[str] = Query(None, description="active | acknowledged | resolved"),
    limit: int = Query(100, ge=1),
):
    return await db.get_alerts(status, min(limit, 500))


@app.patch("/api/alerts/{alert_id}/acknowledge", response_model=AlertRecord)
async def acknowledge_alert(alert_id: str):
    doc = await db.acknowledge_alert(alert_id)
    if doc is None:
        raise HTTPException(status_code=404, detail="Active alert not found")
    return db.format_alert(doc)


@app.patch("/api/alerts/{alert_id}/resolve", response_model=AlertRecord)
async def resolve_alert(alert_id: str, request: Request):
    doc = await db.resolve_alert(alert_id)
    if doc is None:
        raise HTTPException(status_code=404, detail="Open alert not found")

    # Let the next out-of-range reading raise a fresh alert.
    engine = getattr(request.app.state, "alert_engine", None)
    if engine is not None:
        engine.forget(doc["sensor"], doc["severity"])
    return db.format_alert(doc)


# ── Settings ──────────────────────────────────────────────────────────────────

@app.get("/api/settings", summary="Threshold configuration")
async def read_settings() -> Dict[str, Any]:
    return await settings.get_settings()


# ── Pump control ──────────────────────────────────────────────────────────────

@app.post(
    "/api/pump/command",
    response_model=PumpCommandResponse,
    summary="Send pump command",
    description=(
        "Publishes MANUAL_ON, MANUAL_OFF or AUTO on the command topic. The "
        "pump_command Socket.IO event follows when the broker echoes it back."
    ),
)
def send_pump_command(body: PumpCommand, request: Request):
    if body.command not in VALID_COMMANDS:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid command. Accepted values: {', '.join(VALID_COMMANDS)}",
        )

    mqtt_service = getattr(request.app.state, "mqtt_service", None)
    if mqtt_service is None or not mqtt_service.is_connected:
        raise HTTPException(status_code=503, detail="MQTT broker is not connected")

    if not mqtt_service.publish_command(TOPIC_COMMAND, body.command):
        logger.error("Failed to publish pump command %s", body.command)
        raise HTTPException(status_code=500, detail="Failed to publish command to MQTT broker")

    logger.info("Pump command %s published", body.command)
    return {"ok": True, "command": body.command, "topic": TOPIC_COMMAND}
