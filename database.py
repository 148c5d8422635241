"""
database.py — MongoDB Integration

Collections
───────────
  system_logs  — Stores every accepted telemetry reading.
  alerts       — Stores alert records and their status transitions.
  settings     — Singleton threshold/configuration document (see settings.py).

Indexing Strategy
─────────────────
  system_logs:
    { timestamp: -1 }                 — latest-reading lookup and range scans

  alerts:
    { status: 1, timestamp: -1 }      — dashboard listing by status
    { sensor: 1, status: 1 }          — dedup lookup and bulk resolution

Error Convention
────────────────
  Functions on the ingestion path (insert_reading, find_*, create_alert,
  bulk_resolve_alerts) let PyMongoError propagate; the caller owns the unit
  of work and decides how to log it. Read helpers used by the HTTP layer log
  and return an empty result instead, like the dashboard expects.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import certifi
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, AsyncMongoClient, ReturnDocument

from config import (
    ALERTS_COLLECTION,
    DB_NAME,
    DEVICE_ID,
    DEVICE_LOCATION,
    MONGODB_URI,
    READINGS_COLLECTION,
)
from validator import HARD_BOUNDS, parse_timestamp

logger = logging.getLogger(__name__)

NON_RESOLVED = ("active", "acknowledged")

# ── Lazy-initialised module singletons ───────────────────────────────────────
_client: Optional[AsyncMongoClient] = None
_db = None


def get_db():
    """Return the MongoDB database handle; creates the client on first call."""
    global _client, _db
    if _client is None:
        options: Dict[str, Any] = {"serverSelectionTimeoutMS": 5000, "tz_aware": True}
        if MONGODB_URI.startswith("mongodb+srv://"):
            options.update(tls=True, tlsCAFile=certifi.where())
        _client = AsyncMongoClient(MONGODB_URI, **options)
        _db = _client[DB_NAME]
    return _db


async def init_db() -> None:
    """Create all required indexes (idempotent — safe to call on every start)."""
    try:
        db = get_db()

        await db[READINGS_COLLECTION].create_index(
            [("timestamp", DESCENDING)],
            name="ts_desc",
        )
        await db[ALERTS_COLLECTION].create_index(
            [("status", ASCENDING), ("timestamp", DESCENDING)],
            name="alert_status_ts",
        )
        await db[ALERTS_COLLECTION].create_index(
            [("sensor", ASCENDING), ("status", ASCENDING)],
            name="alert_sensor_status",
        )

        logger.info("MongoDB indexes verified / created.")
    except Exception as exc:
        logger.error("Index creation error: %s", exc)


async def close_db() -> None:
    global _client, _db
    if _client is not None:
        await _client.close()
    _client = None
    _db = None


# ── Formatters ────────────────────────────────────────────────────────────────

def _iso(value: Any) -> Any:
    return value.isoformat() if isinstance(value, datetime) else value


def format_alert(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Shape a stored alert for JSON clients (string id, ISO timestamps)."""
    alert = {
        "id":        str(doc["_id"]),
        "severity":  doc["severity"],
        "sensor":    doc["sensor"],
        "message":   doc["message"],
        "value":     doc.get("value"),
        "threshold": doc.get("threshold"),
        "timestamp": _iso(doc["timestamp"]),
        "status":    doc["status"],
    }
    if doc.get("resolvedAt"):
        alert["resolvedAt"] = _iso(doc["resolvedAt"])
    return alert


def format_reading(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten a stored reading back into the wire shape."""
    reading = {"timestamp": _iso(doc["timestamp"]), **doc.get("readings", {})}
    if doc.get("valve_status") is not None:
        reading["valve_status"] = doc["valve_status"]
    reading["validation"] = doc.get("validation")
    return reading


# ── Ingestion path ────────────────────────────────────────────────────────────

async def insert_reading(reading: Dict[str, Any]) -> str:
    """
    Persist an accepted reading. Only sensors that reported are stored.

    Returns the inserted _id as a hex string.
    """
    doc = {
        "timestamp": parse_timestamp(reading["timestamp"]),
        "metadata":  {"device_id": DEVICE_ID, "location": DEVICE_LOCATION},
        "readings":  {
            field: reading[field]
            for field in HARD_BOUNDS
            if reading.get(field) is not None
        },
        "validation":  reading["validation"],
        "received_at": time.time(),
    }
    if reading.get("valve_status") is not None:
        doc["valve_status"] = reading["valve_status"]

    result = await get_db()[READINGS_COLLECTION].insert_one(doc)
    return str(result.inserted_id)


async def find_latest_reading_timestamp() -> Optional[datetime]:
    """Timestamp of the newest stored reading, or None if there is none."""
    doc = await get_db()[READINGS_COLLECTION].find_one(
        {},
        sort=[("timestamp", DESCENDING)],
        projection={"timestamp": 1},
    )
    return doc["timestamp"] if doc else None


async def find_non_resolved_alert(sensor: str, severity: str) -> Optional[Dict[str, Any]]:
    return await get_db()[ALERTS_COLLECTION].find_one(
        {"sensor": sensor, "severity": severity, "status": {"$in": list(NON_RESOLVED)}}
    )


async def create_alert(record: Dict[str, Any]) -> Dict[str, Any]:
    """Insert a new alert record; returns the stored document with its _id."""
    doc = dict(record)
    result = await get_db()[ALERTS_COLLECTION].insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc


async def bulk_resolve_alerts(sensor: str, statuses: Iterable[str] = NON_RESOLVED) -> int:
    """Mark every matching alert for a sensor as resolved; returns the count."""
    result = await get_db()[ALERTS_COLLECTION].update_many(
        {"sensor": sensor, "status": {"$in": list(statuses)}},
        {"$set": {"status": "resolved", "resolvedAt": datetime.now(timezone.utc)}},
    )
    return result.modified_count


# ── Operator actions ──────────────────────────────────────────────────────────

def _object_id(alert_id: str) -> Optional[ObjectId]:
    try:
        return ObjectId(alert_id)
    except (InvalidId, TypeError):
        return None


async def acknowledge_alert(alert_id: str) -> Optional[Dict[str, Any]]:
    """active → acknowledged. Returns the updated alert, or None if not found."""
    oid = _object_id(alert_id)
    if oid is None:
        return None
    return await get_db()[ALERTS_COLLECTION].find_one_and_update(
        {"_id": oid, "status": "active"},
        {"$set": {"status": "acknowledged"}},
        return_document=ReturnDocument.AFTER,
    )


async def resolve_alert(alert_id: str) -> Optional[Dict[str, Any]]:
    """active|acknowledged → resolved. Returns the updated alert, or None."""
    oid = _object_id(alert_id)
    if oid is None:
        return None
    return await get_db()[ALERTS_COLLECTION].find_one_and_update(
        {"_id": oid, "status": {"$in": list(NON_RESOLVED)}},
        {"$set": {"status": "resolved", "resolvedAt": datetime.now(timezone.utc)}},
        return_document=ReturnDocument.AFTER,
    )


# ── Read operations ───────────────────────────────────────────────────────────

async def get_recent_readings(limit: int) -> List[Dict[str, Any]]:
    """Return the last `limit` readings, oldest first."""
    try:
        cursor = (
            get_db()[READINGS_COLLECTION]
            .find({}, projection={"_id": 0})
            .sort("timestamp", DESCENDING)
            .limit(limit)
        )
        docs = await cursor.to_list(length=None)
        return [format_reading(doc) for doc in reversed(docs)]
    except Exception as exc:
        logger.error("get_recent_readings: %s", exc)
        return []


async def get_readings_between(start: datetime, end: datetime) -> List[Dict[str, Any]]:
    """Return readings with start <= timestamp <= end, oldest first."""
    try:
        cursor = get_db()[READINGS_COLLECTION].find(
            {"timestamp": {"$gte": start, "$lte": end}},
            sort=[("timestamp", ASCENDING)],
            projection={"_id": 0},
        )
        return [format_reading(doc) for doc in await cursor.to_list(length=None)]
    except Exception as exc:
        logger.error("get_readings_between: %s", exc)
        return []


async def get_alerts(status: Optional[str], limit: int) -> List[Dict[str, Any]]:
    """Return alerts newest first, optionally filtered by status."""
    try:
        query = {"status": status} if status else {}
        cursor = (
            get_db()[ALERTS_COLLECTION]
            .find(query)
            .sort("timestamp", DESCENDING)
            .limit(limit)
        )
        return [format_alert(doc) for doc in await cursor.to_list(length=None)]
    except Exception as exc:
        logger.error("get_alerts: %s", exc)
        return []


async def ping_db() -> Dict[str, Any]:
    """
    Ping MongoDB and return connection health metrics.

    Returns a dict with status, round-trip latency in ms, and estimated
    document counts for both collections.
    """
    try:
        database = get_db()
        t0 = time.time()
        await database.command("ping")
        latency_ms = round((time.time() - t0) * 1000, 1)
        readings = await database[READINGS_COLLECTION].estimated_document_count()
        alerts = await database[ALERTS_COLLECTION].estimated_document_count()
        return {
            "status": "connected",
            "latency_ms": latency_ms,
            "reading_docs": readings,
            "alert_docs": alerts,
        }
    except Exception as exc:
        logger.warning("ping_db failed: %s", exc)
        return {"status": "disconnected", "error": str(exc)}
