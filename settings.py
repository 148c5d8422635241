"""
settings.py — Threshold / Configuration Store

A single settings document holds per-sensor {min, max, severity} bounds and
the alertsEnabled flag. It is created with factory defaults on first read
and cached in memory until invalidate_cache() is called.

Note: the alert engine evaluates the static table in health_monitor.py and
does not read these bounds; the snapshot is exposed for dashboards only.
"""

import copy
import logging
from typing import Any, Dict, Optional

from config import SETTINGS_COLLECTION
import database as db

logger = logging.getLogger(__name__)

# ── Factory defaults ──────────────────────────────────────────────────────────
DEFAULTS: Dict[str, Any] = {
    "thresholds": {
        "ph":          {"min": 6.5, "max": 8.5,  "severity": "warning"},
        "tds":         {"min": 0,   "max": 5000, "severity": "warning"},
        "temperature": {"min": 10,  "max": 40,   "severity": "warning"},
        "flow_rate":   {"min": 0.5, "max": 10,   "severity": "warning"},
        "voltage":     {"min": 0,   "max": 50,   "severity": "warning"},
        "current":     {"min": 0,   "max": 5,    "severity": "warning"},
    },
    "alertsEnabled": True,
}

_cache: Optional[Dict[str, Any]] = None


async def refresh_settings() -> Dict[str, Any]:
    """Reload from MongoDB, creating the singleton document if absent."""
    global _cache
    collection = db.get_db()[SETTINGS_COLLECTION]
    doc = await collection.find_one({}, projection={"_id": 0})
    if doc is None:
        doc = copy.deepcopy(DEFAULTS)
        await collection.insert_one(dict(doc))
    _cache = doc
    return _cache


async def get_settings() -> Dict[str, Any]:
    """Cached settings; falls back to DEFAULTS while MongoDB is unreachable."""
    if _cache is not None:
        return _cache
    try:
        return await refresh_settings()
    except Exception as exc:
        logger.warning("Settings store not ready, using defaults: %s", exc)
        return copy.deepcopy(DEFAULTS)


def invalidate_cache() -> None:
    global _cache
    _cache = None
