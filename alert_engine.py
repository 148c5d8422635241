"""
alert_engine.py — Alert Lifecycle & Deduplication

At most one non-resolved (active or acknowledged) alert may exist per
(sensor, severity) key. The engine enforces this with two sources of truth:

  active_keys — in-memory set of keys believed to have a non-resolved alert.
                Populated lazily: the first fire() for a key after a restart
                asks MongoDB before creating anything.
  MongoDB     — the durable alert records.

Concurrency: fire() and clear() run on the single asyncio loop. The key is
re-checked after the storage lookup and claimed before the insert, so two
overlapping fire() calls for the same key produce one record.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from database import NON_RESOLVED, format_alert
from health_monitor import THRESHOLD_RULES, check_rule
from realtime import EVENT_ALERT_RESOLVED, EVENT_SYSTEM_ALERT

logger = logging.getLogger(__name__)

AlertKey = Tuple[str, str]


class AlertEngine:
    """
    Creates, deduplicates and resolves alert records.

    Args:
        store:       Object exposing find_non_resolved_alert, create_alert and
                     bulk_resolve_alerts coroutines (the database module in
                     production).
        broadcaster: Object with an async emit(event, data) (the Socket.IO
                     server in production).
        rules:       Ordered threshold rule table.
        active_keys: Optional pre-existing key set, mainly for tests.
    """

    def __init__(
        self,
        store,
        broadcaster,
        rules: Optional[List[Dict[str, Any]]] = None,
        active_keys: Optional[Set[AlertKey]] = None,
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.rules = THRESHOLD_RULES if rules is None else rules
        self.active_keys: Set[AlertKey] = set() if active_keys is None else active_keys

    # ── Rule evaluation ───────────────────────────────────────────────────────

    async def evaluate(self, reading: Dict[str, Any]) -> None:
        """Fire or clear every rule for one accepted reading. Never raises."""
        for rule in self.rules:
            sensor = rule["sensor"]
            try:
                outcome = check_rule(rule, reading)
                if outcome is None:
                    continue
                if outcome:
                    value = reading[sensor]
                    await self.fire(
                        sensor,
                        rule["severity"],
                        rule["message"](value),
                        value,
                        rule["threshold"],
                    )
                else:
                    await self.clear(sensor)
            except Exception:
                logger.exception("Alert evaluation failed for sensor %s", sensor)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def fire(
        self,
        sensor: str,
        severity: str,
        message: str,
        value: Optional[float] = None,
        threshold: Optional[str] = None,
    ) -> bool:
        """
        Raise an alert unless one is already open for (sensor, severity).

        Returns True only when a new record was created and broadcast.
        """
        key = (sensor, severity)
        if key in self.active_keys:
            return False

        existing = await self.store.find_non_resolved_alert(sensor, severity)
        if key in self.active_keys:
            return False
        if existing is not None:
            # Index was stale (process restart); adopt the stored alert.
            self.active_keys.add(key)
            return False

        self.active_keys.add(key)
        record = {
            "severity":  severity,
            "sensor":    sensor,
            "message":   message,
            "value":     value,
            "threshold": threshold,
            "timestamp": datetime.now(timezone.utc),
            "status":    "active",
        }
        try:
            doc = await self.store.create_alert(record)
        except Exception:
            self.active_keys.discard(key)
            raise

        logger.warning("[%s] %s — %s", severity.upper(), sensor, message)
        await self.broadcaster.emit(EVENT_SYSTEM_ALERT, format_alert(doc))
        return True

    async def clear(self, sensor: str) -> int:
        """Resolve every open alert for a sensor; returns how many were resolved."""
        self.forget(sensor)

        resolved = await self.store.bulk_resolve_alerts(sensor, NON_RESOLVED)
        if resolved > 0:
            logger.info("Auto-resolved %d alert(s) for %s", resolved, sensor)
            await self.broadcaster.emit(EVENT_ALERT_RESOLVED, {"sensor": sensor})
        return resolved

    def forget(self, sensor: str, severity: Optional[str] = None) -> None:
        """Drop index keys for a sensor (all severities unless one is given)."""
        for key in list(self.active_keys):
            if key[0] == sensor and severity in (None, key[1]):
                self.active_keys.discard(key)
