"""
conftest.py — Shared fixtures

In-memory stand-ins for MongoDB and the Socket.IO server so the pipeline
can be exercised without a broker or a database.
"""

import asyncio
from datetime import datetime, timezone

import pytest
from bson import ObjectId

from alert_engine import AlertEngine


class FakeStore:
    """Implements the storage coroutines used by the ingestion pipeline."""

    def __init__(self):
        self.readings = []
        self.alerts = []
        self.latest = None
        self.resolve_calls = []
        self.fail_insert = False
        self.fail_create = False
        self.fail_latest = False

    async def insert_reading(self, reading):
        await asyncio.sleep(0)
        if self.fail_insert:
            raise ConnectionError("MongoDB unavailable")
        self.readings.append(reading)
        return str(len(self.readings))

    async def find_latest_reading_timestamp(self):
        await asyncio.sleep(0)
        if self.fail_latest:
            raise ConnectionError("MongoDB unavailable")
        return self.latest

    async def find_non_resolved_alert(self, sensor, severity):
        await asyncio.sleep(0)
        for alert in self.alerts:
            if (alert["sensor"], alert["severity"]) == (sensor, severity) \
                    and alert["status"] in ("active", "acknowledged"):
                return alert
        return None

    async def create_alert(self, record):
        await asyncio.sleep(0)
        if self.fail_create:
            raise ConnectionError("MongoDB unavailable")
        doc = {**record, "_id": ObjectId()}
        self.alerts.append(doc)
        return doc

    async def bulk_resolve_alerts(self, sensor, statuses):
        await asyncio.sleep(0)
        self.resolve_calls.append(sensor)
        count = 0
        for alert in self.alerts:
            if alert["sensor"] == sensor and alert["status"] in statuses:
                alert["status"] = "resolved"
                alert["resolvedAt"] = datetime.now(timezone.utc)
                count += 1
        return count

    def open_alerts(self, sensor=None):
        return [
            a for a in self.alerts
            if a["status"] != "resolved" and sensor in (None, a["sensor"])
        ]


class FakeBroadcaster:
    def __init__(self):
        self.events = []

    async def emit(self, event, data):
        self.events.append((event, data))

    def named(self, event):
        return [data for name, data in self.events if name == event]


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def broadcaster():
    return FakeBroadcaster()


@pytest.fixture
def engine(store, broadcaster):
    return AlertEngine(store=store, broadcaster=broadcaster)
