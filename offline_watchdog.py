"""
offline_watchdog.py — Device Offline Watchdog

Every WATCHDOG_INTERVAL_S the newest stored reading is inspected. If it is
older than OFFLINE_THRESHOLD_S a critical "device" alert is fired, otherwise
the device alert is cleared. An empty history never raises an alert.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from config import OFFLINE_THRESHOLD_S, WATCHDOG_INTERVAL_S
from health_monitor import (
    DEVICE_SENSOR,
    DEVICE_SEVERITY,
    DEVICE_THRESHOLD,
    device_offline_message,
)

logger = logging.getLogger(__name__)


class OfflineWatchdog:
    def __init__(
        self,
        engine,
        store,
        interval: float = WATCHDOG_INTERVAL_S,
        threshold: float = OFFLINE_THRESHOLD_S,
    ):
        self.engine = engine
        self.store = store
        self.interval = interval
        self.threshold = threshold

    async def tick(self, now: Optional[datetime] = None) -> None:
        """Run one liveness inspection. Errors are logged, never raised."""
        try:
            latest = await self.store.find_latest_reading_timestamp()
            if latest is None:
                return
            if latest.tzinfo is None:
                latest = latest.replace(tzinfo=timezone.utc)

            now = now or datetime.now(timezone.utc)
            age = (now - latest).total_seconds()

            if age > self.threshold:
                await self.engine.fire(
                    DEVICE_SENSOR,
                    DEVICE_SEVERITY,
                    device_offline_message(age),
                    None,
                    DEVICE_THRESHOLD,
                )
            else:
                await self.engine.clear(DEVICE_SENSOR)
        except Exception:
            logger.exception("Device offline check failed")

    async def run(self) -> None:
        """Tick forever on a fixed period."""
        logger.info(
            "Offline watchdog started (every %ss, threshold %ss)",
            self.interval, self.threshold,
        )
        while True:
            await self.tick()
            await asyncio.sleep(self.interval)
