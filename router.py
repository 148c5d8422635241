"""
router.py — MQTT Message Router

Demultiplexes broker messages by topic:

  command    plain string → allow-list check → pump_command event
  alerts     JSON         → system_alert event, unmodified (no validation)
  telemetry  JSON         → validate → persist → evaluate alerts → live_telemetry

Telemetry stages fail independently: a rejected packet stops the pipeline,
but a persistence failure is only logged and the reading still reaches the
alert engine and the dashboards. Nothing raised while handling one message
escapes handle().
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from config import TOPIC_ALERTS, TOPIC_COMMAND, TOPIC_TELEMETRY, VALID_COMMANDS
from realtime import EVENT_LIVE_TELEMETRY, EVENT_PUMP_COMMAND, EVENT_SYSTEM_ALERT
from validator import validate_telemetry

logger = logging.getLogger(__name__)


class MessageRouter:
    """
    Usage:
        router = MessageRouter(store=database, engine=engine, broadcaster=sio)
        await router.handle(topic, payload_bytes)
    """

    def __init__(
        self,
        store,
        engine,
        broadcaster,
        telemetry_topic: str = TOPIC_TELEMETRY,
        alerts_topic: str = TOPIC_ALERTS,
        command_topic: str = TOPIC_COMMAND,
        valid_commands: Iterable[str] = VALID_COMMANDS,
    ):
        self.store = store
        self.engine = engine
        self.broadcaster = broadcaster
        self.telemetry_topic = telemetry_topic
        self.alerts_topic = alerts_topic
        self.command_topic = command_topic
        self.valid_commands = frozenset(valid_commands)

    @property
    def topics(self):
        return (self.telemetry_topic, self.alerts_topic, self.command_topic)

    # ── Dispatch ──────────────────────────────────────────────────────────────

    async def handle(self, topic: str, payload: bytes) -> None:
        """Route one raw broker message. Errors are logged, never raised."""
        try:
            raw = payload.decode("utf-8", errors="replace").strip()

            # Command payloads are plain strings, not JSON.
            if topic == self.command_topic:
                await self.handle_command(raw)
                return

            if topic not in (self.alerts_topic, self.telemetry_topic):
                logger.warning("Unhandled topic: %r", topic)
                return

            data = self._decode_json(topic, raw)
            if data is None:
                return

            if topic == self.alerts_topic:
                await self.handle_alert(data)
            else:
                await self.handle_telemetry(data)
        except Exception:
            logger.exception("Unhandled error while routing message on %r", topic)

    @staticmethod
    def _decode_json(topic: str, raw: str) -> Optional[Any]:
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("[DROP] Malformed JSON on topic %r: %s", topic, raw[:100])
            return None

    # ── Handlers ──────────────────────────────────────────────────────────────

    async def handle_command(self, command: str) -> None:
        """
        Broadcast a pump command echoed by the broker.

        The echo, not the HTTP request that published it, is the single
        source of pump_command events, so every client sees the same thing
        whoever sent the command.
        """
        if command not in self.valid_commands:
            logger.warning("Unknown pump command received: %r — ignoring", command)
            return
        logger.info("Pump command confirmed by broker: %s", command)
        await self._emit(EVENT_PUMP_COMMAND, {
            "command":   command,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    async def handle_alert(self, payload: Any) -> None:
        logger.info("System alert received: %s", payload)
        await self._emit(EVENT_SYSTEM_ALERT, payload)

    async def handle_telemetry(self, payload: Any) -> Optional[Dict[str, Any]]:
        """Run the telemetry pipeline; returns the reading if it was accepted."""
        # 1. Validation gatekeeper
        result = validate_telemetry(payload)
        if not result["accepted"]:
            logger.warning(
                "[DROP] Telemetry packet rejected: %s (timestamp=%s)",
                result["reason"],
                payload.get("timestamp", "N/A") if isinstance(payload, dict) else "N/A",
            )
            return None
        reading = result["reading"]

        # 2. Persistence, best effort
        try:
            await self.store.insert_reading(reading)
        except Exception as exc:
            logger.error(
                "Reading persistence failed (timestamp=%s): %s",
                reading.get("timestamp"), exc,
            )

        # 3. Threshold alerts
        await self.engine.evaluate(reading)

        # 4. Dashboards
        await self._emit(EVENT_LIVE_TELEMETRY, reading)
        return reading

    async def _emit(self, event: str, data: Any) -> None:
        try:
            await self.broadcaster.emit(event, data)
        except Exception as exc:
            logger.error("Broadcast of %s failed: %s", event, exc)
