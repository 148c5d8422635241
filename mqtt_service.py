"""
mqtt_service.py — MQTT Connection Lifecycle

Keeps one broker connection alive and feeds every received message to the
MessageRouter on the asyncio loop.

Design notes:
  • paho-mqtt runs its network loop in a background thread (loop_start), so
    the event loop is never blocked by socket I/O.
  • Reconnects use a fixed delay (MQTT_RECONNECT_PERIOD_S) forever; the
    first connect uses the same retry path once its timeout expires.
  • Topics are re-subscribed on every successful (re)connect because the
    session is clean.
  • on_message only schedules router.handle() on the loop; dispatch order
    equals arrival order, and the paho thread never runs business logic.
"""

import asyncio
import logging
import os
import time
from typing import Callable, Dict, Optional, Tuple
from urllib.parse import urlsplit

import certifi
import paho.mqtt.client as mqtt

from config import (
    MQTT_BROKER_URL,
    MQTT_CONNECT_TIMEOUT_S,
    MQTT_KEEPALIVE_S,
    MQTT_PASSWORD,
    MQTT_QOS,
    MQTT_RECONNECT_PERIOD_S,
    MQTT_USERNAME,
)

logger = logging.getLogger(__name__)


def parse_broker_url(url: str) -> Tuple[str, int, bool]:
    """mqtt://host:port or mqtts://host:port → (host, port, use_tls)."""
    parts = urlsplit(url)
    use_tls = parts.scheme in ("mqtts", "ssl")
    port = parts.port or (8883 if use_tls else 1883)
    return parts.hostname or "localhost", port, use_tls


class MQTTService:
    """
    MQTT ingestion service.

    Usage:
        service = MQTTService(router, loop=asyncio.get_running_loop())
        service.start()
        ...
        service.stop()
    """

    def __init__(
        self,
        router,
        loop: asyncio.AbstractEventLoop,
        broker_url: str = MQTT_BROKER_URL,
        username: Optional[str] = MQTT_USERNAME,
        password: Optional[str] = MQTT_PASSWORD,
        client_factory: Callable[..., mqtt.Client] = mqtt.Client,
    ):
        self.router = router
        self.loop = loop
        self.broker_url = broker_url
        self.host, self.port, self.use_tls = parse_broker_url(broker_url)
        self.client_id = f"mfc-backend-{os.getpid()}-{int(time.time() * 1000)}"

        self._client = client_factory(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            clean_session=True,
            protocol=mqtt.MQTTv311,
        )
        if username:
            self._client.username_pw_set(username, password)
        if self.use_tls:
            self._client.tls_set(ca_certs=certifi.where())
        self._client.reconnect_delay_set(
            min_delay=MQTT_RECONNECT_PERIOD_S, max_delay=MQTT_RECONNECT_PERIOD_S
        )
        self._client.connect_timeout = MQTT_CONNECT_TIMEOUT_S

        self._client.on_connect = self._on_connect
        self._client.on_connect_fail = self._on_connect_fail
        self._client.on_disconnect = self._on_disconnect
        self._client.on_subscribe = self._on_subscribe
        self._client.on_message = self._on_message

        self._pending_subscriptions: Dict[int, Tuple[str, ...]] = {}
        self._running = False

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self) -> None:
        """Begin connecting in the background; returns immediately."""
        if self._running:
            return
        self._running = True
        logger.info("Connecting to MQTT broker %s", self.broker_url)
        self._client.connect_async(self.host, self.port, keepalive=MQTT_KEEPALIVE_S)
        self._client.loop_start()

    def stop(self) -> None:
        """Close the connection gracefully and join the network thread."""
        if not self._running:
            return
        self._running = False
        logger.info("Closing MQTT connection…")
        self._client.disconnect()
        self._client.loop_stop()
        logger.info("MQTT connection closed.")

    @property
    def is_connected(self) -> bool:
        return self._client.is_connected()

    def publish_command(self, topic: str, command: str) -> bool:
        """Publish a plain-string command; True if paho accepted it."""
        info = self._client.publish(topic, command, qos=MQTT_QOS)
        return info.rc == mqtt.MQTT_ERR_SUCCESS

    # ── paho callbacks (network thread) ───────────────────────────────────────

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            logger.error("MQTT connect refused: %s", reason_code)
            return
        logger.info("Connected to broker: %s", self.broker_url)
        topics = tuple(self.router.topics)
        result, mid = client.subscribe([(topic, MQTT_QOS) for topic in topics])
        if result != mqtt.MQTT_ERR_SUCCESS:
            logger.error("Subscription request failed (rc=%s)", result)
            return
        self._pending_subscriptions[mid] = topics

    def _on_connect_fail(self, client, userdata):
        logger.error(
            "MQTT connection attempt to %s failed; retrying in %ss",
            self.broker_url, MQTT_RECONNECT_PERIOD_S,
        )

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        if not self._running:
            return
        logger.warning(
            "MQTT client is offline (%s) — attempting to reconnect…", reason_code
        )

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties=None):
        topics = self._pending_subscriptions.pop(mid, ())
        for topic, code in zip(topics, reason_code_list):
            if code.is_failure:
                logger.error("Subscription to %r refused: %s", topic, code)
            else:
                logger.info("Subscribed to %r (QoS %s)", topic, code.value)

    def _on_message(self, client, userdata, msg):
        coro = self.router.handle(msg.topic, msg.payload)
        try:
            asyncio.run_coroutine_threadsafe(coro, self.loop)
        except RuntimeError as exc:
            coro.close()
            logger.error("Dropped message on %r, event loop unavailable: %s", msg.topic, exc)
