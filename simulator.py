"""
simulator.py — Mock Field Device

Publishes JSON telemetry to the MQTT telemetry topic, cycling through
scenarios so that alerts both fire and clear on the dashboard:

  Normal         — all sensors inside their operating ranges
  pH low         — warning expected (ph < 6.5)
  TDS high       — warning expected (tds > 5000), validation FAIL
  Temperature    — warning expected (temperature > 40 °C)
  Flow low       — warning expected (flow_rate < 0.5 L/min)
  Sensors offline — only a few fields reported; absent sensors keep their state

Stop the simulator for more than 60 s to see the device-offline alert.

Usage:
  python simulator.py
  python simulator.py --broker mqtt://127.0.0.1:1883 --interval 5 --ticks 4
  python simulator.py --command MANUAL_ON        # publish one pump command
"""

import argparse
import json
import logging
import random
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import certifi
import paho.mqtt.client as mqtt

from config import (
    MQTT_BROKER_URL,
    MQTT_PASSWORD,
    MQTT_QOS,
    MQTT_USERNAME,
    TOPIC_COMMAND,
    TOPIC_TELEMETRY,
    VALID_COMMANDS,
)
from mqtt_service import parse_broker_url

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [SIMULATOR] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def jitter(base: float, spread: float) -> float:
    return round(base + random.uniform(-spread, spread), 3)


def _nominal() -> Dict[str, Any]:
    return {
        "ph":           jitter(7.0, 0.2),
        "tds":          jitter(800, 100),
        "temperature":  jitter(25, 1),
        "flow_rate":    jitter(1.5, 0.2),
        "salinity":     jitter(300, 20),
        "conductivity": jitter(400, 30),
        "current":      jitter(0.5, 0.05),
        "voltage":      jitter(1.2, 0.1),
        "power":        jitter(0.6, 0.05),
        "valve_status": "OPEN",
    }


# ── Simulation scenarios ──────────────────────────────────────────────────────
SCENARIOS = [
    {"name": "Normal — all sensors safe",        "data": lambda: _nominal()},
    {"name": "pH too low — warning expected",    "data": lambda: {**_nominal(), "ph": jitter(5.8, 0.3)}},
    {"name": "TDS too high — warning expected",  "data": lambda: {**_nominal(), "tds": jitter(5500, 200)}},
    {"name": "Temperature high — warning expected",
     "data": lambda: {**_nominal(), "temperature": jitter(43, 0.5)}},
    {"name": "Flow rate too low — warning expected",
     "data": lambda: {**_nominal(), "flow_rate": jitter(0.2, 0.05)}},
    {"name": "Sensors offline — partial packet",
     "data": lambda: {"ph": jitter(7.1, 0.1), "valve_status": "CLOSED"}},
]


def build_packet(data: Dict[str, Any]) -> str:
    """Stamp a reading with the current time and encode it as JSON."""
    return json.dumps({"timestamp": datetime.now(timezone.utc).isoformat(), **data})


def connect(
    broker_url: str,
    username: Optional[str] = MQTT_USERNAME,
    password: Optional[str] = MQTT_PASSWORD,
    client_factory: Callable[..., mqtt.Client] = mqtt.Client,
) -> mqtt.Client:
    host, port, use_tls = parse_broker_url(broker_url)
    client = client_factory(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=f"mfc-simulator-{int(time.time())}",
    )
    if username:
        client.username_pw_set(username, password)
    if use_tls:
        client.tls_set(ca_certs=certifi.where())
    client.connect(host, port)
    client.loop_start()
    return client


def run_simulation(broker_url: str, interval: float = 5.0, ticks: int = 4, cycles: int = 0) -> None:
    """
    Publish scenarios forever (or for `cycles` full cycles when > 0).
    The backend (main.py) should be running to see the results.
    """
    client = connect(broker_url)
    logger.info("Publishing to %s on %s every %.1f s", TOPIC_TELEMETRY, broker_url, interval)

    cycle = 0
    try:
        while cycles <= 0 or cycle < cycles:
            for scenario in SCENARIOS:
                logger.info("Scenario: %s", scenario["name"])
                for _ in range(ticks):
                    packet = build_packet(scenario["data"]())
                    client.publish(TOPIC_TELEMETRY, packet, qos=MQTT_QOS)
                    logger.info("  → %s", packet)
                    time.sleep(interval)
            cycle += 1
    except KeyboardInterrupt:
        logger.info("Simulation stopped.")
    finally:
        client.loop_stop()
        client.disconnect()


def send_command(broker_url: str, command: str) -> None:
    client = connect(broker_url)
    info = client.publish(TOPIC_COMMAND, command, qos=MQTT_QOS)
    info.wait_for_publish(timeout=10)
    logger.info("Pump command %s published to %s", command, TOPIC_COMMAND)
    client.loop_stop()
    client.disconnect()


# ── CLI entry point ───────────────────────────────────────────────────────────
if __name__ == "__main__":
    ap = argparse.ArgumentParser(description="Publish simulated MFC telemetry over MQTT")
    ap.add_argument("--broker",   default=MQTT_BROKER_URL, help=f"Broker URL (default: {MQTT_BROKER_URL})")
    ap.add_argument("--interval", type=float, default=5.0, help="Seconds between packets (default: 5)")
    ap.add_argument("--ticks",    type=int, default=4, help="Packets per scenario (default: 4)")
    ap.add_argument("--cycles",   type=int, default=0, help="Scenario cycles, 0 = forever (default: 0)")
    ap.add_argument("--command",  choices=VALID_COMMANDS, help="Publish one pump command and exit")
    args = ap.parse_args()

    if args.command:
        send_command(args.broker, args.command)
    else:
        run_simulation(args.broker, args.interval, args.ticks, args.cycles)
