"""
health_monitor.py — Sensor Threshold Rules

Alert Rules:
  WARNING  — ph           outside 6.5 .. 8.5
  WARNING  — tds          above 5000 ppm
  WARNING  — temperature  outside 10 .. 40 °C
  WARNING  — flow_rate    outside 0.5 .. 10 L/min
  CRITICAL — device       no telemetry for OFFLINE_THRESHOLD_S (watchdog only)

check_rule() evaluates one rule against a validated reading and returns
True (condition present, fire), False (condition cleared) or None (the
sensor did not report in this packet, leave any alert untouched).
"""

from typing import Any, Callable, Dict, List, Optional

from config import OFFLINE_THRESHOLD_S


def _outside(low: float, high: float) -> Callable[[float], bool]:
    return lambda v: v < low or v > high


# ── Alert rule table ──────────────────────────────────────────────────────────
# Plain dicts so new rules can be appended without touching any logic.
THRESHOLD_RULES: List[Dict[str, Any]] = [
    {
        "sensor":    "ph",
        "severity":  "warning",
        "threshold": "6.5 - 8.5",
        "condition": _outside(6.5, 8.5),
        "message":   lambda v: f"pH at {v:.2f} is outside safe range (6.5 - 8.5)",
    },
    {
        "sensor":    "tds",
        "severity":  "warning",
        "threshold": "<= 5000 ppm",
        "condition": lambda v: v > 5000,
        "message":   lambda v: f"TDS at {v:.0f} ppm exceeds EOR limit of 5000 ppm",
    },
    {
        "sensor":    "temperature",
        "severity":  "warning",
        "threshold": "10 - 40 °C",
        "condition": _outside(10, 40),
        "message":   lambda v: (
            f"Temperature at {v:.1f} °C is outside safe range (10 - 40 °C)"
        ),
    },
    {
        "sensor":    "flow_rate",
        "severity":  "warning",
        "threshold": "0.5 - 10 L/min",
        "condition": _outside(0.5, 10),
        "message":   lambda v: (
            f"Flow rate at {v:.2f} L/min is outside safe range (0.5 - 10 L/min)"
        ),
    },
]

# ── Device liveness ───────────────────────────────────────────────────────────
DEVICE_SENSOR    = "device"
DEVICE_SEVERITY  = "critical"
DEVICE_THRESHOLD = f"< {OFFLINE_THRESHOLD_S} s since last packet"


def device_offline_message(age_seconds: float) -> str:
    return (
        f"No telemetry received for {int(age_seconds)} s — device may be offline"
    )


def check_rule(rule: Dict[str, Any], reading: Dict[str, Any]) -> Optional[bool]:
    """Ternary rule outcome for one reading; None when the sensor is absent."""
    value = reading.get(rule["sensor"])
    if value is None:
        return None
    return bool(rule["condition"](value))
