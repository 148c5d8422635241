"""
validator.py — Telemetry Validation Gatekeeper

Packet Structure (flat JSON object, producer-supplied):
  Field          Type      Required  Hard bound (reject)      Soft bound (flag)
  -----          ----      --------  ------------------       -----------------
  timestamp      ISO-8601  yes       |now - ts| <= 5000 ms    —
  ph             number    no        0 .. 14                  6.5 .. 8.5
  tds            number    no        >= 0                     <= 5000
  temperature    number    no        >= 0                     —
  flow_rate      number    no        >= 0                     —
  salinity       number    no        >= 0                     —
  conductivity   number    no        >= 0                     —
  voltage        number    no        -50 .. 50                —
  current        number    no        finite                   —
  power          number    no        finite                   —
  valve_status   string    no        OPEN | CLOSED            —

Checks run in the order above and stop at the first hard failure. Any
sensor field may be missing or null (sensor offline); such fields are never
range-checked, defaulted, or flagged.

validate_telemetry() never raises for bad input; it returns either
  {"accepted": True,  "reading": <packet + validation block>}
  {"accepted": False, "reason":  <human-readable reason>}
"""

import math
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from config import MAX_LATENCY_MS

MAX_LATENCY = timedelta(milliseconds=MAX_LATENCY_MS)

VALVE_STATES = ("OPEN", "CLOSED")

# ── Hard bounds ───────────────────────────────────────────────────────────────
# field → (minimum, maximum, rejection reason); None means unbounded.
HARD_BOUNDS: Dict[str, tuple] = {
    "ph":           (0,    14,   "ph must be a finite number between 0 and 14"),
    "tds":          (0,    None, "tds must be a number >= 0"),
    "temperature":  (0,    None, "temperature must be a number >= 0"),
    "flow_rate":    (0,    None, "flow_rate must be a number >= 0"),
    "salinity":     (0,    None, "salinity must be a number >= 0"),
    "conductivity": (0,    None, "conductivity must be a number >= 0"),
    "voltage":      (-50,  50,   "voltage must be a number between -50 and 50"),
    "current":      (None, None, "current must be a finite number"),
    "power":        (None, None, "power must be a finite number"),
}

# ── Soft (operating-range) compliance ─────────────────────────────────────────
# Evaluated in this order; a field is flagged only if it was reported.
SOFT_RULES = [
    ("ph",  lambda v: v < 6.5 or v > 8.5),
    ("tds", lambda v: v > 5000),
]


class ValidationError(Exception):
    """Raised internally when a packet fails a hard check."""
    pass


def is_number(value: Any) -> bool:
    """True for finite int/float values (bools are not numbers here)."""
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        # ints too large for a float
        return False


def parse_timestamp(value: Any) -> datetime:
    """
    Parse a packet timestamp into an aware UTC datetime.

    Accepts ISO-8601 strings (a trailing 'Z' is allowed; naive values are
    taken as UTC) and numeric Unix epochs in milliseconds.

    Raises:
        ValidationError: if the value does not describe a valid instant.
    """
    try:
        if is_number(value):
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        if isinstance(value, str):
            text = value.strip()
            if text[-1:] in ("Z", "z"):
                text = text[:-1] + "+00:00"
            parsed = datetime.fromisoformat(text)
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
    except (ValueError, OverflowError, OSError) as exc:
        raise ValidationError("Invalid timestamp format") from exc
    raise ValidationError("Invalid timestamp format")


def _present(packet: Dict[str, Any], field: str) -> bool:
    return packet.get(field) is not None


def _check_bounds(packet: Dict[str, Any]) -> None:
    for field, (minimum, maximum, reason) in HARD_BOUNDS.items():
        if not _present(packet, field):
            continue
        value = packet[field]
        if not is_number(value):
            raise ValidationError(reason)
        if minimum is not None and value < minimum:
            raise ValidationError(reason)
        if maximum is not None and value > maximum:
            raise ValidationError(reason)

    if _present(packet, "valve_status") and packet["valve_status"] not in VALVE_STATES:
        raise ValidationError("valve_status must be exactly OPEN or CLOSED")


def _check_freshness(packet: Dict[str, Any], now: datetime) -> None:
    packet_time = parse_timestamp(packet["timestamp"])
    latency = now - packet_time
    if latency > MAX_LATENCY:
        raise ValidationError(
            f"Timestamp is too old (latency > {MAX_LATENCY_MS} ms)"
        )
    if latency < -MAX_LATENCY:
        raise ValidationError(
            f"Timestamp is in the future (more than {MAX_LATENCY_MS} ms ahead)"
        )


def check_compliance(packet: Dict[str, Any]) -> Dict[str, Any]:
    """Build the soft-compliance block for an already accepted packet."""
    failed = [
        field for field, out_of_range in SOFT_RULES
        if is_number(packet.get(field)) and out_of_range(packet[field])
    ]
    return {"status": "FAIL" if failed else "PASS", "failed_parameters": failed}


def validate_telemetry(
    packet: Any, now: Optional[datetime] = None
) -> Dict[str, Any]:
    """
    Run the hard gatekeeper and the soft compliance checks on a raw packet.

    Args:
        packet: Decoded JSON payload as received from the transport.
        now:    Reference instant for the freshness check (defaults to the
                current UTC time).

    Returns:
        An acceptance dict carrying the validated reading, or a rejection
        dict carrying the reason string.
    """
    if now is None:
        now = datetime.now(timezone.utc)

    try:
        if not isinstance(packet, dict):
            raise ValidationError("Payload is not a JSON object")
        if "timestamp" not in packet:
            raise ValidationError("Missing required field: timestamp")
        _check_bounds(packet)
        _check_freshness(packet, now)
    except ValidationError as exc:
        return {"accepted": False, "reason": str(exc)}

    reading = {**packet, "validation": check_compliance(packet)}
    return {"accepted": True, "reading": reading}
