"""
realtime.py — Socket.IO Fan-out Channel

Every connected dashboard receives the same named events:

  live_telemetry  — full validated reading
  system_alert    — formatted alert record, or a raw upstream alert payload
  alert_resolved  — {sensor}
  pump_command    — {command, timestamp}, emitted only on broker echo

The server is mounted in front of the FastAPI app so HTTP and WebSocket
traffic share one uvicorn process.
"""

import logging

import socketio

logger = logging.getLogger(__name__)

EVENT_LIVE_TELEMETRY = "live_telemetry"
EVENT_SYSTEM_ALERT   = "system_alert"
EVENT_ALERT_RESOLVED = "alert_resolved"
EVENT_PUMP_COMMAND   = "pump_command"

sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins="*")


@sio.event
async def connect(sid, environ, auth=None):
    logger.info("Dashboard client connected: %s", sid)


@sio.event
async def disconnect(sid, reason=None):
    logger.info("Dashboard client disconnected: %s", sid)


def create_asgi_app(http_app) -> socketio.ASGIApp:
    """Wrap the HTTP app; /socket.io/ requests go to the fan-out server."""
    return socketio.ASGIApp(sio, other_asgi_app=http_app)
