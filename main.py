"""
main.py — Application Entry Point

Serves one ASGI application with uvicorn:

  • Socket.IO fan-out on /socket.io/ (realtime.py)
  • FastAPI REST API on everything else (api.py)

Starting the API also starts the ingestion pipeline (MQTT service and
offline watchdog) through its lifespan. uvicorn turns SIGINT/SIGTERM into a
lifespan shutdown, which closes the MQTT connection before the process exits.

Swagger API docs are at  http://127.0.0.1:5000/docs
"""

import logging

import uvicorn

from config import API_HOST, API_PORT, LOG_LEVEL, MQTT_BROKER_URL, MONGODB_URI

# ── Logging setup ─────────────────────────────────────────────────────────────
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s  [%(levelname)s]  %(name)s — %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def main() -> None:
    # ── Banner ────────────────────────────────────────────────────────────
    print()
    print("=" * 60)
    print("  MFC Telemetry Backend")
    print("=" * 60)
    print(f"  MQTT broker  : {MQTT_BROKER_URL}")
    print(f"  MongoDB      : {MONGODB_URI.split('@')[-1]}")
    print(f"  API          : http://127.0.0.1:{API_PORT}/api/health")
    print(f"  API docs     : http://127.0.0.1:{API_PORT}/docs")
    print("=" * 60)
    print()

    # Import here so logging is configured before any module logs
    from api import app as fastapi_app
    from realtime import create_asgi_app

    uvicorn.run(
        create_asgi_app(fastapi_app),
        host=API_HOST,
        port=API_PORT,
        log_level="warning",   # keep uvicorn noise low; app uses Python logging
    )


if __name__ == "__main__":
    main()
