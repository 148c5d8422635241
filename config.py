import os

# config.py — Central configuration for all services

API_HOST = "0.0.0.0"
# Render (and most PaaS) inject PORT; fall back to 5000 for local dev
API_PORT = int(os.getenv("PORT", 5000))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# ── MongoDB ───────────────────────────────────────────────────────────────────
MONGODB_URI = os.getenv("MONGODB_URI", "mongodb://localhost:27017/")

DB_NAME              = os.getenv("DB_NAME", "mfc_database")
READINGS_COLLECTION  = "system_logs"
ALERTS_COLLECTION    = "alerts"
SETTINGS_COLLECTION  = "settings"

DEVICE_ID       = os.getenv("DEVICE_ID", "MFC_01")
DEVICE_LOCATION = os.getenv("DEVICE_LOCATION", "Dammam_Lab")

# ── MQTT broker ───────────────────────────────────────────────────────────────
MQTT_BROKER_URL = os.getenv("MQTT_BROKER_URL", "mqtt://localhost:1883")
MQTT_USERNAME   = os.getenv("MQTT_USERNAME")
MQTT_PASSWORD   = os.getenv("MQTT_PASSWORD")

TOPIC_TELEMETRY = os.getenv("MQTT_TOPIC_TELEMETRY", "mfc/system_01/telemetry")
TOPIC_ALERTS    = os.getenv("MQTT_TOPIC_ALERTS", "mfc/system_01/alerts")
TOPIC_COMMAND   = os.getenv("MQTT_TOPIC_COMMAND", "mfc/system_01/command")

MQTT_QOS                = 1
MQTT_KEEPALIVE_S        = 60
MQTT_RECONNECT_PERIOD_S = 5     # fixed delay between reconnect attempts
MQTT_CONNECT_TIMEOUT_S  = 30    # before giving up on a connect attempt

VALID_COMMANDS = ("MANUAL_ON", "MANUAL_OFF", "AUTO")

# ── Ingestion & alerting ──────────────────────────────────────────────────────
MAX_LATENCY_MS      = 5000   # |now - packet timestamp| allowed by the validator
WATCHDOG_INTERVAL_S = 30
OFFLINE_THRESHOLD_S = 60
