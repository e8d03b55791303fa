import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

# "redis" or "memory"
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "redis").lower()

# Unknown identities are created on first announce (find-or-create)
AUTO_REGISTER_IDENTITIES = os.getenv("AUTO_REGISTER_IDENTITIES", "true").lower() != "false"

TYPING_EXPIRY_SECONDS = float(os.getenv("TYPING_EXPIRY_SECONDS", 5))
REAPER_INTERVAL_SECONDS = float(os.getenv("REAPER_INTERVAL_SECONDS", 30))
# Idle connections get a server "ping"; a client that never answers goes stale
HEARTBEAT_IDLE_SECONDS = float(os.getenv("HEARTBEAT_IDLE_SECONDS", 30))
STALE_CONNECTION_SECONDS = float(os.getenv("STALE_CONNECTION_SECONDS", 120))
OUTBOUND_QUEUE_SIZE = int(os.getenv("OUTBOUND_QUEUE_SIZE", 256))

HISTORY_PAGE_SIZE = int(os.getenv("HISTORY_PAGE_SIZE", 50))
HISTORY_MAX_PAGE_SIZE = int(os.getenv("HISTORY_MAX_PAGE_SIZE", 200))
MESSAGE_TTL_SECONDS = int(os.getenv("MESSAGE_TTL_SECONDS", 0))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# WebSocket close codes used by the engine
WS_CLOSE_SUPERSEDED = 4001
WS_CLOSE_STALE = 4002
WS_CLOSE_BACKLOG = 4003
WS_CLOSE_GOING_AWAY = 1001

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))
