"""
Centralized configuration for MealMatch.
All settings come from environment variables for 12-factor deployment.
"""

import os


def _env_bool(name: str, default: bool = False) -> bool:
    val = os.environ.get(name)
    if val is None:
        return default
    return val.strip().lower() in {"1", "true", "yes", "on"}


BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------
DATABASE_URL = os.environ.get(
    "DATABASE_URL",
    f"sqlite:///{os.path.join(BASE_DIR, 'mealmatch.db')}",
)
# SQLite busy timeout (ms) applied on every new connection.
SQLITE_BUSY_TIMEOUT_MS = int(os.environ.get("SQLITE_BUSY_TIMEOUT_MS", "5000"))

# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------
PORT = int(os.environ.get("PORT", "8001"))
CORS_ORIGINS = [
    s.strip()
    for s in os.environ.get("CORS_ORIGINS", "*").split(",")
    if s.strip()
]

# ---------------------------------------------------------------------------
# Push notifications (Expo)
# ---------------------------------------------------------------------------
PUSH_ENABLED = _env_bool("PUSH_ENABLED", True)
PUSH_GATEWAY_URL = os.environ.get(
    "PUSH_GATEWAY_URL",
    "https://exp.host/--/api/v2/push/send",
)
PUSH_TIMEOUT_SECONDS = float(os.environ.get("PUSH_TIMEOUT_SECONDS", "10"))
MATCH_NOTIFICATION_TITLE = os.environ.get("MATCH_NOTIFICATION_TITLE", "It's a Match!")

# ---------------------------------------------------------------------------
# Realtime channel
# ---------------------------------------------------------------------------
# Events buffered per in-process subscription before it is marked errored.
REALTIME_QUEUE_SIZE = int(os.environ.get("REALTIME_QUEUE_SIZE", "100"))

# ---------------------------------------------------------------------------
# Caller-side retry for StorageUnavailable
# ---------------------------------------------------------------------------
STORAGE_RETRY_ATTEMPTS = int(os.environ.get("STORAGE_RETRY_ATTEMPTS", "3"))
STORAGE_RETRY_INITIAL_SECONDS = float(os.environ.get("STORAGE_RETRY_INITIAL_SECONDS", "0.2"))
STORAGE_RETRY_MAX_SECONDS = float(os.environ.get("STORAGE_RETRY_MAX_SECONDS", "2.0"))
