"""
Service configuration.

Every setting is read once from the environment at import time. Override
any of them by exporting the matching QUESTMAP_* variable before starting
the server.
"""

import os
from pathlib import Path

# Server settings
HOST = os.getenv("QUESTMAP_HOST", "127.0.0.1")
PORT = int(os.getenv("QUESTMAP_PORT", "8000"))
API_PREFIX = os.getenv("QUESTMAP_API_PREFIX", "/api/adventure")

# Database settings
DATABASE_URL = os.getenv("QUESTMAP_DATABASE_URL", "sqlite+aiosqlite:///./questmap.db")
DB_RETRY_ATTEMPTS = int(os.getenv("QUESTMAP_DB_RETRY_ATTEMPTS", "2"))  # first try + one retry
DB_RETRY_BACKOFF = float(os.getenv("QUESTMAP_DB_RETRY_BACKOFF", "0.05"))  # seconds, doubled per attempt

# Upstream collaborators (unset = in-memory adapters, useful for local play)
TASKS_URL = os.getenv("QUESTMAP_TASKS_URL") or None
XP_URL = os.getenv("QUESTMAP_XP_URL") or None
UPSTREAM_TIMEOUT = float(os.getenv("QUESTMAP_UPSTREAM_TIMEOUT", "3.0"))

# Request identity
USER_HEADER = os.getenv("QUESTMAP_USER_HEADER", "X-User-Id")
TIMEZONE_HEADER = "X-Timezone"

# Adventure settings
TIMEZONE = os.getenv("QUESTMAP_TIMEZONE", "UTC")
MAX_NODES = int(os.getenv("QUESTMAP_MAX_NODES", "15"))
WORLD_DATA = Path(
    os.getenv("QUESTMAP_WORLD_DATA", str(Path(__file__).parent / "world_data" / "worlds.yaml"))
)

# Logging
LOG_LEVEL = os.getenv("QUESTMAP_LOG_LEVEL", "INFO")
