import logging
import os

from dotenv import load_dotenv

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=LOG_LEVEL)

# Authentication is terminated upstream; the gateway forwards the user id.
USER_ID_HEADER = os.getenv("USER_ID_HEADER", "X-User-Id")

# Database Pool settings
DB_POOL_RECYCLE = int(os.getenv("DB_POOL_RECYCLE", "3600"))
DB_POOL_PRE_PING = os.getenv("DB_POOL_PRE_PING", "true").lower() == "true"
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "5"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "10"))
DB_CONNECT_TIMEOUT = int(os.getenv("DB_CONNECT_TIMEOUT", "10"))
DB_CONNECT_RETRIES = int(os.getenv("DB_CONNECT_RETRIES", "5"))

# -------------------------
DB_HOST = os.getenv("DB_HOST")
DB_PORT = os.getenv("DB_PORT", "3306")
DB_USER = os.getenv("DB_USER")
DB_PASSWORD = os.getenv("DB_PASSWORD")
DB_NAME = os.getenv("DB_NAME")

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    if DB_HOST:
        DATABASE_URL = f"mysql+aiomysql://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}"
    else:
        DATABASE_URL = "sqlite+aiosqlite:///./coachtrack.db"

# =============================================
# Processing session lifecycle
# =============================================

# Sessions in started/processing with no write for this long are failed by the sweep
STALE_SESSION_TIMEOUT_MINUTES = int(os.getenv("STALE_SESSION_TIMEOUT_MINUTES", "30"))
STALE_SESSION_SWEEP_MINUTES = int(os.getenv("STALE_SESSION_SWEEP_MINUTES", "5"))
SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"

# Seconds to wait for in-flight AI tasks on shutdown before cancelling them
TASK_SHUTDOWN_TIMEOUT_SECONDS = int(os.getenv("TASK_SHUTDOWN_TIMEOUT_SECONDS", "300"))

# Keep-alive comment interval for the live update stream
EVENT_STREAM_KEEPALIVE_SECONDS = float(os.getenv("EVENT_STREAM_KEEPALIVE_SECONDS", "15"))
# Events buffered per stream connection; older events are dropped when a client stalls
EVENT_STREAM_QUEUE_SIZE = int(os.getenv("EVENT_STREAM_QUEUE_SIZE", "100"))

# =============================================
# In-memory tracker cache
# =============================================

# Users whose sessions/pipelines are cached; least recently used are evicted
TRACKER_CACHE_MAX_USERS = int(os.getenv("TRACKER_CACHE_MAX_USERS", "1000"))
# Finished sessions kept per user besides the current one
TRACKER_CACHE_FINISHED_SESSIONS = int(os.getenv("TRACKER_CACHE_FINISHED_SESSIONS", "20"))
