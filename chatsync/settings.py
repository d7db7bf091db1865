"""Configuration for the chat sync core."""
import os
import socket
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent
LOGS_DIR = Path(os.getenv("LOGS_DIR", str(BASE_DIR / "logs")))
LOGS_DIR.mkdir(parents=True, exist_ok=True)
DATA_DIR = Path(os.getenv("DATA_DIR", str(BASE_DIR / "data")))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
BETTERSTACK_SOURCE_TOKEN = os.getenv("BETTERSTACK_SOURCE_TOKEN")
BETTERSTACK_INGEST_HOST = os.getenv("BETTERSTACK_INGEST_HOST")

# Realtime channel
WS_URL = os.getenv("WS_URL", "ws://localhost:3001")
AUTH_TOKEN = os.getenv("AUTH_TOKEN")
DEVICE_ID = os.getenv("DEVICE_ID", socket.gethostname())
API_VERSION = os.getenv("API_VERSION", "v1")

# Timeouts (seconds)
CONNECT_TIMEOUT = float(os.getenv("CONNECT_TIMEOUT", "15"))
HEALTH_CHECK_ENABLED = os.getenv("HEALTH_CHECK_ENABLED", "true").lower() == "true"
HEALTH_CHECK_TIMEOUT = float(os.getenv("HEALTH_CHECK_TIMEOUT", "5"))

# Reconnect backoff
RECONNECT_BASE_INTERVAL = float(os.getenv("RECONNECT_BASE_INTERVAL", "2"))
RECONNECT_MAX_INTERVAL = float(os.getenv("RECONNECT_MAX_INTERVAL", "60"))
RECONNECT_MAX_ATTEMPTS = int(os.getenv("RECONNECT_MAX_ATTEMPTS", "10"))  # 0 = unlimited
BACKOFF_FACTOR = float(os.getenv("BACKOFF_FACTOR", "1.5"))
BACKOFF_JITTER = 0.15  # delays are scaled by a random factor in [1 - j, 1 + j]
# Smallest exponential factor for which a jittered delay never falls below the previous one
MIN_BACKOFF_FACTOR = (1 + BACKOFF_JITTER) / (1 - BACKOFF_JITTER)
USE_EXPONENTIAL_BACKOFF = os.getenv("USE_EXPONENTIAL_BACKOFF", "true").lower() == "true"

# Heartbeat
PING_INTERVAL = float(os.getenv("PING_INTERVAL", "30"))
PONG_TIMEOUT = float(os.getenv("PONG_TIMEOUT", "2"))
MAX_MISSED_PONGS = int(os.getenv("MAX_MISSED_PONGS", "3"))

# Offline queue
QUEUE_DIR = Path(os.getenv("QUEUE_DIR", str(DATA_DIR / "queue")))
QUEUE_MAX_SIZE = int(os.getenv("QUEUE_MAX_SIZE", "1000"))
QUEUE_DEMOTE_AFTER = int(os.getenv("QUEUE_DEMOTE_AFTER", "3"))
MAX_DELIVERY_ATTEMPTS = int(os.getenv("MAX_DELIVERY_ATTEMPTS", "5"))

# Sync coordinator
SYNC_BATCH_SIZE = int(os.getenv("SYNC_BATCH_SIZE", "10"))
AUTO_SYNC_INTERVAL = float(os.getenv("AUTO_SYNC_INTERVAL", "30"))
ERROR_RETRY_INTERVAL = float(os.getenv("ERROR_RETRY_INTERVAL", "60"))
CHECKPOINT_DIR = Path(os.getenv("CHECKPOINT_DIR", str(DATA_DIR / "checkpoints")))

# Message store
MESSAGE_STORE = os.getenv("MESSAGE_STORE", "file")  # file | postgres | memory
MESSAGE_STORE_DIR = Path(os.getenv("MESSAGE_STORE_DIR", str(DATA_DIR / "messages")))
DATABASE_URL = os.getenv("DATABASE_URL")

# Network monitor
NETWORK_PROBE_URL = os.getenv("NETWORK_PROBE_URL")
NETWORK_PROBE_INTERVAL = int(os.getenv("NETWORK_PROBE_INTERVAL", "10"))

# Interactive client
CONVERSATION_ID = os.getenv("CONVERSATION_ID")


def validate_config():
    """Validate required configuration."""
    errors = []

    if not WS_URL.startswith(("ws://", "wss://")):
        errors.append(f"WS_URL must use ws:// or wss://: {WS_URL}")

    if MESSAGE_STORE not in ("file", "postgres", "memory"):
        errors.append(f"MESSAGE_STORE must be file, postgres or memory: {MESSAGE_STORE}")
    elif MESSAGE_STORE == "postgres" and not DATABASE_URL:
        errors.append("DATABASE_URL is required when MESSAGE_STORE=postgres")

    if QUEUE_MAX_SIZE < 1:
        errors.append(f"QUEUE_MAX_SIZE must be positive: {QUEUE_MAX_SIZE}")

    if RECONNECT_BASE_INTERVAL <= 0 or RECONNECT_MAX_INTERVAL < RECONNECT_BASE_INTERVAL:
        errors.append(
            "RECONNECT_BASE_INTERVAL must be positive and not exceed RECONNECT_MAX_INTERVAL"
        )

    if USE_EXPONENTIAL_BACKOFF and BACKOFF_FACTOR < MIN_BACKOFF_FACTOR:
        errors.append(
            f"BACKOFF_FACTOR must be at least {MIN_BACKOFF_FACTOR:.2f} with exponential backoff: {BACKOFF_FACTOR}"
        )

    for path in (QUEUE_DIR, CHECKPOINT_DIR, MESSAGE_STORE_DIR):
        try:
            path.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            errors.append(f"Cannot create {path}: {e}")

    if errors:
        raise ValueError("Config errors:\n  " + "\n  ".join(errors))
