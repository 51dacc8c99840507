"""Application-wide configuration constants."""

import os
import string

# --- Identity ---
APP_NAME = "ZipLink"
APP_VERSION = "1.0.0"

# --- Networking ---
API_HOST = os.environ.get("API_HOST", "0.0.0.0")
API_PORT = int(os.environ.get("PORT", "3001"))
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.environ.get(
        "ALLOWED_ORIGINS",
        "http://localhost:5173,http://127.0.0.1:5173,http://localhost:3000",
    ).split(",")
    if origin.strip()
]
SIGNALING_URL = os.environ.get("SIGNALING_URL", f"ws://localhost:{API_PORT}/ws")

# --- Sessions ---
SESSION_CODE_LENGTH = 8
SESSION_CODE_ALPHABET = string.ascii_uppercase + string.digits
SESSION_TTL = float(os.environ.get("SESSION_TTL", "300"))  # seconds
SWEEP_INTERVAL = float(os.environ.get("SWEEP_INTERVAL", "60"))  # seconds

# --- Negotiation ---
ICE_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
]
NEGOTIATION_TIMEOUT = float(os.environ.get("NEGOTIATION_TIMEOUT", "30"))  # seconds
DATA_CHANNEL_LABEL = "fileTransfer"

# --- Transfer ---
CHUNK_SIZE = 16384  # 16 KB
BUFFER_HIGH_WATER = 16 * 1024 * 1024  # 16 MB of unsent data on the channel
BACKPRESSURE_POLL_INTERVAL = 0.01  # seconds

# --- Logging ---
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
