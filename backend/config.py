"""Application-wide configuration constants."""

import platform
import tempfile
from pathlib import Path

# --- Identity ---
APP_ID = "transfersync-v1"
DEVICE_NAME = platform.node()  # default to hostname
PLATFORM = platform.system().lower()  # "windows" | "darwin" | "linux"

# --- Operator API ---
API_HOST = "0.0.0.0"
API_PORT = 8765

# --- Link ---
TRANSFER_PORT = 8988  # fixed TCP port for handshake and file frames
LINK_SUBNET = "192.168.49.0/24"  # Wi-Fi Direct group subnet
DISCOVERY_BACKEND = "manual"  # "manual" | "lan"
DISCOVERY_PORT = 41234  # UDP
DISCOVERY_INTERVAL = 3  # seconds
PEER_TIMEOUT = 10  # seconds before a peer is considered gone

# --- Listener ---
BIND_ATTEMPTS = 3
BIND_RETRY_DELAY = 1.0  # seconds

# --- Handshake ---
HANDSHAKE_PREFIX = "CLIENT_IP::"
READY_POLL_INTERVAL = 0.1  # seconds
READY_POLL_ATTEMPTS = 50  # 5 seconds total
READY_GRACE_PERIOD = 2.0  # seconds
HANDSHAKE_ATTEMPTS = 5
HANDSHAKE_RETRY_DELAY = 1.0  # seconds
HANDSHAKE_CONNECT_TIMEOUT = 5.0  # seconds

# --- Transfer ---
CHUNK_SIZE = 8 * 1024 * 1024  # 8 MiB
SEND_CONNECT_TIMEOUT = 10.0  # seconds
PROGRESS_INTERVAL = 0.1  # seconds between progress samples

# --- Storage ---
DEFAULT_SAVE_DIR = str(Path.home() / "Downloads" / "TransferSync")
FALLBACK_SAVE_DIR = str(Path(tempfile.gettempdir()) / "TransferSync")
