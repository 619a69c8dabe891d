"""
Configuration loader — reads .env and exposes all settings.
"""
import os
from dotenv import load_dotenv

load_dotenv()


# ── Upstream (Yellowstone gRPC) ─────────────────────────────────
YELLOWSTONE_ENDPOINT = os.getenv("YELLOWSTONE_ENDPOINT", "https://api.rpcpool.com:443")
YELLOWSTONE_TOKEN = os.getenv("YELLOWSTONE_TOKEN", "")
# PROCESSED / CONFIRMED / FINALIZED
COMMITMENT = os.getenv("COMMITMENT", "CONFIRMED").upper()

# Keepalive ping on the upstream stream
PING_INTERVAL_SECONDS = float(os.getenv("PING_INTERVAL_SECONDS", "30"))

# ── Downstream (WebSocket) ─────────────────────────────────────
WEBSOCKET_HOST = os.getenv("WEBSOCKET_HOST", "0.0.0.0")
WEBSOCKET_PORT = int(os.getenv("WEBSOCKET_PORT", "8080"))

# Per-consumer send queue. Frames beyond this are dropped for that consumer only.
CONSUMER_QUEUE_SIZE = int(os.getenv("CONSUMER_QUEUE_SIZE", "1000"))

# Attach the decoded transaction under a "decoded" key on forwarded
# transaction frames. Off = forward the raw upstream frame only.
FORWARD_DECODED = os.getenv("FORWARD_DECODED", "false").lower() == "true"

# ── Analysis client ────────────────────────────────────────────
RELAY_WS_URL = os.getenv("RELAY_WS_URL", f"ws://localhost:{WEBSOCKET_PORT}")

# ── Logging ────────────────────────────────────────────────────
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
STATS_INTERVAL_SECONDS = int(os.getenv("STATS_INTERVAL_SECONDS", "300"))
