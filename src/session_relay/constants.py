"""Shared constants for Session Relay."""

from pathlib import Path


HOME_DIR = Path.home() / ".session-relay"
LOG_DIR = HOME_DIR / "logs"
RECORDING_DIR = HOME_DIR / "term"
RUN_BUFFER_DIR = HOME_DIR / "agent-buffers"
DB_DIR = HOME_DIR / "db"
DB_FILE = DB_DIR / "relay.db"
CONFIG_FILE = HOME_DIR / "config.json"
CONFIG_ENV_VAR = "SESSION_RELAY_CONFIG"
SERVER_HOST = "127.0.0.1"
SERVER_PORT = 9889
WS_PATH = "/ws/term"

DEFAULT_COLS = 120
DEFAULT_ROWS = 30
DEFAULT_TAIL_BYTES = 20_000
MIN_TAIL_BYTES = 1024
MAX_TAIL_BYTES = 200_000
RUN_TAIL_PROBE_BYTES = 2048
