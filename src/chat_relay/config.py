import os
from pathlib import Path

PROJECT_DIR = Path(__file__).resolve().parent.parent.parent
DATA_DIR = Path(os.environ.get("DATA_DIR", str(PROJECT_DIR / "data")))
SQLITE_PATH = DATA_DIR / "chat_relay.db"

PORT = int(os.environ.get("PORT", "19877"))
MODEL = os.environ.get("MODEL", "claude-sonnet-4-5-20250929")
ROOT_PATH = os.environ.get("ROOT_PATH", "")
RELAY_BASE_URL = os.environ.get("RELAY_BASE_URL", f"http://127.0.0.1:{PORT}")
MAX_AGENT_TURNS = 10

# Unauthenticated user turns (including the current one) allowed before the
# auth marker is injected into the model context.
AUTH_ALERT_MESSAGE_THRESHOLD = 2

# Hard limit of the model transport's call_id field.
TOOL_CALL_ID_MAX_LENGTH = 64
FRONTEND_TOOL_CALL_PREFIX = "frontend"
NATIVE_TOOL_CALL_PREFIX = "tool"

CONTINUATION_SENTINEL = "[[chat-relay:continue-after-frontend-tool]]"
FINGERPRINT_PREFIX_LENGTH = 100

SESSION_COOKIE_NAME = "chat-relay-session-id"
SESSION_COOKIE_MAX_AGE = 60 * 60 * 24 * 365 * 5
USER_ID_HEADER = "X-User-Id"

DEFAULT_CHAT_TITLE = "New Chat"
CHAT_TITLE_MAX_LENGTH = 50
