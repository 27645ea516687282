"""
CONSTANTS
---------
Single source of truth for behavioral defaults of the session keeper.

Rules:
- If changing a value changes runtime behavior, it belongs here.
- Environment overrides are applied in config.py, never here.
- Other modules MUST import from this file.
"""

from __future__ import annotations

from typing import Final

# =============================================================================
# Deployment
# =============================================================================

ENV_PRODUCTION: Final[str] = "production"
ENV_DEVELOPMENT: Final[str] = "development"

DEFAULT_HEALTH_CHECK_PORT: Final[int] = 3000

AUTH_DIR_NAME: Final[str] = "auth_info_baileys"
STORE_FILE_NAME: Final[str] = "baileys_store.json"
CREDS_FILE_NAME: Final[str] = "creds.json"

DEFAULT_TRANSPORT_BRIDGE_URL: Final[str] = "ws://127.0.0.1:8765"

# =============================================================================
# Connection timing
# =============================================================================

CONNECT_TIMEOUT_MS_PRODUCTION: Final[int] = 60_000
CONNECT_TIMEOUT_MS_DEVELOPMENT: Final[int] = 30_000

PAIRING_TIMEOUT_MS_PRODUCTION: Final[int] = 60_000
PAIRING_TIMEOUT_MS_DEVELOPMENT: Final[int] = 30_000

DEFAULT_QUERY_TIMEOUT_MS: Final[int] = 60_000
KEEP_ALIVE_INTERVAL_MS: Final[int] = 10_000

# Outbound send acknowledgment window (bridge transport)
SEND_ACK_TIMEOUT_MS: Final[int] = 15_000

# =============================================================================
# Reconnect policy
# =============================================================================

MAX_RECONNECT_ATTEMPTS_PRODUCTION: Final[int] = 10
MAX_RECONNECT_ATTEMPTS_DEVELOPMENT: Final[int] = 5

RECONNECT_BASE_DELAY_MS: Final[int] = 1_000
RECONNECT_CAP_DELAY_MS: Final[int] = 10_000

# =============================================================================
# Message history snapshot
# =============================================================================

STORE_FLUSH_INTERVAL_S: Final[float] = 10.0
HISTORY_MAX_MESSAGES_PER_CHAT: Final[int] = 100

# =============================================================================
# Notifications
# =============================================================================

SELF_NOTIFICATION_TEMPLATE: Final[str] = "🤖 Bot {mode} is now connected and ready!"
USER_ADDRESS_SUFFIX: Final[str] = "@s.whatsapp.net"
