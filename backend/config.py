"""
Application configuration.

Responsibilities:
- Load deployment-specific configuration
- Read environment variables
- Provide typed, immutable config objects

Non-responsibilities:
- No connection logic
- No behavioral constants (see constants.py)
- No runtime mutation
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from constants import (
    AUTH_DIR_NAME,
    CONNECT_TIMEOUT_MS_DEVELOPMENT,
    CONNECT_TIMEOUT_MS_PRODUCTION,
    DEFAULT_HEALTH_CHECK_PORT,
    DEFAULT_TRANSPORT_BRIDGE_URL,
    ENV_DEVELOPMENT,
    ENV_PRODUCTION,
    MAX_RECONNECT_ATTEMPTS_DEVELOPMENT,
    MAX_RECONNECT_ATTEMPTS_PRODUCTION,
    PAIRING_TIMEOUT_MS_DEVELOPMENT,
    PAIRING_TIMEOUT_MS_PRODUCTION,
    RECONNECT_BASE_DELAY_MS,
    RECONNECT_CAP_DELAY_MS,
    STORE_FILE_NAME,
    STORE_FLUSH_INTERVAL_S,
)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return int(raw)


@dataclass(frozen=True)
class ConnectionConfig:
    """
    Immutable connection lifecycle configuration.

    Handed to ConnectionManager at construction; never re-read.
    """

    connect_timeout_ms: int
    pairing_timeout_ms: int
    max_reconnect_attempts: int
    base_delay_ms: int
    cap_delay_ms: int
    interactive_pairing: bool
    require_credentials: bool

    def __post_init__(self) -> None:
        if self.max_reconnect_attempts <= 0:
            raise ValueError("max_reconnect_attempts must be > 0")
        if self.base_delay_ms < 0 or self.cap_delay_ms < 0:
            raise ValueError("reconnect delays must be >= 0")
        if self.connect_timeout_ms <= 0 or self.pairing_timeout_ms <= 0:
            raise ValueError("timeouts must be > 0")


@dataclass(frozen=True)
class AppConfig:
    """
    Immutable application configuration.

    Constructed once at process startup.
    Passed downward to the manager, stores and health surface.
    """

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    env: str
    log_level: str

    # ------------------------------------------------------------------
    # Persisted state
    # ------------------------------------------------------------------

    auth_path: Path
    store_path: Path
    store_flush_interval_s: float

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    transport_bridge_url: str
    connection: ConnectionConfig

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    health_check_port: int

    @property
    def is_production(self) -> bool:
        """Production deployments are hardened: redacted errors and paths."""
        return self.env == ENV_PRODUCTION

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @staticmethod
    def load_from_env() -> AppConfig:
        """
        Load configuration from environment variables.

        Raises:
            ValueError if a numeric variable is malformed or out of range.
        """
        env = os.environ.get("ENV", ENV_DEVELOPMENT)
        production = env == ENV_PRODUCTION

        data_dir = Path(os.environ.get("DATA_DIR") or os.getcwd())

        connection = ConnectionConfig(
            connect_timeout_ms=_env_int(
                "CONNECT_TIMEOUT_MS",
                CONNECT_TIMEOUT_MS_PRODUCTION if production else CONNECT_TIMEOUT_MS_DEVELOPMENT,
            ),
            pairing_timeout_ms=_env_int(
                "PAIRING_TIMEOUT_MS",
                PAIRING_TIMEOUT_MS_PRODUCTION if production else PAIRING_TIMEOUT_MS_DEVELOPMENT,
            ),
            max_reconnect_attempts=_env_int(
                "MAX_RECONNECT_ATTEMPTS",
                MAX_RECONNECT_ATTEMPTS_PRODUCTION if production else MAX_RECONNECT_ATTEMPTS_DEVELOPMENT,
            ),
            base_delay_ms=_env_int("RECONNECT_BASE_DELAY_MS", RECONNECT_BASE_DELAY_MS),
            cap_delay_ms=_env_int("RECONNECT_CAP_DELAY_MS", RECONNECT_CAP_DELAY_MS),
            interactive_pairing=_env_bool("INTERACTIVE_PAIRING", not production),
            require_credentials=_env_bool("REQUIRE_CREDENTIALS", production),
        )

        return AppConfig(
            env=env,
            log_level=os.environ.get("LOG_LEVEL", "info" if production else "debug"),
            auth_path=Path(os.environ.get("AUTH_PATH") or data_dir / AUTH_DIR_NAME),
            store_path=Path(os.environ.get("STORE_PATH") or data_dir / STORE_FILE_NAME),
            store_flush_interval_s=float(
                os.environ.get("STORE_FLUSH_INTERVAL_S", STORE_FLUSH_INTERVAL_S)
            ),
            transport_bridge_url=os.environ.get(
                "TRANSPORT_BRIDGE_URL", DEFAULT_TRANSPORT_BRIDGE_URL
            ),
            connection=connection,
            health_check_port=_env_int("HEALTH_CHECK_PORT", DEFAULT_HEALTH_CHECK_PORT),
        )
