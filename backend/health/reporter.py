"""
Health reporting.

Responsibilities:
- Aggregate connection status and persisted-file presence into one
  health verdict
- Build the /health response body

Non-responsibilities:
- No HTTP (see server/routes.py)
- No connection decisions

Rule:
    any required path missing -> critical
    otherwise not connected   -> degraded
    otherwise                 -> ok
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping

from session.connection_status import StatusSnapshot

REDACTED = "REDACTED"
AUTH_MISSING_ERROR = "Authentication files missing in production"

# Name of the required path that holds credentials
AUTH_PATH_NAME = "auth"


class HealthStatus(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"
    CRITICAL = "critical"

    @property
    def http_status(self) -> int:
        return 500 if self is HealthStatus.CRITICAL else 200


def aggregate(snapshot: StatusSnapshot, files_present: bool) -> HealthStatus:
    """Pure health rule. File absence outranks connection state."""
    if not files_present:
        return HealthStatus.CRITICAL
    if not snapshot.connected:
        return HealthStatus.DEGRADED
    return HealthStatus.OK


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class HealthReporter:
    """
    Builds health reports from a status source and required paths.

    status_source must be non-blocking (ConnectionManager.get_status).
    """

    def __init__(
        self,
        *,
        status_source: Callable[[], StatusSnapshot],
        required_paths: Mapping[str, Path],
        hardened: bool,
        environment: str,
    ) -> None:
        self._status_source = status_source
        self._required_paths = {name: Path(p) for name, p in required_paths.items()}
        self._hardened = hardened
        self._environment = environment

    def report(self) -> tuple[int, dict[str, Any]]:
        """Return (http_status, body)."""
        snapshot = self._status_source()

        files: dict[str, dict[str, Any]] = {}
        for name, path in self._required_paths.items():
            files[name] = {
                "exists": path.exists(),
                "path": REDACTED if self._hardened else str(path),
            }

        status = aggregate(snapshot, all(f["exists"] for f in files.values()))

        body: dict[str, Any] = {
            "status": status.value,
            "timestamp": _now_iso(),
            "environment": self._environment,
            "whatsappConnected": snapshot.connected,
            "whatsappState": snapshot.state.value,
            "reconnectAttempts": snapshot.attempts,
            "maxReconnectAttempts": snapshot.max_attempts,
            "filesPresent": files,
        }

        auth = files.get(AUTH_PATH_NAME)
        if self._hardened and auth is not None and not auth["exists"]:
            body["error"] = AUTH_MISSING_ERROR

        return status.http_status, body

    def error_body(self, exc: BaseException) -> dict[str, Any]:
        """Body for a failed health computation."""
        return {
            "status": "error",
            "timestamp": _now_iso(),
            "error": "Internal server error" if self._hardened else str(exc),
        }
