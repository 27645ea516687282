"""
Error classification for connection failures.

Maps a raw failure (message text, transport status code) to a typed
outcome. The mapping table is explicit and total:

    input category          kind              critical  retryable
    ----------------------  ----------------  --------  ---------
    auth files absent       AUTH_ERROR        True      False
    session revoked (401)   AUTH_ERROR        True      False
    connection closed       TRANSPORT_CLOSED  False     True
    unauthorized            AUTH_ERROR        True      False
    anything else           UNKNOWN           True      False

Rules:
- Pure: no logging, no IO, no clocks.
- Deterministic: same input, same output.
- Matching is case-insensitive substring matching on the message.

handle_error() and format_error() are the only helpers here with side
effects (logging / timestamps); they sit on top of the pure table.
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from adapters.transport.base import DisconnectReason, TransportError
from observability.logger import log_event
from session.errors import AuthMissing


class ErrorKind(str, Enum):
    AUTH_ERROR = "AUTH_ERROR"
    TRANSPORT_CLOSED = "CONNECTION_ERROR"
    UNKNOWN = "UNKNOWN_ERROR"


# Stable machine-readable reasons (one per input category)
REASON_AUTH_MISSING = "auth_missing"
REASON_SESSION_REVOKED = "session_revoked"
REASON_CONNECTION_CLOSED = "connection_closed"
REASON_UNAUTHORIZED = "unauthorized"
REASON_UNKNOWN = "unknown"

_AUTH_MISSING_MARKER = "authentication files not found"
_CONNECTION_CLOSED_MARKER = "connection closed"
_UNAUTHORIZED_MARKER = "unauthorized"

_REDACTED_MESSAGE = "An internal error occurred"


@dataclass(frozen=True)
class ClassifiedError:
    """
    Typed classification outcome. Derived, never persisted.

    message is the operator-facing text (redacted for UNKNOWN when hardened).
    """
    kind: ErrorKind
    critical: bool
    retryable: bool
    remediation: str
    reason: str
    message: str
    status_code: int | None = None

    @property
    def revoked(self) -> bool:
        return self.reason == REASON_SESSION_REVOKED


# =============================================================================
# Category constructors
# =============================================================================

def _auth_missing(status_code: int | None) -> ClassifiedError:
    return ClassifiedError(
        kind=ErrorKind.AUTH_ERROR,
        critical=True,
        retryable=False,
        remediation="Please follow the deployment guide to set up authentication files",
        reason=REASON_AUTH_MISSING,
        message="WhatsApp authentication files not found",
        status_code=status_code,
    )


def _session_revoked(status_code: int | None) -> ClassifiedError:
    return ClassifiedError(
        kind=ErrorKind.AUTH_ERROR,
        critical=True,
        retryable=False,
        remediation="Session logged out. New authentication required",
        reason=REASON_SESSION_REVOKED,
        message="WhatsApp session was logged out",
        status_code=status_code,
    )


def _connection_closed(status_code: int | None) -> ClassifiedError:
    return ClassifiedError(
        kind=ErrorKind.TRANSPORT_CLOSED,
        critical=False,
        retryable=True,
        remediation="The system will attempt to reconnect automatically",
        reason=REASON_CONNECTION_CLOSED,
        message="WhatsApp connection was closed",
        status_code=status_code,
    )


def _unauthorized(status_code: int | None) -> ClassifiedError:
    return ClassifiedError(
        kind=ErrorKind.AUTH_ERROR,
        critical=True,
        retryable=False,
        remediation="Re-authentication required. Please check the deployment guide",
        reason=REASON_UNAUTHORIZED,
        message="WhatsApp session is no longer valid",
        status_code=status_code,
    )


def _unknown(message: str, status_code: int | None, hardened: bool) -> ClassifiedError:
    return ClassifiedError(
        kind=ErrorKind.UNKNOWN,
        critical=True,
        retryable=False,
        remediation="Please check the logs for more details",
        reason=REASON_UNKNOWN,
        message=_REDACTED_MESSAGE if hardened else message,
        status_code=status_code,
    )


def _match_auth(lowered: str, status_code: int | None) -> ClassifiedError | None:
    if _AUTH_MISSING_MARKER in lowered:
        return _auth_missing(status_code)
    if status_code == DisconnectReason.LOGGED_OUT:
        return _session_revoked(status_code)
    return None


# =============================================================================
# Public API
# =============================================================================

def classify(
    message: str | None,
    status_code: int | None = None,
    *,
    hardened: bool = False,
) -> ClassifiedError:
    """Classify an arbitrary failure. Total over all inputs."""
    text = message or ""
    lowered = text.lower()

    matched = _match_auth(lowered, status_code)
    if matched is not None:
        return matched

    if _CONNECTION_CLOSED_MARKER in lowered:
        return _connection_closed(status_code)

    if _UNAUTHORIZED_MARKER in lowered:
        return _unauthorized(status_code)

    return _unknown(text, status_code, hardened)


def classify_close(
    status_code: int | None,
    message: str | None = None,
) -> ClassifiedError:
    """
    Classify a transport close event.

    A close event is a closed connection unless the status code or message
    says the credentials are gone or rejected.
    """
    lowered = (message or "").lower()

    matched = _match_auth(lowered, status_code)
    if matched is not None:
        return matched

    if _UNAUTHORIZED_MARKER in lowered:
        return _unauthorized(status_code)

    return _connection_closed(status_code)


def classify_exception(exc: BaseException, *, hardened: bool = False) -> ClassifiedError:
    """Classify a raised exception, honouring codes carried by typed errors."""
    if isinstance(exc, AuthMissing):
        return _auth_missing(None)

    status_code = exc.status_code if isinstance(exc, TransportError) else None
    return classify(str(exc), status_code, hardened=hardened)


def is_operational(classified: ClassifiedError) -> bool:
    """Operational errors are expected conditions the system knows how to report."""
    return classified.kind in (ErrorKind.AUTH_ERROR, ErrorKind.TRANSPORT_CLOSED)


def format_error(
    exc: BaseException,
    *,
    include_stack: bool = False,
    hardened: bool = False,
) -> dict[str, Any]:
    """Serializable error summary for logs and HTTP bodies."""
    classified = classify_exception(exc, hardened=hardened)
    stack = None
    if include_stack and not hardened:
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return {
        "message": str(exc),
        "type": classified.kind.value,
        "stack": stack,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def handle_error(
    exc: BaseException,
    context: str = "",
    *,
    hardened: bool = False,
) -> ClassifiedError:
    """Log an error with its context and return its classification."""
    classified = classify_exception(exc, hardened=hardened)
    log_event({
        "level": "error",
        "event_type": "ERROR_OCCURRED",
        "context": context,
        "error": format_error(exc, include_stack=True, hardened=hardened),
        "kind": classified.kind.value,
        "reason": classified.reason,
        "critical": classified.critical,
        "action": classified.remediation,
    })
    return classified
