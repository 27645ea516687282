"""
Event definitions for the connection reducer.

Rules:
- Events describe facts that have occurred.
- Events carry data only (no behavior).
- All reducer decisions are based on these events.
- No clocks, no timers, no async, no side effects.

Session-scoped events carry the generation of the transport session that
produced them, so updates from a superseded session can be ignored.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from adapters.transport.base import InboundMessage
from persistence.credential_store import Credentials


# =============================================================================
# Event Type Enumeration
# =============================================================================

class EventType(str, Enum):
    """
    Canonical event types understood by the reducer.

    Every (phase, event_type) pair must be explicitly handled
    or explicitly ignored by the reducer.
    """

    # ------------------------------------------------------------------
    # Caller / lifecycle
    # ------------------------------------------------------------------
    CONNECT_REQUESTED = "CONNECT_REQUESTED"
    SHUTDOWN_REQUESTED = "SHUTDOWN_REQUESTED"

    # ------------------------------------------------------------------
    # Connect attempt outcome
    # ------------------------------------------------------------------
    SESSION_OPENED = "SESSION_OPENED"
    CONNECT_FAILED = "CONNECT_FAILED"

    # ------------------------------------------------------------------
    # Transport lifecycle
    # ------------------------------------------------------------------
    PAIRING_REQUESTED = "PAIRING_REQUESTED"
    CONNECTION_OPENED = "CONNECTION_OPENED"
    CONNECTION_CLOSED = "CONNECTION_CLOSED"
    CREDENTIALS_ROTATED = "CREDENTIALS_ROTATED"
    MESSAGES_RECEIVED = "MESSAGES_RECEIVED"

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------
    RETRY_READY = "RETRY_READY"


# =============================================================================
# Base Event
# =============================================================================

@dataclass(frozen=True)
class Event:
    """
    Base event type.

    All events must specify:
    - event_type: discriminant
    - ts_ms: timestamp provided by the source (or fake in tests)
    """

    event_type: EventType
    ts_ms: int


@dataclass(frozen=True)
class SessionEvent(Event):
    """
    Base class for events produced by one transport session.

    The reducer MUST ignore events whose generation does not match the
    current session generation.
    """

    generation: int


# =============================================================================
# Caller / lifecycle
# =============================================================================

@dataclass(frozen=True)
class ConnectRequested(Event):
    """Caller (startup or operator) asked for a session."""


@dataclass(frozen=True)
class ShutdownRequested(Event):
    """Process is stopping; no further connects or retries."""


# =============================================================================
# Connect attempt outcome
# =============================================================================

@dataclass(frozen=True)
class SessionOpened(SessionEvent):
    """transport.connect() returned a live session object."""


@dataclass(frozen=True)
class ConnectFailed(SessionEvent):
    """
    transport.connect() (or its preconditions) raised.

    transient is True for socket-level failures (OSError, timeouts,
    TransportError) that follow the close decision rule.
    """
    message: str
    status_code: int | None = None
    transient: bool = False


# =============================================================================
# Transport lifecycle
# =============================================================================

@dataclass(frozen=True)
class PairingRequested(SessionEvent):
    """Transport needs an out-of-band pairing step."""
    code: str


@dataclass(frozen=True)
class ConnectionOpened(SessionEvent):
    """Transport reports the session as open."""
    user_id: str | None = None


@dataclass(frozen=True)
class ConnectionClosed(SessionEvent):
    """Transport reports the session as closed."""
    status_code: int | None = None
    error: str | None = None


@dataclass(frozen=True)
class CredentialsRotated(SessionEvent):
    """Transport rotated its credentials."""
    credentials: Credentials


@dataclass(frozen=True)
class MessagesReceived(SessionEvent):
    """Inbound batch; live=False marks history backfill."""
    messages: tuple[InboundMessage, ...]
    live: bool


# =============================================================================
# Timers
# =============================================================================

@dataclass(frozen=True)
class RetryReady(Event):
    """
    Backoff delay elapsed for the given attempt.

    attempt lets the reducer drop a stale timer that fired after a newer
    decision was made.
    """
    attempt: int
