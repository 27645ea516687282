"""
Transport adapter contract.

The transport implements the actual wire protocol, encryption and pairing
handshake. The session keeper consumes it only through:

- connect(credentials, on_update, timeouts) -> TransportSession
- TransportSession.send_message(destination, content)
- TransportSession.close()
- a stream of TransportUpdate values pushed into on_update

Rules:
- Updates carry data only (no behavior).
- Adapters never touch connection state; they only report facts.
- Adapters may await on_update; the manager serializes processing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable, Union

from persistence.credential_store import Credentials


# =============================================================================
# Disconnect reasons
# =============================================================================

class DisconnectReason(IntEnum):
    """
    Close status codes reported by the multi-device transport.

    LOGGED_OUT is the only code that means the credentials are permanently
    invalid (session revoked from the phone).
    """

    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    TIMED_OUT = 408
    CONNECTION_REPLACED = 440
    LOGGED_OUT = 401
    BAD_SESSION = 500
    RESTART_REQUIRED = 515
    MULTIDEVICE_MISMATCH = 411
    FORBIDDEN = 403
    UNAVAILABLE_SERVICE = 503


class TransportError(Exception):
    """
    Transport-level failure (handshake, send, closed socket).

    status_code mirrors DisconnectReason when the transport reported one.
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


# =============================================================================
# Updates
# =============================================================================

@dataclass(frozen=True)
class PairingRequested:
    """Transport needs an out-of-band pairing step (e.g. scannable code)."""
    code: str


@dataclass(frozen=True)
class ConnectionOpened:
    """Session established; user_id is the account's own address."""
    user_id: str | None = None


@dataclass(frozen=True)
class ConnectionClosed:
    """Session closed by the remote side or by a local socket failure."""
    status_code: int | None = None
    error: str | None = None


@dataclass(frozen=True)
class CredentialsRotated:
    """Transport rotated its credentials; they must be persisted."""
    credentials: Credentials


@dataclass(frozen=True)
class InboundMessage:
    """
    One inbound message as delivered by the transport.

    content is opaque to the session keeper.
    """
    message_id: str
    chat_id: str
    sender: str | None = None
    from_me: bool = False
    timestamp_ms: int | None = None
    content: dict[str, Any] = field(default_factory=lambda: {})


@dataclass(frozen=True)
class MessagesReceived:
    """
    Batch of inbound messages.

    live is True for real-time delivery ("notify") and False for
    history backfill ("append").
    """
    messages: tuple[InboundMessage, ...]
    live: bool


TransportUpdate = Union[
    PairingRequested,
    ConnectionOpened,
    ConnectionClosed,
    CredentialsRotated,
    MessagesReceived,
]

UpdateSink = Callable[[TransportUpdate], Awaitable[None]]


# =============================================================================
# Protocols
# =============================================================================

@runtime_checkable
class TransportSessionProtocol(Protocol):
    """A single live transport session. Exclusively owned by the manager."""

    @property
    def user_id(self) -> str | None: ...

    async def send_message(self, destination: str, content: dict[str, Any]) -> None:
        """Send and await acknowledgment. Raises TransportError on failure."""

    async def close(self) -> None:
        """Close the session. Must be idempotent."""


@runtime_checkable
class TransportProtocol(Protocol):
    async def connect(
        self,
        *,
        credentials: Credentials | None,
        on_update: UpdateSink,
        connect_timeout_ms: int,
        pairing_timeout_ms: int,
    ) -> TransportSessionProtocol:
        """
        Open a new session.

        Returns once the socket exists; lifecycle facts (pairing, open,
        close) arrive later through on_update.
        """
