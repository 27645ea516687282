"""
Side-effect command definitions for the connection manager.

Rules:
- Commands are declarative requests for side effects.
- Commands are emitted by the reducer and executed by the manager.
- No behavior, no async, no I/O, no clocks.
Invariant:
    - All concrete Command subclasses MUST be frozen dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from adapters.transport.base import InboundMessage
from orchestrator.classifier import ClassifiedError
from persistence.credential_store import Credentials


# =============================================================================
# Command Type Enumeration
# =============================================================================

class CommandType(str, Enum):
    """Stable discriminants used for logging and dispatch."""

    # Session
    OPEN_SESSION = "OPEN_SESSION"
    CLOSE_SESSION = "CLOSE_SESSION"

    # Reconnect timer
    SCHEDULE_RECONNECT = "SCHEDULE_RECONNECT"
    CANCEL_RECONNECT = "CANCEL_RECONNECT"

    # Persistence
    SAVE_CREDENTIALS = "SAVE_CREDENTIALS"

    # Delivery
    DISPATCH_MESSAGES = "DISPATCH_MESSAGES"
    SEND_SELF_NOTIFICATION = "SEND_SELF_NOTIFICATION"
    SURFACE_PAIRING_CODE = "SURFACE_PAIRING_CODE"

    # Lifecycle
    SIGNAL_TERMINAL = "SIGNAL_TERMINAL"

    # Observability
    LOG_EVENT = "LOG_EVENT"


# =============================================================================
# Base Command
# =============================================================================

class Command:
    """
    Base command type.

    command_type is an explicit discriminant and must never be inferred
    from Python type identity.
    """

    command_type: CommandType


# =============================================================================
# Session Commands
# =============================================================================

@dataclass(frozen=True)
class OpenSession(Command):
    """
    Open a new transport session tagged with generation.

    The manager must close any previous session first.
    """
    generation: int
    command_type: CommandType = CommandType.OPEN_SESSION


@dataclass(frozen=True)
class CloseSession(Command):
    """Close the current transport session, if any."""
    reason: str
    command_type: CommandType = CommandType.CLOSE_SESSION


# =============================================================================
# Reconnect Commands
# =============================================================================

@dataclass(frozen=True)
class ScheduleReconnect(Command):
    """
    Wait delay_ms, then emit RetryReady(attempt).

    Reducer decides *that* a retry happens; the manager performs the waiting.
    """
    attempt: int
    delay_ms: int
    command_type: CommandType = CommandType.SCHEDULE_RECONNECT


@dataclass(frozen=True)
class CancelReconnect(Command):
    """Cancel a pending reconnect timer. Idempotent."""
    command_type: CommandType = CommandType.CANCEL_RECONNECT


# =============================================================================
# Persistence Commands
# =============================================================================

@dataclass(frozen=True)
class SaveCredentials(Command):
    """Persist rotated credentials before the next event is processed."""
    credentials: Credentials
    command_type: CommandType = CommandType.SAVE_CREDENTIALS


# =============================================================================
# Delivery Commands
# =============================================================================

@dataclass(frozen=True)
class DispatchMessages(Command):
    """Route each message, in order, isolating per-message failures."""
    messages: tuple[InboundMessage, ...]
    command_type: CommandType = CommandType.DISPATCH_MESSAGES


@dataclass(frozen=True)
class SendSelfNotification(Command):
    """Best-effort "connected" note to the account's own address."""
    user_id: str | None
    command_type: CommandType = CommandType.SEND_SELF_NOTIFICATION


@dataclass(frozen=True)
class SurfacePairingCode(Command):
    """Present a pairing code to an operator (or warn when unattended)."""
    code: str
    command_type: CommandType = CommandType.SURFACE_PAIRING_CODE


# =============================================================================
# Lifecycle Commands
# =============================================================================

@dataclass(frozen=True)
class SignalTerminal(Command):
    """
    The session reached Failed.

    The core only reports; the supervisor owns the exit decision.
    """
    reason: str
    classified: ClassifiedError | None = None
    command_type: CommandType = CommandType.SIGNAL_TERMINAL


# =============================================================================
# Observability Commands
# =============================================================================

@dataclass(frozen=True)
class LogEvent(Command):
    """Request to emit a structured observability event."""
    event: dict[str, Any]
    command_type: CommandType = CommandType.LOG_EVENT
