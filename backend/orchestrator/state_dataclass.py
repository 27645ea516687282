"""
Authoritative connection state container.

Rules:
- These dataclasses are pure data.
- ConnectionState is a tagged variant: each variant carries only the
  fields valid for it, so invalid combinations cannot be built.
- No behavior beyond the `phase` discriminant.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

from orchestrator.classifier import ClassifiedError
from orchestrator.enums.state import Phase
from orchestrator.retry import ReconnectPolicy, RetryAttempt


# =============================================================================
# Connection state variants
# =============================================================================

@dataclass(frozen=True)
class Disconnected:
    """No session established (a retry may be pending)."""
    phase: Phase = field(default=Phase.DISCONNECTED, init=False)


@dataclass(frozen=True)
class AwaitingPairing:
    """Transport asked for an out-of-band pairing step."""
    pairing_code: str
    phase: Phase = field(default=Phase.AWAITING_PAIRING, init=False)


@dataclass(frozen=True)
class Connected:
    """Session established at since_ms."""
    since_ms: int
    phase: Phase = field(default=Phase.CONNECTED, init=False)


@dataclass(frozen=True)
class Failed:
    """
    Terminal for this process.

    classified is None when the failure was not an error classification
    (e.g. reconnect budget exhausted).
    """
    reason: str
    classified: ClassifiedError | None = None
    phase: Phase = field(default=Phase.FAILED, init=False)


ConnectionState = Union[Disconnected, AwaitingPairing, Connected, Failed]


# =============================================================================
# Manager State
# =============================================================================

@dataclass(frozen=True)
class ManagerState:
    """Immutable snapshot of all reducer-owned state."""

    policy: ReconnectPolicy

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    connection: ConnectionState = field(default_factory=Disconnected)

    # ------------------------------------------------------------------
    # Reconnect bookkeeping
    # ------------------------------------------------------------------
    retry: RetryAttempt = RetryAttempt(attempt=0)

    # Attempt number of the pending reconnect timer, if any
    retry_pending: int | None = None

    # ------------------------------------------------------------------
    # Session versioning
    # ------------------------------------------------------------------
    # Monotonic; bumped on every OpenSession. 0 = never connected.
    generation: int = 0

    # True between OpenSession and SessionOpened / ConnectFailed
    connect_in_flight: bool = False

    # Set once shutdown was requested; blocks new connects
    stopping: bool = False

    # Production deployments redact unknown error messages
    hardened: bool = False
