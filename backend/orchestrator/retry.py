"""
Reconnect policy helpers.

Purpose:
- Centralize reconnect rules (bounded attempts, linear capped backoff)
- Keep reducer pure
- Allow the manager to make deterministic retry decisions

This module contains NO timers, NO async, NO side effects.
"""
from __future__ import annotations

from dataclasses import dataclass

from config import ConnectionConfig


# =============================================================================
# Policy
# =============================================================================

@dataclass(frozen=True)
class ReconnectPolicy:
    """
    Immutable reconnect limits.

    delay for attempt N (1-based) = min(base_delay_ms * N, cap_delay_ms)
    """
    max_attempts: int
    base_delay_ms: int
    cap_delay_ms: int

    def __post_init__(self) -> None:
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")

    @staticmethod
    def from_config(config: ConnectionConfig) -> ReconnectPolicy:
        return ReconnectPolicy(
            max_attempts=config.max_reconnect_attempts,
            base_delay_ms=config.base_delay_ms,
            cap_delay_ms=config.cap_delay_ms,
        )


# =============================================================================
# Retry State
# =============================================================================

@dataclass(frozen=True)
class RetryAttempt:
    """
    Immutable reconnect attempt counter.

    Semantics:
    - attempt == 0 means no retry has been scheduled since the last open.
    - attempt >= 1 is the number of retries scheduled so far.
    - Never exceeds policy.max_attempts.
    """
    attempt: int


def next_attempt(current: RetryAttempt) -> RetryAttempt:
    """Return a new RetryAttempt with attempt incremented by 1."""
    return RetryAttempt(attempt=current.attempt + 1)


def reset_attempt() -> RetryAttempt:
    """Returns a fresh retry attempt counter."""
    return RetryAttempt(attempt=0)


def should_retry(*, policy: ReconnectPolicy, attempt: RetryAttempt) -> bool:
    """
    Returns True if another retry may be scheduled.

    attempt = number of retries already scheduled
    """
    return attempt.attempt < policy.max_attempts


# =============================================================================
# Delay Calculation
# =============================================================================

def get_retry_delay_ms(*, policy: ReconnectPolicy, attempt: RetryAttempt) -> int:
    """
    Returns delay before retry attempt N (N >= 1).

    Linear backoff clamped to cap_delay_ms.
    """
    return min(policy.base_delay_ms * attempt.attempt, policy.cap_delay_ms)
