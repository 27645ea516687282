"""
Read-only status projection of the connection manager.

Built from one immutable ManagerState reference, so a snapshot is always
internally consistent and reading it never blocks or mutates anything.
"""
from __future__ import annotations

from dataclasses import dataclass

from orchestrator.enums.state import Phase
from orchestrator.state_dataclass import AwaitingPairing, Failed, ManagerState


@dataclass(frozen=True)
class StatusSnapshot:
    """Status consumed by the health reporter."""

    state: Phase
    attempts: int
    max_attempts: int
    pairing_code: str | None = None
    failure_reason: str | None = None

    @property
    def connected(self) -> bool:
        return self.state is Phase.CONNECTED

    @staticmethod
    def from_state(state: ManagerState) -> StatusSnapshot:
        connection = state.connection
        return StatusSnapshot(
            state=connection.phase,
            attempts=state.retry.attempt,
            max_attempts=state.policy.max_attempts,
            pairing_code=(
                connection.pairing_code if isinstance(connection, AwaitingPairing) else None
            ),
            failure_reason=connection.reason if isinstance(connection, Failed) else None,
        )
