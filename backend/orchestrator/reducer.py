"""
Pure connection reducer.

(state, event) -> (new_state, commands)

Rules:
- Pure: no side effects, no IO, no clocks.
- Deterministic: output depends only on inputs.
- Total: every (phase, event) pair is handled or explicitly ignored (logged).
"""

# Reducer owns reconnect timer semantics; the manager never cancels or
# schedules reconnects on its own.

from __future__ import annotations

from dataclasses import replace
from typing import Any

from orchestrator.classifier import (
    ClassifiedError,
    classify,
    classify_close,
)
from orchestrator.commands import (
    CancelReconnect,
    CloseSession,
    Command,
    DispatchMessages,
    LogEvent,
    OpenSession,
    SaveCredentials,
    ScheduleReconnect,
    SendSelfNotification,
    SignalTerminal,
    SurfacePairingCode,
)
from orchestrator.enums.state import Phase
from orchestrator.events import (
    ConnectFailed,
    ConnectionClosed,
    ConnectionOpened,
    ConnectRequested,
    CredentialsRotated,
    Event,
    MessagesReceived,
    PairingRequested,
    RetryReady,
    SessionEvent,
    SessionOpened,
    ShutdownRequested,
)
from orchestrator.retry import (
    get_retry_delay_ms,
    next_attempt,
    reset_attempt,
    should_retry,
)
from orchestrator.state_dataclass import (
    AwaitingPairing,
    Connected,
    Disconnected,
    Failed,
    ManagerState,
)

REASON_RECONNECT_EXHAUSTED = "reconnect_exhausted"

Result = tuple[ManagerState, tuple[Command, ...]]


# =============================================================================
# Small helpers
# =============================================================================

def _log(
    state: ManagerState,
    event: Event,
    decision: str,
    details: dict[str, Any] | None = None,
    *,
    level: str = "info",
) -> LogEvent:
    return LogEvent(
        event={
            "ts_ms": event.ts_ms,
            "level": level,
            "phase": state.connection.phase.value,
            "event_type": event.event_type.value,
            "decision": decision,
            "generation": state.generation,
            "attempts": state.retry.attempt,
            "max_attempts": state.policy.max_attempts,
            "details": details or {},
        }
    )


def _ignore(state: ManagerState, event: Event, why: str) -> Result:
    return state, (_log(state, event, "ignore", {"why": why}, level="debug"),)


def _state_changed(before: ManagerState, after: ManagerState, event: Event) -> LogEvent:
    return _log(
        after,
        event,
        "state_changed",
        {
            "from_phase": before.connection.phase.value,
            "to_phase": after.connection.phase.value,
        },
    )


def _is_stale(state: ManagerState, event: SessionEvent) -> bool:
    return event.generation != state.generation


def _open_session(state: ManagerState, event: Event, source: str) -> Result:
    generation = state.generation + 1
    new_state = replace(
        state,
        generation=generation,
        connect_in_flight=True,
        retry_pending=None,
    )
    return new_state, (
        CancelReconnect(),
        OpenSession(generation=generation),
        _log(new_state, event, "open_session", {"source": source}),
    )


def _fail(
    state: ManagerState,
    event: Event,
    reason: str,
    classified: ClassifiedError | None,
) -> Result:
    new_state = replace(
        state,
        connection=Failed(reason=reason, classified=classified),
        retry_pending=None,
        connect_in_flight=False,
    )
    details: dict[str, Any] = {"reason": reason}
    if classified is not None:
        details.update({
            "kind": classified.kind.value,
            "critical": classified.critical,
            "status_code": classified.status_code,
            "action": classified.remediation,
        })
    return new_state, (
        CancelReconnect(),
        CloseSession(reason=reason),
        _state_changed(state, new_state, event),
        _log(new_state, event, "terminal", details, level="error"),
        SignalTerminal(reason=reason, classified=classified),
    )


def _on_disconnect(
    state: ManagerState,
    event: Event,
    classified: ClassifiedError,
) -> Result:
    """
    Close decision rule.

    - non-retryable (revoked / unauthorized / auth missing) -> Failed
    - retryable with budget left -> attempt + 1, one reconnect scheduled
    - retryable with budget exhausted -> Failed(reconnect_exhausted)

    A close whose error text reports unauthorized ends in Failed even
    without the logged-out status code. Only logged-out used to be final.
    """
    if not classified.retryable:
        return _fail(state, event, classified.reason, classified)

    if not should_retry(policy=state.policy, attempt=state.retry):
        return _fail(state, event, REASON_RECONNECT_EXHAUSTED, classified)

    attempt = next_attempt(state.retry)
    delay_ms = get_retry_delay_ms(policy=state.policy, attempt=attempt)

    new_state = replace(
        state,
        connection=Disconnected(),
        retry=attempt,
        retry_pending=attempt.attempt,
        connect_in_flight=False,
    )

    commands: tuple[Command, ...] = ()
    if state.connection.phase is not Phase.DISCONNECTED:
        commands += (_state_changed(state, new_state, event),)

    return new_state, commands + (
        ScheduleReconnect(attempt=attempt.attempt, delay_ms=delay_ms),
        _log(
            new_state,
            event,
            "reconnect_scheduled",
            {
                "attempt": attempt.attempt,
                "delay_ms": delay_ms,
                "status_code": classified.status_code,
                "reason": classified.reason,
            },
            level="warning",
        ),
    )


# =============================================================================
# Handlers
# =============================================================================

def _on_connect_requested(state: ManagerState, event: ConnectRequested) -> Result:
    if state.stopping:
        return _ignore(state, event, "stopping")
    if isinstance(state.connection, Failed):
        return _ignore(state, event, "terminal")
    if state.connect_in_flight:
        return _ignore(state, event, "connect_in_flight")
    if isinstance(state.connection, Connected):
        return _ignore(state, event, "already_connected")
    return _open_session(state, event, "request")


def _on_session_opened(state: ManagerState, event: SessionOpened) -> Result:
    if _is_stale(state, event):
        return _ignore(state, event, "stale_generation")
    new_state = replace(state, connect_in_flight=False)
    return new_state, (_log(new_state, event, "session_opened", level="debug"),)


def _on_connect_failed(state: ManagerState, event: ConnectFailed) -> Result:
    if _is_stale(state, event):
        return _ignore(state, event, "stale_generation")

    state = replace(state, connect_in_flight=False)

    if event.transient:
        classified = classify_close(event.status_code, event.message)
    else:
        classified = classify(event.message, event.status_code, hardened=state.hardened)

    return _on_disconnect(state, event, classified)


def _on_pairing_requested(state: ManagerState, event: PairingRequested) -> Result:
    if _is_stale(state, event):
        return _ignore(state, event, "stale_generation")
    if isinstance(state.connection, Failed):
        return _ignore(state, event, "terminal")

    new_state = replace(state, connection=AwaitingPairing(pairing_code=event.code))
    return new_state, (
        _state_changed(state, new_state, event),
        SurfacePairingCode(code=event.code),
    )


def _on_connection_opened(state: ManagerState, event: ConnectionOpened) -> Result:
    if _is_stale(state, event):
        return _ignore(state, event, "stale_generation")
    if isinstance(state.connection, Failed):
        return _ignore(state, event, "terminal")

    new_state = replace(
        state,
        connection=Connected(since_ms=event.ts_ms),
        retry=reset_attempt(),
        retry_pending=None,
        connect_in_flight=False,
    )
    return new_state, (
        CancelReconnect(),
        _state_changed(state, new_state, event),
        SendSelfNotification(user_id=event.user_id),
    )


def _on_connection_closed(state: ManagerState, event: ConnectionClosed) -> Result:
    if _is_stale(state, event):
        return _ignore(state, event, "stale_generation")
    if isinstance(state.connection, Failed):
        return _ignore(state, event, "terminal")

    if state.stopping:
        new_state = replace(state, connection=Disconnected(), connect_in_flight=False)
        return new_state, (_state_changed(state, new_state, event),)

    classified = classify_close(event.status_code, event.error)
    return _on_disconnect(state, event, classified)


def _on_credentials_rotated(state: ManagerState, event: CredentialsRotated) -> Result:
    if _is_stale(state, event):
        return _ignore(state, event, "stale_generation")
    return state, (SaveCredentials(credentials=event.credentials),)


def _on_messages_received(state: ManagerState, event: MessagesReceived) -> Result:
    if _is_stale(state, event):
        return _ignore(state, event, "stale_generation")
    if not event.live:
        return _ignore(state, event, "history_backfill")
    if not event.messages:
        return _ignore(state, event, "empty_batch")
    return state, (DispatchMessages(messages=event.messages),)


def _on_retry_ready(state: ManagerState, event: RetryReady) -> Result:
    if state.stopping:
        return _ignore(state, event, "stopping")
    if state.retry_pending != event.attempt:
        return _ignore(state, event, "stale_retry")
    if isinstance(state.connection, (Connected, Failed)):
        return _ignore(state, event, "not_disconnected")
    if state.connect_in_flight:
        return _ignore(state, event, "connect_in_flight")
    return _open_session(state, event, "retry")


def _on_shutdown_requested(state: ManagerState, event: ShutdownRequested) -> Result:
    if state.stopping:
        return _ignore(state, event, "already_stopping")

    connection = state.connection
    if not isinstance(connection, Failed):
        connection = Disconnected()

    new_state = replace(
        state,
        connection=connection,
        stopping=True,
        retry_pending=None,
        connect_in_flight=False,
    )
    return new_state, (
        CancelReconnect(),
        CloseSession(reason="shutdown"),
        _log(new_state, event, "shutdown"),
    )


# =============================================================================
# Public entry point
# =============================================================================

def reduce(state: ManagerState, event: Event) -> Result:
    """Apply one event. Unknown event types are logged and ignored."""
    if isinstance(event, ConnectRequested):
        return _on_connect_requested(state, event)
    if isinstance(event, SessionOpened):
        return _on_session_opened(state, event)
    if isinstance(event, ConnectFailed):
        return _on_connect_failed(state, event)
    if isinstance(event, PairingRequested):
        return _on_pairing_requested(state, event)
    if isinstance(event, ConnectionOpened):
        return _on_connection_opened(state, event)
    if isinstance(event, ConnectionClosed):
        return _on_connection_closed(state, event)
    if isinstance(event, CredentialsRotated):
        return _on_credentials_rotated(state, event)
    if isinstance(event, MessagesReceived):
        return _on_messages_received(state, event)
    if isinstance(event, RetryReady):
        return _on_retry_ready(state, event)
    if isinstance(event, ShutdownRequested):
        return _on_shutdown_requested(state, event)
    return _ignore(state, event, "unhandled_event_type")
