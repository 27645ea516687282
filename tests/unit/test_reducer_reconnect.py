# pylint: disable=missing-module-docstring,missing-function-docstring
from dataclasses import replace

from adapters.transport.base import DisconnectReason, InboundMessage
from orchestrator.classifier import REASON_SESSION_REVOKED
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
    EventType,
    MessagesReceived,
    PairingRequested,
    RetryReady,
    SessionOpened,
    ShutdownRequested,
)
from orchestrator.reducer import REASON_RECONNECT_EXHAUSTED, reduce
from orchestrator.retry import ReconnectPolicy, RetryAttempt
from orchestrator.state_dataclass import (
    AwaitingPairing,
    Connected,
    Disconnected,
    Failed,
    ManagerState,
)
from persistence.credential_store import Credentials
from session.connection_status import StatusSnapshot


# ---------------------------------------------------------------------
# Event helpers
# ---------------------------------------------------------------------

def connect_requested(ts_ms: int = 0) -> ConnectRequested:
    return ConnectRequested(event_type=EventType.CONNECT_REQUESTED, ts_ms=ts_ms)


def session_opened(generation: int) -> SessionOpened:
    return SessionOpened(event_type=EventType.SESSION_OPENED, ts_ms=0, generation=generation)


def opened(generation: int, ts_ms: int = 100) -> ConnectionOpened:
    return ConnectionOpened(
        event_type=EventType.CONNECTION_OPENED,
        ts_ms=ts_ms,
        generation=generation,
        user_id="15550001111:3@s.whatsapp.net",
    )


def closed(generation: int, status_code: int | None = DisconnectReason.CONNECTION_CLOSED) -> ConnectionClosed:
    return ConnectionClosed(
        event_type=EventType.CONNECTION_CLOSED,
        ts_ms=0,
        generation=generation,
        status_code=status_code,
        error="Connection Closed",
    )


def retry_ready(attempt: int) -> RetryReady:
    return RetryReady(event_type=EventType.RETRY_READY, ts_ms=0, attempt=attempt)


def pairing(generation: int, code: str = "2@abc") -> PairingRequested:
    return PairingRequested(
        event_type=EventType.PAIRING_REQUESTED, ts_ms=0, generation=generation, code=code
    )


def of_type(commands: tuple[Command, ...], kind: type) -> list:
    return [c for c in commands if isinstance(c, kind)]


def decisions(commands: tuple[Command, ...]) -> list[str]:
    return [c.event["decision"] for c in commands if isinstance(c, LogEvent)]


def initial(max_attempts: int = 5) -> ManagerState:
    return ManagerState(
        policy=ReconnectPolicy(max_attempts=max_attempts, base_delay_ms=1000, cap_delay_ms=10000)
    )


def connected_state(max_attempts: int = 5) -> ManagerState:
    state, _ = reduce(initial(max_attempts), connect_requested())
    state, _ = reduce(state, session_opened(state.generation))
    state, _ = reduce(state, opened(state.generation))
    return state


# ---------------------------------------------------------------------
# 1. Connect
# ---------------------------------------------------------------------

def test_connect_request_opens_generation_one():
    state, cmds = reduce(initial(), connect_requested())

    assert state.generation == 1
    assert state.connect_in_flight
    assert of_type(cmds, OpenSession) == [OpenSession(generation=1)]


def test_second_connect_request_while_in_flight_is_ignored():
    state, _ = reduce(initial(), connect_requested())
    state2, cmds = reduce(state, connect_requested())

    assert state2 == state
    assert not of_type(cmds, OpenSession)
    assert decisions(cmds) == ["ignore"]


def test_open_resets_attempts_and_emits_self_notification():
    state = replace(connected_state(), retry=RetryAttempt(attempt=0))
    assert isinstance(state.connection, Connected)
    assert state.connection.since_ms == 100

    state, _ = reduce(state, closed(state.generation))
    state, _ = reduce(state, retry_ready(1))
    state, _ = reduce(state, pairing(state.generation))
    assert isinstance(state.connection, AwaitingPairing)

    state, cmds = reduce(state, opened(state.generation))

    assert isinstance(state.connection, Connected)
    assert state.retry.attempt == 0
    assert StatusSnapshot.from_state(state).pairing_code is None
    assert of_type(cmds, SendSelfNotification)
    assert of_type(cmds, CancelReconnect)


def test_pairing_request_surfaces_code():
    state, _ = reduce(initial(), connect_requested())
    state, cmds = reduce(state, pairing(state.generation, "QR-1"))

    assert state.connection == AwaitingPairing(pairing_code="QR-1")
    assert of_type(cmds, SurfacePairingCode) == [SurfacePairingCode(code="QR-1")]


# ---------------------------------------------------------------------
# 2. Close decision rule
# ---------------------------------------------------------------------

def test_three_retryable_closes_back_off_linearly():
    state = connected_state()
    delays: list[int] = []
    attempts: list[int] = []

    for _ in range(3):
        state, cmds = reduce(state, closed(state.generation))
        [schedule] = of_type(cmds, ScheduleReconnect)
        delays.append(schedule.delay_ms)
        attempts.append(state.retry.attempt)
        assert isinstance(state.connection, Disconnected)

        state, cmds = reduce(state, retry_ready(schedule.attempt))
        assert of_type(cmds, OpenSession)

    assert delays == [1000, 2000, 3000]
    assert attempts == [1, 2, 3]


def test_delay_is_capped():
    state = replace(connected_state(max_attempts=20), retry=RetryAttempt(attempt=14))
    _, cmds = reduce(state, closed(state.generation))

    [schedule] = of_type(cmds, ScheduleReconnect)
    assert schedule.attempt == 15
    assert schedule.delay_ms == 10000


def test_revoked_close_fails_immediately_regardless_of_attempts():
    state = replace(connected_state(), retry=RetryAttempt(attempt=3))
    state, cmds = reduce(state, closed(state.generation, DisconnectReason.LOGGED_OUT))

    assert isinstance(state.connection, Failed)
    assert state.connection.reason == REASON_SESSION_REVOKED
    assert not of_type(cmds, ScheduleReconnect)
    assert of_type(cmds, SignalTerminal)
    assert of_type(cmds, CloseSession)


def test_exhausted_budget_fails_without_timer():
    state = connected_state(max_attempts=2)

    for _ in range(2):
        state, cmds = reduce(state, closed(state.generation))
        [schedule] = of_type(cmds, ScheduleReconnect)
        state, _ = reduce(state, retry_ready(schedule.attempt))

    state, cmds = reduce(state, closed(state.generation))

    assert isinstance(state.connection, Failed)
    assert state.connection.reason == REASON_RECONNECT_EXHAUSTED
    assert state.retry.attempt == 2
    assert not of_type(cmds, ScheduleReconnect)
    assert of_type(cmds, SignalTerminal)


def test_attempts_never_exceed_max():
    state = connected_state(max_attempts=3)
    for _ in range(10):
        if isinstance(state.connection, Failed):
            break
        state, cmds = reduce(state, closed(state.generation))
        for schedule in of_type(cmds, ScheduleReconnect):
            state, _ = reduce(state, retry_ready(schedule.attempt))
        assert state.retry.attempt <= 3

    assert isinstance(state.connection, Failed)


def test_transient_connect_failure_schedules_retry():
    state, _ = reduce(initial(), connect_requested())
    state, cmds = reduce(
        state,
        ConnectFailed(
            event_type=EventType.CONNECT_FAILED,
            ts_ms=0,
            generation=state.generation,
            message="[Errno 111] Connect call failed",
            transient=True,
        ),
    )

    assert not state.connect_in_flight
    assert of_type(cmds, ScheduleReconnect) == [ScheduleReconnect(attempt=1, delay_ms=1000)]


def test_unknown_connect_failure_is_terminal():
    state, _ = reduce(initial(), connect_requested())
    state, cmds = reduce(
        state,
        ConnectFailed(
            event_type=EventType.CONNECT_FAILED,
            ts_ms=0,
            generation=state.generation,
            message="bad credentials blob",
        ),
    )

    assert isinstance(state.connection, Failed)
    assert of_type(cmds, SignalTerminal)


# ---------------------------------------------------------------------
# 3. Staleness and terminal behavior
# ---------------------------------------------------------------------

def test_events_from_superseded_session_are_ignored():
    state = connected_state()
    old_generation = state.generation
    state, _ = reduce(state, closed(old_generation))
    state, _ = reduce(state, retry_ready(1))
    state, _ = reduce(state, opened(state.generation))

    state2, cmds = reduce(state, closed(old_generation, DisconnectReason.LOGGED_OUT))

    assert state2 == state
    assert decisions(cmds) == ["ignore"]


def test_stale_retry_timer_is_ignored():
    state = connected_state()
    state, _ = reduce(state, closed(state.generation))

    state2, cmds = reduce(state, retry_ready(99))

    assert state2 == state
    assert not of_type(cmds, OpenSession)


def test_failed_ignores_further_connects():
    state = connected_state()
    state, _ = reduce(state, closed(state.generation, DisconnectReason.LOGGED_OUT))

    state2, cmds = reduce(state, connect_requested())

    assert state2 == state
    assert not of_type(cmds, OpenSession)


def test_shutdown_blocks_retries():
    state = connected_state()
    state, _ = reduce(state, closed(state.generation))
    state, cmds = reduce(state, ShutdownRequested(event_type=EventType.SHUTDOWN_REQUESTED, ts_ms=0))

    assert state.stopping
    assert of_type(cmds, CancelReconnect)
    assert of_type(cmds, CloseSession) == [CloseSession(reason="shutdown")]

    _, cmds = reduce(state, retry_ready(1))
    assert not of_type(cmds, OpenSession)


# ---------------------------------------------------------------------
# 4. Data events
# ---------------------------------------------------------------------

def test_credentials_rotation_requests_save():
    state = connected_state()
    creds = Credentials(data={"noiseKey": "k"})
    _, cmds = reduce(
        state,
        CredentialsRotated(
            event_type=EventType.CREDENTIALS_ROTATED,
            ts_ms=0,
            generation=state.generation,
            credentials=creds,
        ),
    )
    assert cmds == (SaveCredentials(credentials=creds),)


def test_only_live_batches_are_dispatched():
    state = connected_state()
    batch = (InboundMessage(message_id="m1", chat_id="c1"),)

    def received(live: bool) -> MessagesReceived:
        return MessagesReceived(
            event_type=EventType.MESSAGES_RECEIVED,
            ts_ms=0,
            generation=state.generation,
            messages=batch,
            live=live,
        )

    _, live_cmds = reduce(state, received(True))
    _, backfill_cmds = reduce(state, received(False))

    assert of_type(live_cmds, DispatchMessages) == [DispatchMessages(messages=batch)]
    assert not of_type(backfill_cmds, DispatchMessages)


def test_log_events_carry_phase_and_attempts():
    state = connected_state()
    _, cmds = reduce(state, closed(state.generation))

    [scheduled] = [
        c.event for c in cmds
        if isinstance(c, LogEvent) and c.event["decision"] == "reconnect_scheduled"
    ]
    assert scheduled["level"] == "warning"
    assert scheduled["phase"] == Phase.DISCONNECTED.value
    assert scheduled["attempts"] == 1
    assert scheduled["max_attempts"] == 5
