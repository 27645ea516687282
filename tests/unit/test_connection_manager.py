# pylint: disable=missing-module-docstring,missing-function-docstring
import asyncio
from typing import Any

import pytest

from adapters.transport.base import (
    ConnectionClosed,
    ConnectionOpened,
    CredentialsRotated,
    DisconnectReason,
    InboundMessage,
    MessagesReceived,
    PairingRequested,
    TransportError,
)
from orchestrator.classifier import REASON_AUTH_MISSING, REASON_SESSION_REVOKED
from orchestrator.enums.state import Phase
from orchestrator.reducer import REASON_RECONNECT_EXHAUSTED
from orchestrator.state_dataclass import Failed
from persistence.credential_store import Credentials
from session.connection_manager import ConnectionManager
from session.errors import AuthMissing, NotConnected

from fakes import (
    FakeCredentialStore,
    FakeTransport,
    capture_logs,
    events_of,
    make_config,
)

USER_ID = "15550001111:7@s.whatsapp.net"


def make_manager(
    transport: FakeTransport,
    store: FakeCredentialStore | None = None,
    terminal: list[Failed] | None = None,
    **config: Any,
) -> ConnectionManager:
    return ConnectionManager(
        config=make_config(**config),
        transport=transport,
        credential_store=store or FakeCredentialStore(credentials=Credentials(data={"me": 1})),
        on_terminal=terminal.append if terminal is not None else None,
    )


async def connect_and_open(manager: ConnectionManager, transport: FakeTransport) -> None:
    await manager.connect()
    await transport.emit(ConnectionOpened(user_id=USER_ID))
    await manager.drain()


def message(message_id: str, chat_id: str = "chat@s.whatsapp.net") -> InboundMessage:
    return InboundMessage(message_id=message_id, chat_id=chat_id, content={"text": message_id})


# ---------------------------------------------------------------------
# 1. Startup
# ---------------------------------------------------------------------

def test_missing_credentials_raise_before_any_transport_call(monkeypatch: pytest.MonkeyPatch):
    capture_logs(monkeypatch)
    transport = FakeTransport()
    terminal: list[Failed] = []

    async def scenario() -> None:
        manager = make_manager(transport, FakeCredentialStore(present=False), terminal)
        with pytest.raises(AuthMissing):
            await manager.connect()

        status = manager.get_status()
        assert status.state is Phase.FAILED
        assert status.failure_reason == REASON_AUTH_MISSING

        failed = await asyncio.wait_for(manager.wait_until_terminal(), timeout=1)
        assert failed.reason == REASON_AUTH_MISSING
        await manager.shutdown()

    asyncio.run(scenario())

    assert transport.connect_calls == 0
    assert len(terminal) == 1


def test_missing_credentials_allowed_when_not_required(monkeypatch: pytest.MonkeyPatch):
    capture_logs(monkeypatch)
    transport = FakeTransport()

    async def scenario() -> None:
        manager = make_manager(
            transport,
            FakeCredentialStore(present=False),
            require_credentials=False,
        )
        await manager.connect()
        assert manager.get_status().state is Phase.DISCONNECTED
        await manager.shutdown()

    asyncio.run(scenario())

    assert transport.connect_calls == 1
    assert transport.credentials_seen == [None]


def test_open_connects_and_sends_self_notification(monkeypatch: pytest.MonkeyPatch):
    capture_logs(monkeypatch)
    transport = FakeTransport()

    async def scenario() -> None:
        manager = make_manager(transport)
        await connect_and_open(manager, transport)

        status = manager.get_status()
        assert status.connected
        assert status.attempts == 0
        await manager.shutdown()

    asyncio.run(scenario())

    [(destination, content)] = transport.session.sent
    assert destination == "15550001111@s.whatsapp.net"
    assert "connected and ready" in content["text"]
    assert transport.session.closed


def test_pairing_code_is_exposed_then_cleared(monkeypatch: pytest.MonkeyPatch):
    logs = capture_logs(monkeypatch)
    transport = FakeTransport()

    async def scenario() -> None:
        manager = make_manager(transport, interactive_pairing=True)
        await manager.connect()
        await transport.emit(PairingRequested(code="2@QR"))
        await manager.drain()

        status = manager.get_status()
        assert status.state is Phase.AWAITING_PAIRING
        assert status.pairing_code == "2@QR"
        assert status.state.value == "awaiting_qr_scan"

        await transport.emit(ConnectionOpened(user_id=USER_ID))
        await manager.drain()
        assert manager.get_status().pairing_code is None
        await manager.shutdown()

    asyncio.run(scenario())

    [surfaced] = events_of(logs, "PAIRING_CODE")
    assert surfaced["pairing_code"] == "2@QR"


# ---------------------------------------------------------------------
# 2. Reconnect
# ---------------------------------------------------------------------

def test_retryable_close_reconnects_with_new_session(monkeypatch: pytest.MonkeyPatch):
    capture_logs(monkeypatch)
    transport = FakeTransport()

    async def scenario() -> None:
        manager = make_manager(transport, base_delay_ms=1, cap_delay_ms=1)
        await connect_and_open(manager, transport)

        await transport.emit(ConnectionClosed(status_code=DisconnectReason.CONNECTION_LOST))
        await manager.drain()
        assert manager.get_status().attempts == 1

        for _ in range(50):
            if transport.connect_calls == 2:
                break
            await asyncio.sleep(0.01)
        assert transport.connect_calls == 2
        assert transport.sessions[0].closed

        # Updates from the superseded session are ignored
        await transport.emit(ConnectionClosed(status_code=DisconnectReason.LOGGED_OUT), sink_index=0)
        await manager.drain()
        assert manager.get_status().state is Phase.DISCONNECTED

        await transport.emit(ConnectionOpened(user_id=USER_ID))
        await manager.drain()
        status = manager.get_status()
        assert status.connected
        assert status.attempts == 0
        await manager.shutdown()

    asyncio.run(scenario())


def test_revoked_close_is_terminal_without_retry(monkeypatch: pytest.MonkeyPatch):
    capture_logs(monkeypatch)
    transport = FakeTransport()
    terminal: list[Failed] = []

    async def scenario() -> None:
        manager = make_manager(transport, terminal=terminal, base_delay_ms=1, cap_delay_ms=1)
        await connect_and_open(manager, transport)

        await transport.emit(ConnectionClosed(status_code=DisconnectReason.LOGGED_OUT))
        await manager.drain()
        failed = await asyncio.wait_for(manager.wait_until_terminal(), timeout=1)
        assert failed.reason == REASON_SESSION_REVOKED

        await asyncio.sleep(0.05)
        await manager.shutdown()

    asyncio.run(scenario())

    assert transport.connect_calls == 1
    assert [f.reason for f in terminal] == [REASON_SESSION_REVOKED]


def test_transport_connect_error_is_retried(monkeypatch: pytest.MonkeyPatch):
    capture_logs(monkeypatch)
    transport = FakeTransport()
    transport.fail_with = ConnectionRefusedError("bridge down")

    async def scenario() -> None:
        manager = make_manager(transport, base_delay_ms=1, cap_delay_ms=1)
        await manager.connect()
        assert manager.get_status().attempts == 1

        transport.fail_with = None
        for _ in range(50):
            if transport.sessions:
                break
            await asyncio.sleep(0.01)
        assert transport.connect_calls == 2
        await manager.shutdown()

    asyncio.run(scenario())


async def wait_for_connect_calls(transport: FakeTransport, expected: int) -> None:
    for _ in range(100):
        if transport.connect_calls >= expected:
            return
        await asyncio.sleep(0.01)
    assert transport.connect_calls == expected


@pytest.mark.parametrize("cancel_by", ["manual_connect", "connection_opened"])
def test_pending_reconnect_timer_is_cancelled(monkeypatch: pytest.MonkeyPatch, cancel_by: str):
    logs = capture_logs(monkeypatch)
    transport = FakeTransport()

    async def scenario() -> None:
        manager = make_manager(transport, base_delay_ms=50, cap_delay_ms=50)
        await connect_and_open(manager, transport)

        await transport.emit(ConnectionClosed(status_code=DisconnectReason.TIMED_OUT))
        await manager.drain()
        assert manager.get_status().attempts == 1

        if cancel_by == "manual_connect":
            await manager.connect()
            expected_calls = 2
        else:
            await transport.emit(ConnectionOpened(user_id=USER_ID))
            await manager.drain()
            assert manager.get_status().connected
            expected_calls = 1
        assert transport.connect_calls == expected_calls

        # Well past the scheduled delay
        await asyncio.sleep(0.2)
        assert transport.connect_calls == expected_calls
        await manager.shutdown()

    asyncio.run(scenario())

    assert not [e for e in logs if e.get("event_type") == "RETRY_READY"]


def test_exhausted_reconnect_budget_is_terminal(monkeypatch: pytest.MonkeyPatch):
    capture_logs(monkeypatch)
    transport = FakeTransport()
    terminal: list[Failed] = []

    async def scenario() -> None:
        manager = make_manager(
            transport,
            terminal=terminal,
            max_reconnect_attempts=2,
            base_delay_ms=1,
            cap_delay_ms=1,
        )
        await connect_and_open(manager, transport)

        # Each reconnected session closes again before it opens
        for attempt in (1, 2):
            await transport.emit(ConnectionClosed(status_code=DisconnectReason.TIMED_OUT))
            await manager.drain()
            assert manager.get_status().attempts == attempt
            await wait_for_connect_calls(transport, attempt + 1)

        await transport.emit(ConnectionClosed(status_code=DisconnectReason.TIMED_OUT))
        await manager.drain()

        failed = await asyncio.wait_for(manager.wait_until_terminal(), timeout=1)
        assert failed.reason == REASON_RECONNECT_EXHAUSTED
        assert manager.get_status().state is Phase.FAILED

        await asyncio.sleep(0.05)
        await manager.shutdown()

    asyncio.run(scenario())

    assert transport.connect_calls == 3
    assert [f.reason for f in terminal] == [REASON_RECONNECT_EXHAUSTED]


# ---------------------------------------------------------------------
# 3. Sending
# ---------------------------------------------------------------------

def test_send_while_disconnected_raises_without_transport_call(monkeypatch: pytest.MonkeyPatch):
    capture_logs(monkeypatch)
    transport = FakeTransport()

    async def scenario() -> None:
        manager = make_manager(transport)
        await manager.connect()
        with pytest.raises(NotConnected):
            await manager.send_text("x@s.whatsapp.net", "hi")
        await manager.shutdown()

    asyncio.run(scenario())

    assert transport.session.sent == []


def test_send_failure_is_returned_not_raised(monkeypatch: pytest.MonkeyPatch):
    logs = capture_logs(monkeypatch)
    transport = FakeTransport()

    async def scenario() -> None:
        manager = make_manager(transport)
        await connect_and_open(manager, transport)

        transport.session.fail_with = TransportError("ack timeout")
        result = await manager.send_message("x@s.whatsapp.net", {"text": "hi"})

        assert not result.ok
        assert result.error == "ack timeout"
        assert manager.get_status().connected
        await manager.shutdown()

    asyncio.run(scenario())

    assert events_of(logs, "SEND_FAILED")


# ---------------------------------------------------------------------
# 4. Inbound delivery
# ---------------------------------------------------------------------

def test_handlers_run_in_order_and_failures_are_isolated(monkeypatch: pytest.MonkeyPatch):
    logs = capture_logs(monkeypatch)
    transport = FakeTransport()
    seen: list[tuple[str, str]] = []

    def first(msg: InboundMessage) -> None:
        seen.append(("first", msg.message_id))
        if msg.message_id == "m1":
            raise RuntimeError("handler bug")

    async def second(msg: InboundMessage) -> None:
        seen.append(("second", msg.message_id))

    async def scenario() -> None:
        manager = make_manager(transport)
        manager.add_handler(first)
        manager.add_handler(second)
        manager.add_handler(first)  # duplicate add is a no-op

        await connect_and_open(manager, transport)
        await transport.emit(MessagesReceived(messages=(message("m1"), message("m2")), live=True))
        await manager.drain()
        await manager.shutdown()

    asyncio.run(scenario())

    assert seen == [
        ("first", "m1"),
        ("second", "m1"),
        ("first", "m2"),
        ("second", "m2"),
    ]
    [failure] = events_of(logs, "MESSAGE_PROCESSING_FAILED")
    assert failure["message_id"] == "m1"


def test_backfill_batches_are_not_delivered(monkeypatch: pytest.MonkeyPatch):
    capture_logs(monkeypatch)
    transport = FakeTransport()
    seen: list[str] = []

    async def scenario() -> None:
        manager = make_manager(transport)
        manager.add_handler(lambda msg: seen.append(msg.message_id))

        await connect_and_open(manager, transport)
        await transport.emit(MessagesReceived(messages=(message("old"),), live=False))
        await manager.drain()
        await manager.shutdown()

    asyncio.run(scenario())

    assert not seen


def test_removed_handler_is_not_called(monkeypatch: pytest.MonkeyPatch):
    capture_logs(monkeypatch)
    transport = FakeTransport()
    seen: list[str] = []

    def handler(msg: InboundMessage) -> None:
        seen.append(msg.message_id)

    async def scenario() -> None:
        manager = make_manager(transport)
        manager.add_handler(handler)
        manager.remove_handler(handler)

        await connect_and_open(manager, transport)
        await transport.emit(MessagesReceived(messages=(message("m1"),), live=True))
        await manager.drain()
        await manager.shutdown()

    asyncio.run(scenario())

    assert not seen


# ---------------------------------------------------------------------
# 5. Credentials
# ---------------------------------------------------------------------

def test_rotated_credentials_are_saved(monkeypatch: pytest.MonkeyPatch):
    logs = capture_logs(monkeypatch)
    transport = FakeTransport()
    store = FakeCredentialStore(credentials=Credentials(data={"v": 1}))

    async def scenario() -> None:
        manager = make_manager(transport, store)
        await connect_and_open(manager, transport)

        await transport.emit(CredentialsRotated(credentials=Credentials(data={"v": 2})))
        await manager.drain()

        store.fail_save = True
        await transport.emit(CredentialsRotated(credentials=Credentials(data={"v": 3})))
        await manager.drain()
        await manager.shutdown()

    asyncio.run(scenario())

    assert transport.credentials_seen == [Credentials(data={"v": 1})]
    assert [c.data for c in store.saved] == [{"v": 2}]
    [failure] = events_of(logs, "CREDENTIALS_SAVE_FAILED")
    assert failure["level"] == "error"
    assert failure["error"] == "disk full"
