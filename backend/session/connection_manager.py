"""
Connection manager: runtime shell around the pure connection reducer.

Responsibilities:
- Own the authoritative ManagerState
- Own the single transport session handle (never shared)
- Serialize every state transition (one lock, one mailbox)
- Execute reducer commands: open/close sessions, reconnect timers,
  credential saves, message dispatch, self-notification
- Expose a non-blocking status snapshot and send_message()
- Report terminal failure; the supervisor decides whether to exit

Non-responsibilities:
- No connection decisions (reducer)
- No error taxonomy (classifier)
- No process exit
"""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass
from typing import Any, Callable

from adapters.transport import base as transport
from adapters.transport.base import (
    TransportError,
    TransportProtocol,
    TransportSessionProtocol,
    TransportUpdate,
    UpdateSink,
)
from config import ConnectionConfig
from constants import SELF_NOTIFICATION_TEMPLATE, USER_ADDRESS_SUFFIX
from observability.logger import log_event
from orchestrator.classifier import REASON_AUTH_MISSING
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
from orchestrator.events import (
    ConnectFailed,
    ConnectionClosed,
    ConnectionOpened,
    ConnectRequested,
    CredentialsRotated,
    Event,
    EventType,
    MessagesReceived,
    PairingRequested,
    RetryReady,
    SessionOpened,
    ShutdownRequested,
)
from orchestrator.reducer import reduce
from orchestrator.retry import ReconnectPolicy
from orchestrator.state_dataclass import (
    ConnectionState,
    Connected,
    Failed,
    ManagerState,
)
from persistence.credential_store import (
    CredentialSaveError,
    Credentials,
    CredentialStoreProtocol,
)
from session.connection_status import StatusSnapshot
from session.errors import AuthMissing, NotConnected
from session.routing import (
    LoggingMessageRouter,
    MessageHandler,
    MessageRouterProtocol,
)

TIMER_RECONNECT = "reconnect"

TerminalCallback = Callable[[Failed], None]


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


@dataclass(frozen=True)
class SendResult:
    """Outcome of send_message(); transport failures are values, not raises."""
    ok: bool
    error: str | None = None


class ConnectionManager:
    """
    Lifecycle owner for the one transport session of this process.

    Guarantees:
    - Reducer is called exactly once per event
    - State transitions are serialized (asyncio.Lock); transport updates are
      processed in arrival order through one mailbox
    - State is swapped before any command executes
    - At most one transport session exists; opening a new one closes the old
    - Updates from superseded sessions are ignored (generation tagging)
    """

    def __init__(
        self,
        *,
        config: ConnectionConfig,
        transport: TransportProtocol,
        credential_store: CredentialStoreProtocol,
        router: MessageRouterProtocol | None = None,
        hardened: bool = False,
        on_terminal: TerminalCallback | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._credentials = credential_store
        self._router: MessageRouterProtocol = router or LoggingMessageRouter()
        self._hardened = hardened
        self._on_terminal = on_terminal

        self._state = ManagerState(
            policy=ReconnectPolicy.from_config(config),
            hardened=hardened,
        )
        self._lock = asyncio.Lock()
        self._session: TransportSessionProtocol | None = None
        self._handlers: list[MessageHandler] = []

        self._timers: dict[str, asyncio.Task[None]] = {}
        self._background: set[asyncio.Task[None]] = set()

        self._mailbox: asyncio.Queue[Event] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None

        self._terminal = asyncio.Event()
        self._terminal_signalled = False

    # ------------------------------------------------------------------
    # Read-only surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> ManagerState:
        """Current immutable state. Consumers must treat it as read-only."""
        return self._state

    @property
    def connection(self) -> ConnectionState:
        return self._state.connection

    def get_status(self) -> StatusSnapshot:
        """
        Non-blocking status snapshot.

        Reads one immutable state reference, so the fields are always
        mutually consistent.
        """
        return StatusSnapshot.from_state(self._state)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> ConnectionState:
        """
        Request a session.

        Returns the connection state once the attempt settled (the session
        object exists or the attempt failed). Open / close facts arrive
        later from the transport.

        Raises:
            AuthMissing if credentials are required and absent. No
            transport call is made in that case.
        """
        self._ensure_worker()
        await self.handle_event(
            ConnectRequested(event_type=EventType.CONNECT_REQUESTED, ts_ms=_now_ms())
        )

        connection = self._state.connection
        if isinstance(connection, Failed) and connection.reason == REASON_AUTH_MISSING:
            raise AuthMissing()
        return connection

    async def shutdown(self) -> None:
        """
        Stop retries, close the session and stop background work.

        Idempotent.
        """
        await self.handle_event(
            ShutdownRequested(event_type=EventType.SHUTDOWN_REQUESTED, ts_ms=_now_ms())
        )

        for timer_id in list(self._timers.keys()):
            self._cancel_timer(timer_id)

        worker = self._worker
        self._worker = None
        if worker is not None and not worker.done():
            worker.cancel()

        pending = [t for t in self._background if not t.done()]
        for task in pending:
            task.cancel()

        tasks = [t for t in (worker, *pending) if t is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def wait_until_terminal(self) -> Failed:
        """Block until the session reaches Failed and return that state."""
        await self._terminal.wait()
        connection = self._state.connection
        assert isinstance(connection, Failed)
        return connection

    async def drain(self) -> None:
        """
        Wait until every queued transport update and background delivery
        has been processed.
        """
        await self._mailbox.join()
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def send_message(self, destination: str, content: dict[str, Any]) -> SendResult:
        """
        Send through the current session.

        Raises:
            NotConnected if the state is not Connected (no transport call).

        Transport failures are returned as SendResult(ok=False); connection
        state is never touched here.
        """
        session = self._session
        if not isinstance(self._state.connection, Connected) or session is None:
            raise NotConnected()

        try:
            await session.send_message(destination, content)
        except (TransportError, OSError, asyncio.TimeoutError) as e:
            log_event({
                "level": "error",
                "event_type": "SEND_FAILED",
                "destination": destination,
                "error": str(e),
            })
            return SendResult(ok=False, error=str(e))

        return SendResult(ok=True)

    async def send_text(self, destination: str, text: str) -> SendResult:
        return await self.send_message(destination, {"text": text})

    def add_handler(self, handler: MessageHandler) -> None:
        """Register an inbound-message observer. Duplicate adds are no-ops."""
        if handler not in self._handlers:
            self._handlers.append(handler)

    def remove_handler(self, handler: MessageHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    # ------------------------------------------------------------------
    # Event entry point
    # ------------------------------------------------------------------

    async def handle_event(self, event: Event) -> None:
        """
        Process a single event through the reducer pipeline.

        All event sources converge here: callers, the transport mailbox,
        and reconnect timers.
        """
        async with self._lock:
            await self._process(event)

    async def _process(self, event: Event) -> None:
        """
        Reduce and execute. Caller must hold the lock.

        Commands that produce follow-up events (OpenSession) re-enter here
        directly instead of through handle_event().
        """
        new_state, commands = reduce(self._state, event)
        self._state = new_state

        for cmd in commands:
            await self._execute_command(cmd)

    # ------------------------------------------------------------------
    # Transport mailbox
    # ------------------------------------------------------------------

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run_mailbox())

    async def _run_mailbox(self) -> None:
        while True:
            event = await self._mailbox.get()
            try:
                await self.handle_event(event)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                # Keep the loop alive; the supervisor decides if this is fatal
                asyncio.get_running_loop().call_exception_handler({
                    "message": f"processing {event.event_type.value} failed",
                    "exception": exc,
                })
            finally:
                self._mailbox.task_done()

    def _sink_for(self, generation: int) -> UpdateSink:
        async def _sink(update: TransportUpdate) -> None:
            self._ensure_worker()
            self._mailbox.put_nowait(self._translate(generation, update))

        return _sink

    def _translate(self, generation: int, update: TransportUpdate) -> Event:
        ts = _now_ms()

        if isinstance(update, transport.PairingRequested):
            return PairingRequested(
                event_type=EventType.PAIRING_REQUESTED,
                ts_ms=ts,
                generation=generation,
                code=update.code,
            )

        if isinstance(update, transport.ConnectionOpened):
            return ConnectionOpened(
                event_type=EventType.CONNECTION_OPENED,
                ts_ms=ts,
                generation=generation,
                user_id=update.user_id,
            )

        if isinstance(update, transport.ConnectionClosed):
            return ConnectionClosed(
                event_type=EventType.CONNECTION_CLOSED,
                ts_ms=ts,
                generation=generation,
                status_code=update.status_code,
                error=update.error,
            )

        if isinstance(update, transport.CredentialsRotated):
            return CredentialsRotated(
                event_type=EventType.CREDENTIALS_ROTATED,
                ts_ms=ts,
                generation=generation,
                credentials=update.credentials,
            )

        if isinstance(update, transport.MessagesReceived):
            return MessagesReceived(
                event_type=EventType.MESSAGES_RECEIVED,
                ts_ms=ts,
                generation=generation,
                messages=update.messages,
                live=update.live,
            )

        raise TypeError(f"Unknown transport update: {type(update).__name__}")

    # ------------------------------------------------------------------
    # Command execution (side effects)
    # ------------------------------------------------------------------

    async def _execute_command(self, cmd: Command) -> None:
        if isinstance(cmd, LogEvent):
            log_event(cmd.event)

        elif isinstance(cmd, OpenSession):
            await self._open_session(cmd.generation)

        elif isinstance(cmd, CloseSession):
            await self._close_session(cmd.reason)

        elif isinstance(cmd, ScheduleReconnect):
            self._schedule_reconnect(attempt=cmd.attempt, delay_ms=cmd.delay_ms)

        elif isinstance(cmd, CancelReconnect):
            self._cancel_timer(TIMER_RECONNECT)

        elif isinstance(cmd, SaveCredentials):
            await self._save_credentials(cmd.credentials)

        elif isinstance(cmd, DispatchMessages):
            await self._dispatch_messages(cmd.messages)

        elif isinstance(cmd, SendSelfNotification):
            self._spawn(self._send_self_notification(cmd.user_id))

        elif isinstance(cmd, SurfacePairingCode):
            self._surface_pairing_code(cmd.code)

        elif isinstance(cmd, SignalTerminal):
            self._signal_terminal()

        else:
            log_event({
                "level": "warning",
                "event_type": "COMMAND_NOT_IMPLEMENTED",
                "command_type": type(cmd).__name__,
            })

    # ------------------------------------------------------------------
    # Session handling
    # ------------------------------------------------------------------

    async def _open_session(self, generation: int) -> None:
        """
        Load credentials and open a transport session for generation.

        The outcome re-enters the reducer as SessionOpened / ConnectFailed.
        """
        try:
            if self._config.require_credentials and not self._credentials.exists():
                raise AuthMissing()

            credentials = await self._credentials.load()
            if credentials is None and self._config.require_credentials:
                raise AuthMissing()

            # Supersede, never coexist
            await self._close_session("superseded")

            self._session = await asyncio.wait_for(
                self._transport.connect(
                    credentials=credentials,
                    on_update=self._sink_for(generation),
                    connect_timeout_ms=self._config.connect_timeout_ms,
                    pairing_timeout_ms=self._config.pairing_timeout_ms,
                ),
                timeout=self._config.connect_timeout_ms / 1000.0,
            )

        except (TransportError, OSError, asyncio.TimeoutError) as e:
            await self._connect_failed(generation, e, transient=True)
            return

        except Exception as e:  # pylint: disable=broad-exception-caught
            await self._connect_failed(generation, e, transient=False)
            return

        await self._process(
            SessionOpened(
                event_type=EventType.SESSION_OPENED,
                ts_ms=_now_ms(),
                generation=generation,
            )
        )

    async def _connect_failed(self, generation: int, exc: Exception, *, transient: bool) -> None:
        log_event({
            "level": "error",
            "event_type": "CONNECT_FAILED",
            "generation": generation,
            "exception": type(exc).__name__,
            "message": str(exc),
            "transient": transient,
        })
        await self._process(
            ConnectFailed(
                event_type=EventType.CONNECT_FAILED,
                ts_ms=_now_ms(),
                generation=generation,
                message=str(exc) or type(exc).__name__,
                status_code=exc.status_code if isinstance(exc, TransportError) else None,
                transient=transient,
            )
        )

    async def _close_session(self, reason: str) -> None:
        session = self._session
        self._session = None
        if session is None:
            return

        try:
            await session.close()
        except (TransportError, OSError) as e:
            log_event({
                "level": "warning",
                "event_type": "SESSION_CLOSE_FAILED",
                "reason": reason,
                "error": str(e),
            })
            return

        log_event({
            "level": "debug",
            "event_type": "SESSION_CLOSED",
            "reason": reason,
        })

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _save_credentials(self, credentials: Credentials) -> None:
        """
        Persist before the next event is processed.

        A failed save is logged loudly; the next rotation rewrites the
        full blob.
        """
        try:
            stored = await self._credentials.save(credentials)
        except CredentialSaveError as e:
            log_event({
                "level": "error",
                "event_type": "CREDENTIALS_SAVE_FAILED",
                "error": str(e),
            })
            return

        log_event({
            "level": "debug",
            "event_type": "CREDENTIALS_SAVED",
            "updated_at_ms": stored.updated_at_ms,
        })

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _dispatch_messages(self, messages: tuple[transport.InboundMessage, ...]) -> None:
        """
        Deliver a live batch in arrival order.

        The router runs first, then observers in registration order. One
        failure never stops the remaining observers or messages.
        """
        for message in messages:
            try:
                await self._router.handle_message(message)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                self._log_delivery_error(message, "router", exc)

            for handler in list(self._handlers):
                try:
                    result = handler(message)
                    if inspect.isawaitable(result):
                        await result
                except Exception as exc:  # pylint: disable=broad-exception-caught
                    self._log_delivery_error(message, getattr(handler, "__name__", repr(handler)), exc)

    def _log_delivery_error(
        self,
        message: transport.InboundMessage,
        stage: str,
        exc: Exception,
    ) -> None:
        log_event({
            "level": "error",
            "event_type": "MESSAGE_PROCESSING_FAILED",
            "message_id": message.message_id,
            "stage": stage,
            "exception": type(exc).__name__,
            "error": str(exc),
        })

    async def _send_self_notification(self, user_id: str | None) -> None:
        if not user_id:
            log_event({
                "level": "debug",
                "event_type": "SELF_NOTIFICATION_SKIPPED",
                "why": "no_user_id",
            })
            return

        # "<number>:<device>@domain" -> "<number>@s.whatsapp.net"
        number = user_id.split("@")[0].split(":")[0]
        text = SELF_NOTIFICATION_TEMPLATE.format(
            mode="Production" if self._hardened else "Development"
        )

        try:
            result = await self.send_text(f"{number}{USER_ADDRESS_SUFFIX}", text)
        except NotConnected:
            log_event({
                "level": "warning",
                "event_type": "SELF_NOTIFICATION_SKIPPED",
                "why": "not_connected",
            })
            return

        if not result.ok:
            log_event({
                "level": "error",
                "event_type": "SELF_NOTIFICATION_FAILED",
                "error": result.error,
            })

    def _surface_pairing_code(self, code: str) -> None:
        if self._config.interactive_pairing:
            log_event({
                "event_type": "PAIRING_CODE",
                "pairing_code": code,
                "instructions": [
                    "Open WhatsApp > Settings > Linked Devices",
                    "Tap on \"Link a Device\"",
                    "Scan the QR code",
                ],
            })
            return

        log_event({
            "level": "warning",
            "event_type": "PAIRING_REQUESTED_UNATTENDED",
            "message": (
                "QR code requested in production. "
                "This should not happen if auth files are properly set up."
            ),
        })

    # ------------------------------------------------------------------
    # Terminal signalling
    # ------------------------------------------------------------------

    def _signal_terminal(self) -> None:
        connection = self._state.connection
        if not isinstance(connection, Failed) or self._terminal_signalled:
            return

        self._terminal_signalled = True
        self._terminal.set()
        if self._on_terminal is not None:
            self._on_terminal(connection)

    # ------------------------------------------------------------------
    # Timer / task management
    # ------------------------------------------------------------------

    def _schedule_reconnect(self, *, attempt: int, delay_ms: int) -> None:
        """
        Start (or replace) the reconnect timer.

        On expiry the timer re-enters handle_event() with RetryReady.
        """
        self._cancel_timer(TIMER_RECONNECT)

        async def _retry_task() -> None:
            try:
                await asyncio.sleep(delay_ms / 1000.0)
                await self.handle_event(
                    RetryReady(
                        event_type=EventType.RETRY_READY,
                        ts_ms=_now_ms(),
                        attempt=attempt,
                    )
                )
            except asyncio.CancelledError:
                return

        self._timers[TIMER_RECONNECT] = asyncio.create_task(_retry_task())

    def _cancel_timer(self, timer_id: str) -> None:
        """
        Cancel an in-flight timer if it exists.

        Idempotent. A timer never cancels itself while it is executing
        its own retry.
        """
        task = self._timers.pop(timer_id, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
