"""
WebSocket bridge transport adapter.

The multi-device protocol (noise handshake, signal sessions, pairing) is
run by a sidecar bridge process. This adapter speaks a small JSON frame
protocol to that bridge over one WebSocket per session.

Frames sent:
    {"type": "hello", "credentials": {...} | null, "connect_timeout_ms": ..,
     "pairing_timeout_ms": .., "keep_alive_interval_ms": ..,
     "default_query_timeout_ms": ..}
    {"type": "send", "ref": "<id>", "to": "<address>", "content": {...}}
    {"type": "close"}

Frames received:
    {"type": "pairing", "code": "..."}
    {"type": "connection", "state": "open", "user_id": "..."}
    {"type": "connection", "state": "close", "status_code": 401, "error": "..."}
    {"type": "creds", "data": {...}}
    {"type": "messages", "mode": "notify" | "append", "messages": [...]}
    {"type": "send_ack", "ref": "<id>", "ok": true | false, "error": "..."}

Design constraints:
- Adapter never touches connection state; it only reports facts through
  the update sink.
- A dropped socket is reported once as a close with CONNECTION_LOST.
- Each session owns exactly one socket and one receiver task.
"""

from __future__ import annotations

import asyncio
import itertools
import json
from typing import Any

from websockets.asyncio.client import ClientConnection, connect as ws_connect
from websockets.exceptions import ConnectionClosed as WSConnectionClosed
from websockets.exceptions import WebSocketException

from adapters.transport.base import (
    ConnectionClosed,
    ConnectionOpened,
    CredentialsRotated,
    DisconnectReason,
    InboundMessage,
    MessagesReceived,
    PairingRequested,
    TransportError,
    TransportUpdate,
    UpdateSink,
)
from constants import (
    DEFAULT_QUERY_TIMEOUT_MS,
    KEEP_ALIVE_INTERVAL_MS,
    SEND_ACK_TIMEOUT_MS,
)
from observability.logger import log_event
from persistence.credential_store import Credentials

CONNECTION_LOST_MESSAGE = "Connection Lost"


def _parse_message(raw: dict[str, Any]) -> InboundMessage:
    key = raw.get("key") or {}
    chat_id = raw.get("chat_id") or key.get("remoteJid") or ""
    timestamp = raw.get("timestamp_ms")
    return InboundMessage(
        message_id=str(raw.get("id") or key.get("id") or ""),
        chat_id=str(chat_id),
        sender=raw.get("sender") or key.get("participant"),
        from_me=bool(raw.get("from_me", key.get("fromMe", False))),
        timestamp_ms=int(timestamp) if timestamp is not None else None,
        content=raw.get("content") or raw.get("message") or {},
    )


def parse_frame(data: dict[str, Any]) -> TransportUpdate | None:
    """
    Translate one bridge frame into a transport update.

    Returns None for frames that are not updates (send_ack, unknown types).
    """
    frame_type = data.get("type")

    if frame_type == "pairing":
        return PairingRequested(code=str(data.get("code", "")))

    if frame_type == "connection":
        state = data.get("state")
        if state == "open":
            return ConnectionOpened(user_id=data.get("user_id"))
        if state == "close":
            status_code = data.get("status_code")
            return ConnectionClosed(
                status_code=int(status_code) if status_code is not None else None,
                error=data.get("error"),
            )
        return None

    if frame_type == "creds":
        return CredentialsRotated(credentials=Credentials(data=data.get("data") or {}))

    if frame_type == "messages":
        messages = tuple(_parse_message(m) for m in data.get("messages") or ())
        return MessagesReceived(messages=messages, live=data.get("mode") == "notify")

    return None


class WebSocketBridgeSession:
    """One live bridge session. Exclusively owned by the ConnectionManager."""

    def __init__(
        self,
        *,
        ws: ClientConnection,
        on_update: UpdateSink,
        send_ack_timeout_ms: int = SEND_ACK_TIMEOUT_MS,
    ) -> None:
        self._ws = ws
        self._on_update = on_update
        self._send_ack_timeout_ms = send_ack_timeout_ms

        self._user_id: str | None = None
        self._refs = itertools.count(1)
        self._pending: dict[str, asyncio.Future[None]] = {}

        self._closing = False
        self._close_reported = False
        self._recv_task: asyncio.Task[None] | None = None

    @property
    def user_id(self) -> str | None:
        return self._user_id

    def start(self) -> None:
        if self._recv_task is None:
            self._recv_task = asyncio.create_task(self._recv_loop())

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------

    async def send_message(self, destination: str, content: dict[str, Any]) -> None:
        """
        Send and await the bridge acknowledgment.

        Raises:
            TransportError on socket failure, negative ack or ack timeout.
        """
        if self._closing:
            raise TransportError("Connection Closed", status_code=DisconnectReason.CONNECTION_CLOSED)

        ref = str(next(self._refs))
        ack: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._pending[ref] = ack

        try:
            await self._ws.send(
                json.dumps({"type": "send", "ref": ref, "to": destination, "content": content})
            )
            await asyncio.wait_for(ack, timeout=self._send_ack_timeout_ms / 1000.0)
        except asyncio.TimeoutError as e:
            raise TransportError(f"send to {destination} timed out") from e
        except WebSocketException as e:
            raise TransportError(f"send to {destination} failed: {e}") from e
        finally:
            self._pending.pop(ref, None)

    async def close(self) -> None:
        """Close the socket and stop the receiver. Idempotent."""
        if self._closing:
            return
        self._closing = True

        rt = self._recv_task
        self._recv_task = None
        if rt is not None and not rt.done() and rt is not asyncio.current_task():
            rt.cancel()

        self._fail_pending("session closed")

        try:
            await self._ws.send(json.dumps({"type": "close"}))
        except WebSocketException as e:
            log_event({
                "level": "debug",
                "event_type": "BRIDGE_CLOSE_FRAME_FAILED",
                "error": str(e),
            })
        await self._ws.close()

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    async def _recv_loop(self) -> None:
        """
        Translate frames until the socket ends.

        A malformed frame is logged and skipped. However the loop ends, an
        exit not requested through close() is reported as CONNECTION_LOST.
        """
        try:
            async for raw in self._ws:
                try:
                    data = json.loads(raw)
                    if not isinstance(data, dict):
                        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
                    await self._handle_frame(data)
                except (ValueError, TypeError, AttributeError) as e:
                    log_event({
                        "level": "warning",
                        "event_type": "BRIDGE_FRAME_INVALID",
                        "error": str(e),
                    })
                    continue
        except WSConnectionClosed as e:
            log_event({
                "level": "debug",
                "event_type": "BRIDGE_SOCKET_CLOSED",
                "code": e.rcvd.code if e.rcvd is not None else None,
            })
        finally:
            if not self._closing:
                self._fail_pending(CONNECTION_LOST_MESSAGE)
                await self._report_close(
                    ConnectionClosed(
                        status_code=DisconnectReason.CONNECTION_LOST,
                        error=CONNECTION_LOST_MESSAGE,
                    )
                )

    async def _handle_frame(self, data: dict[str, Any]) -> None:
        if data.get("type") == "send_ack":
            self._resolve_ack(data)
            return

        update = parse_frame(data)
        if update is None:
            log_event({
                "level": "debug",
                "event_type": "BRIDGE_FRAME_IGNORED",
                "frame_type": data.get("type"),
            })
            return

        if isinstance(update, ConnectionOpened):
            self._user_id = update.user_id

        if isinstance(update, ConnectionClosed):
            await self._report_close(update)
            return

        await self._on_update(update)

    async def _report_close(self, update: ConnectionClosed) -> None:
        if self._close_reported:
            return
        self._close_reported = True
        await self._on_update(update)

    def _resolve_ack(self, data: dict[str, Any]) -> None:
        ack = self._pending.get(str(data.get("ref")))
        if ack is None or ack.done():
            return
        if data.get("ok", True):
            ack.set_result(None)
        else:
            ack.set_exception(TransportError(str(data.get("error") or "send rejected")))

    def _fail_pending(self, reason: str) -> None:
        for ack in self._pending.values():
            if not ack.done():
                ack.set_exception(
                    TransportError(reason, status_code=DisconnectReason.CONNECTION_LOST)
                )


class WebSocketBridgeTransport:
    """
    Transport that opens one bridge WebSocket per session.

    connect() returns once the hello frame was sent; pairing / open / close
    facts arrive later through on_update.
    """

    def __init__(
        self,
        *,
        url: str,
        send_ack_timeout_ms: int = SEND_ACK_TIMEOUT_MS,
    ) -> None:
        self._url = url
        self._send_ack_timeout_ms = send_ack_timeout_ms

    async def connect(
        self,
        *,
        credentials: Credentials | None,
        on_update: UpdateSink,
        connect_timeout_ms: int,
        pairing_timeout_ms: int,
    ) -> WebSocketBridgeSession:
        try:
            ws = await ws_connect(
                self._url,
                open_timeout=connect_timeout_ms / 1000.0,
                ping_interval=KEEP_ALIVE_INTERVAL_MS / 1000.0,
                max_size=2**22,
            )
        except WebSocketException as e:
            raise TransportError(f"bridge connect failed: {e}") from e

        hello = {
            "type": "hello",
            "credentials": credentials.data if credentials is not None else None,
            "connect_timeout_ms": connect_timeout_ms,
            "pairing_timeout_ms": pairing_timeout_ms,
            "keep_alive_interval_ms": KEEP_ALIVE_INTERVAL_MS,
            "default_query_timeout_ms": DEFAULT_QUERY_TIMEOUT_MS,
        }

        try:
            await ws.send(json.dumps(hello))
        except WebSocketException as e:
            await ws.close()
            raise TransportError(f"bridge hello failed: {e}") from e

        log_event({
            "level": "debug",
            "event_type": "BRIDGE_CONNECTED",
            "has_credentials": credentials is not None,
        })

        session = WebSocketBridgeSession(
            ws=ws,
            on_update=on_update,
            send_ack_timeout_ms=self._send_ack_timeout_ms,
        )
        session.start()
        return session
