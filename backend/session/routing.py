"""
Inbound message routing contract.

Content routing and command dispatch live outside the session keeper.
The manager only guarantees ordered, failure-isolated delivery.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol, Union, runtime_checkable

from adapters.transport.base import InboundMessage
from observability.logger import log_event


# Observers may be plain functions or coroutine functions
MessageHandler = Callable[[InboundMessage], Union[None, Awaitable[None]]]


@runtime_checkable
class MessageRouterProtocol(Protocol):
    async def handle_message(self, message: InboundMessage) -> None: ...


class LoggingMessageRouter:
    """Default router: records that a message arrived and does nothing else."""

    async def handle_message(self, message: InboundMessage) -> None:
        event: dict[str, Any] = {
            "level": "debug",
            "event_type": "MESSAGE_RECEIVED",
            "message_id": message.message_id,
            "chat_id": message.chat_id,
            "from_me": message.from_me,
        }
        log_event(event)
