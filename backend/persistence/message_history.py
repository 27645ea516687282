"""
Recent message history snapshot.

Keeps a bounded per-chat cache of live inbound messages and periodically
writes it to a JSON snapshot file. The snapshot is a convenience for
operators and downstream tools; it is never required for reconnecting.

Writes are best-effort: a failed flush is logged and the next interval
tries again.
"""

from __future__ import annotations

import asyncio
import json
import os
from collections import deque
from dataclasses import asdict
from pathlib import Path
from typing import Any

from adapters.transport.base import InboundMessage
from constants import HISTORY_MAX_MESSAGES_PER_CHAT
from observability.logger import log_event


class MessageHistoryStore:
    """
    Bounded in-memory history, flushed to disk by a background task.

    Usable directly as a manager observer:

        manager.add_handler(history)
    """

    def __init__(
        self,
        path: Path,
        *,
        max_per_chat: int = HISTORY_MAX_MESSAGES_PER_CHAT,
    ) -> None:
        if max_per_chat <= 0:
            raise ValueError("max_per_chat must be > 0")

        self._path = Path(path)
        self._max_per_chat = max_per_chat
        self._chats: dict[str, deque[dict[str, Any]]] = {}
        self._dirty = False
        self._flusher: asyncio.Task[None] | None = None

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.exists()

    def messages(self, chat_id: str) -> list[dict[str, Any]]:
        return list(self._chats.get(chat_id, ()))

    def chat_ids(self) -> list[str]:
        return list(self._chats.keys())

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record(self, message: InboundMessage) -> None:
        chat = self._chats.get(message.chat_id)
        if chat is None:
            chat = deque(maxlen=self._max_per_chat)
            self._chats[message.chat_id] = chat
        chat.append(asdict(message))
        self._dirty = True

    def __call__(self, message: InboundMessage) -> None:
        self.record(message)

    # ------------------------------------------------------------------
    # Snapshot I/O
    # ------------------------------------------------------------------

    def load(self) -> int:
        """
        Read the snapshot file if present.

        Returns the number of messages loaded. An unreadable snapshot is
        logged and ignored (history is not authoritative).
        """
        if not self._path.exists():
            return 0

        try:
            with self._path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
            chats = raw.get("chats", {}) if isinstance(raw, dict) else None
            if not isinstance(chats, dict) or not all(
                isinstance(messages, list) for messages in chats.values()
            ):
                raise ValueError("snapshot is not a {chats: {chat_id: [message, ...]}} object")
        except (OSError, ValueError) as e:
            log_event({
                "level": "warning",
                "event_type": "HISTORY_LOAD_FAILED",
                "error": str(e),
            })
            return 0

        count = 0
        for chat_id, messages in chats.items():
            chat: deque[dict[str, Any]] = deque(maxlen=self._max_per_chat)
            chat.extend(messages)
            self._chats[chat_id] = chat
            count += len(chat)

        log_event({
            "level": "debug",
            "event_type": "HISTORY_LOADED",
            "chats": len(self._chats),
            "messages": count,
        })
        return count

    async def flush(self) -> bool:
        """
        Write the snapshot atomically in a worker thread.

        Returns True when a write happened. Never raises on I/O failure.
        """
        if not self._dirty and self._path.exists():
            return False

        body = json.dumps(
            {"chats": {chat_id: list(chat) for chat_id, chat in self._chats.items()}},
            ensure_ascii=False,
        )
        self._dirty = False

        try:
            await asyncio.to_thread(self._write_sync, body)
        except OSError as e:
            self._dirty = True
            log_event({
                "level": "error",
                "event_type": "HISTORY_FLUSH_FAILED",
                "path": str(self._path),
                "error": str(e),
            })
            return False

        return True

    def _write_sync(self, body: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(self._path.name + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            f.write(body)
        os.replace(tmp, self._path)

    # ------------------------------------------------------------------
    # Background flushing
    # ------------------------------------------------------------------

    async def start(self, interval_s: float) -> None:
        """Write an initial snapshot, then flush every interval_s seconds."""
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")

        await self.flush()

        if self._flusher is None or self._flusher.done():
            self._flusher = asyncio.create_task(self._flush_loop(interval_s))

    async def stop(self) -> None:
        """Stop the periodic task and write a final snapshot."""
        flusher = self._flusher
        self._flusher = None
        if flusher is not None and not flusher.done():
            flusher.cancel()
            await asyncio.gather(flusher, return_exceptions=True)

        await self.flush()

    async def _flush_loop(self, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            await self.flush()
