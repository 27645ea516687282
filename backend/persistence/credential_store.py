"""
Durable credential storage.

Responsibilities:
- Existence check for the credentials directory (health, startup guard)
- Load the credential blob once per connect
- Persist rotated credentials with write-then-confirm semantics

Non-responsibilities:
- No interpretation of the blob (opaque to the session keeper)
- No connection decisions

Blocking file I/O runs in a worker thread so the event loop keeps serving
health probes while a save is in flight.
"""

from __future__ import annotations

import asyncio
import json
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from constants import CREDS_FILE_NAME


class CredentialSaveError(Exception):
    """Raised when rotated credentials could not be made durable."""


@dataclass(frozen=True)
class Credentials:
    """
    Opaque credential blob plus metadata.

    data is whatever the transport handed us; updated_at_ms is stamped
    on save.
    """
    data: dict[str, Any] = field(default_factory=lambda: {})
    updated_at_ms: int = 0


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


@runtime_checkable
class CredentialStoreProtocol(Protocol):
    def exists(self) -> bool: ...
    async def load(self) -> Credentials | None: ...
    async def save(self, credentials: Credentials) -> Credentials: ...


class FileCredentialStore:
    """
    Directory-backed credential store.

    Layout:
        <auth_path>/creds.json

    The directory itself is the "credentials present" marker used by the
    health probe and by deployments that require pre-provisioned auth.
    """

    def __init__(self, auth_path: Path) -> None:
        self._auth_path = Path(auth_path)
        self._creds_file = self._auth_path / CREDS_FILE_NAME

    @property
    def path(self) -> Path:
        return self._auth_path

    def exists(self) -> bool:
        return self._auth_path.exists()

    async def load(self) -> Credentials | None:
        """Return stored credentials, or None when nothing was persisted yet."""
        return await asyncio.to_thread(self._load_sync)

    async def save(self, credentials: Credentials) -> Credentials:
        """
        Persist credentials durably.

        Returns the stored value (with updated_at_ms stamped).

        Raises:
            CredentialSaveError on any I/O failure.
        """
        stamped = Credentials(data=credentials.data, updated_at_ms=_now_ms())
        try:
            await asyncio.to_thread(self._save_sync, stamped)
        except OSError as e:
            raise CredentialSaveError(f"failed to persist credentials: {e}") from e
        return stamped

    # ------------------------------------------------------------------
    # Sync helpers (worker thread)
    # ------------------------------------------------------------------

    def _load_sync(self) -> Credentials | None:
        if not self._creds_file.exists():
            return None

        with self._creds_file.open("r", encoding="utf-8") as f:
            raw = json.load(f)

        return Credentials(
            data=raw.get("data", {}),
            updated_at_ms=int(raw.get("updated_at_ms", 0)),
        )

    def _save_sync(self, credentials: Credentials) -> None:
        self._auth_path.mkdir(parents=True, exist_ok=True)

        tmp = self._creds_file.with_suffix(".json.tmp")
        body = json.dumps(
            {"data": credentials.data, "updated_at_ms": credentials.updated_at_ms},
            ensure_ascii=False,
        )

        with tmp.open("w", encoding="utf-8") as f:
            f.write(body)
            f.flush()
            os.fsync(f.fileno())

        os.replace(tmp, self._creds_file)

        # Confirm the rename itself is durable
        if hasattr(os, "O_DIRECTORY"):
            fd = os.open(self._auth_path, os.O_RDONLY | os.O_DIRECTORY)
            try:
                os.fsync(fd)
            finally:
                os.close(fd)
