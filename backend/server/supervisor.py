"""
Process-level fault supervisor.

Responsibilities:
- Catch faults nothing else handled (event loop exception handler,
  sys.excepthook)
- Classify them and decide whether the process must stop
- Receive terminal connection states from the manager
- Resolve one exit code for the entry point

The supervisor never exits the process itself; the entry point awaits
wait() and returns the code after a clean shutdown.
"""

from __future__ import annotations

import asyncio
import sys
from types import TracebackType
from typing import Any

from observability.logger import log_event
from orchestrator.classifier import ClassifiedError, handle_error
from orchestrator.state_dataclass import Failed

EXIT_FATAL = 1


class FatalSupervisor:
    def __init__(self, *, hardened: bool = False) -> None:
        self._hardened = hardened
        self._fatal = asyncio.Event()
        self._exit_code: int | None = None
        self._reason: str | None = None
        self._previous_excepthook = sys.excepthook

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    @property
    def reason(self) -> str | None:
        return self._reason

    @property
    def is_fatal(self) -> bool:
        return self._exit_code is not None

    # ------------------------------------------------------------------
    # Installation
    # ------------------------------------------------------------------

    def install(self, loop: asyncio.AbstractEventLoop) -> None:
        loop.set_exception_handler(self._loop_exception_handler)
        self._previous_excepthook = sys.excepthook
        sys.excepthook = self._excepthook

    def uninstall(self, loop: asyncio.AbstractEventLoop) -> None:
        loop.set_exception_handler(None)
        sys.excepthook = self._previous_excepthook

    # ------------------------------------------------------------------
    # Fault intake
    # ------------------------------------------------------------------

    def report(self, exc: BaseException, context: str) -> ClassifiedError:
        """Log and classify a fault. Non-retryable faults are fatal."""
        classified = handle_error(exc, context, hardened=self._hardened)
        if not classified.retryable:
            self.trigger(classified.reason, classified)
        return classified

    def on_terminal(self, failed: Failed) -> None:
        """Terminal callback for the ConnectionManager."""
        self.trigger(failed.reason, failed.classified)

    def trigger(
        self,
        reason: str,
        classified: ClassifiedError | None = None,
        *,
        exit_code: int = EXIT_FATAL,
    ) -> None:
        """Mark the process as fatally failed. First call wins."""
        if self._exit_code is not None:
            return

        self._exit_code = exit_code
        self._reason = reason

        event: dict[str, Any] = {
            "level": "fatal",
            "event_type": "FATAL",
            "reason": reason,
            "exit_code": exit_code,
        }
        if classified is not None:
            event.update({
                "kind": classified.kind.value,
                "message": classified.message,
                "action": classified.remediation,
            })
        log_event(event)

        self._fatal.set()

    async def wait(self) -> int:
        await self._fatal.wait()
        assert self._exit_code is not None
        return self._exit_code

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def _loop_exception_handler(
        self,
        loop: asyncio.AbstractEventLoop,  # pylint: disable=unused-argument
        context: dict[str, Any],
    ) -> None:
        exc = context.get("exception")
        if exc is None:
            log_event({
                "level": "error",
                "event_type": "EVENT_LOOP_ERROR",
                "message": context.get("message"),
            })
            return
        self.report(exc, "event_loop")

    def _excepthook(
        self,
        exc_type: type[BaseException],
        exc: BaseException,
        tb: TracebackType | None,
    ) -> None:
        if issubclass(exc_type, KeyboardInterrupt):
            self._previous_excepthook(exc_type, exc, tb)
            return
        self.report(exc, "uncaught_exception")
