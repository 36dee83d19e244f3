"""Scoped, best-effort cleanup of resources created during a run."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable
from dataclasses import dataclass
from types import FrameType, TracebackType
from typing import Any

from autotls.errors import RunInterrupted
from autotls.services.kubectl import ResourceNotFoundError
from autotls.telemetry import RunEvent, TelemetryClient

LOGGER = logging.getLogger("autotls.teardown")


@dataclass(frozen=True)
class _CleanupAction:
    description: str
    action: Callable[[], None]


class TearDown:
    """
    Collects cleanup actions and runs them in reverse registration order.

    Used as a context manager, the actions run on normal exit, on any exception,
    and on SIGTERM (turned into `RunInterrupted` while the scope is active).
    Failures are logged, never raised.
    """

    def __init__(self, *, telemetry: TelemetryClient | None = None) -> None:
        self._actions: list[_CleanupAction] = []
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._previous_sigterm: Any = None
        self._installed_sigterm = False

    def register(self, description: str, action: Callable[[], None]) -> None:
        self._actions.append(_CleanupAction(description=description, action=action))

    @property
    def pending(self) -> tuple[str, ...]:
        return tuple(item.description for item in self._actions)

    def run(self) -> None:
        while self._actions:
            item = self._actions.pop()
            try:
                item.action()
            except ResourceNotFoundError:
                LOGGER.debug("cleanup target already gone target=%s", item.description)
                self._telemetry.emit(RunEvent.TEARDOWN_SKIPPED, target=item.description)
            except Exception as exc:
                LOGGER.warning("cleanup failed target=%s error=%s", item.description, exc)
                self._telemetry.emit(RunEvent.TEARDOWN_FAILED, target=item.description, error=str(exc))
            else:
                LOGGER.info("cleaned up target=%s", item.description)
                self._telemetry.emit(RunEvent.TEARDOWN_DELETED, target=item.description)

    def __enter__(self) -> TearDown:
        if threading.current_thread() is threading.main_thread():
            self._previous_sigterm = signal.signal(signal.SIGTERM, self._on_sigterm)
            self._installed_sigterm = True
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        try:
            self.run()
        finally:
            if self._installed_sigterm:
                previous = self._previous_sigterm
                signal.signal(signal.SIGTERM, signal.SIG_DFL if previous is None else previous)
                self._installed_sigterm = False

    @staticmethod
    def _on_sigterm(signum: int, _frame: FrameType | None) -> None:
        raise RunInterrupted(f"run interrupted by signal {signum}")
