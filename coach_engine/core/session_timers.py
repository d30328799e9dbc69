"""Named, cancellable per-session timers on the running event loop.

Each session owns one SessionTimers. Timers are keyed by kind; arming a kind
always cancels the previous handle of that kind first, so a kind can never
fire twice for one arm sequence. Teardown cancels everything synchronously.
"""

import asyncio
from collections.abc import Callable

from coach_engine.core.logging import get_logger

logger = get_logger(__name__)

FINALIZE_DEBOUNCE = "finalize_debounce"
SILENCE = "silence"
LIVENESS = "liveness"
LIVENESS_DEADLINE = "liveness_deadline"


class SessionTimers:
    """Delayed callbacks keyed by timer kind."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        self._loop = loop
        self._handles: dict[str, asyncio.TimerHandle] = {}
        self._closed = False

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def arm(self, kind: str, delay_ms: int, callback: Callable[[], None]) -> None:
        """(Re)arm a one-shot timer. Any pending timer of the same kind is cancelled."""
        if self._closed:
            return
        self.cancel(kind)

        def _fire() -> None:
            # Drop our own handle before running so the callback may re-arm
            self._handles.pop(kind, None)
            callback()

        self._handles[kind] = self._get_loop().call_later(delay_ms / 1000, _fire)

    def arm_periodic(self, kind: str, interval_ms: int, callback: Callable[[], None]) -> None:
        """Run ``callback`` every ``interval_ms`` until cancelled."""
        if self._closed:
            return

        def _tick() -> None:
            try:
                callback()
            except Exception as e:
                logger.error(f"Periodic timer '{kind}' callback failed: {e}")
            if not self._closed and kind in self._handles:
                self._handles[kind] = self._get_loop().call_later(interval_ms / 1000, _tick)

        self.cancel(kind)
        self._handles[kind] = self._get_loop().call_later(interval_ms / 1000, _tick)

    def cancel(self, kind: str) -> None:
        handle = self._handles.pop(kind, None)
        if handle is not None:
            handle.cancel()

    def cancel_all(self) -> None:
        """Cancel every pending timer; later arms are ignored."""
        self._closed = True
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()

    def is_armed(self, kind: str) -> bool:
        return kind in self._handles

    @property
    def armed_kinds(self) -> list[str]:
        return sorted(self._handles)
