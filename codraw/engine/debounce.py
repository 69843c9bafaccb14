"""Quiet-period trigger for automatic generation."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from codraw.canvas.models import CanvasChange
from codraw.canvas.store import CanvasStore
from codraw.core.metrics import record_activity_trigger
from codraw.engine.write_latch import EngineWriteLatch

logger = logging.getLogger(__name__)


class ActivityDebouncer:
    """Fires ``on_settled`` once after user edits stop for ``quiet_seconds``.

    Every qualifying change cancels and restarts the single timer. Changes
    made while the engine write latch is held, remote snapshot loads and
    page-metadata-only changes are ignored, and the callback is skipped
    while ``is_busy()`` reports a request in flight.
    """

    def __init__(
        self,
        store: CanvasStore,
        on_settled: Callable[[], None],
        *,
        quiet_seconds: float = 2.0,
        latch: EngineWriteLatch | None = None,
        is_busy: Callable[[], bool] | None = None,
    ):
        self.store = store
        self.on_settled = on_settled
        self.quiet_seconds = quiet_seconds
        self.latch = latch
        self.is_busy = is_busy or (lambda: False)
        self._timer: asyncio.TimerHandle | None = None
        self._dispose: Callable[[], None] | None = None

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def start(self) -> None:
        if self._dispose is None:
            self._dispose = self.store.listen(self.notify)

    def stop(self) -> None:
        self.cancel()
        if self._dispose is not None:
            self._dispose()
            self._dispose = None

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def notify(self, change: CanvasChange) -> None:
        if change.source == "remote" or not change.touches_shapes:
            return
        if self.latch is not None and self.latch.held:
            return
        self.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.quiet_seconds, self._fire)

    def _fire(self) -> None:
        self._timer = None
        if self.is_busy():
            logger.debug("debounce.skipped_busy")
            return
        record_activity_trigger()
        logger.info("debounce.settled", extra={"quiet_seconds": self.quiet_seconds})
        self.on_settled()
