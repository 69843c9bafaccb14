"""Suppression scope for canvas writes performed by the engine itself."""

from __future__ import annotations

import asyncio
from contextlib import contextmanager


class EngineWriteLatch:
    """Marks mutations as engine-originated while held.

    Listeners (activity debouncer, autosave, cancellation) check ``held`` and
    ignore what they observe. Release is deferred by ``settle_seconds`` so
    listeners reacting to the just-applied change still see the latch held.
    """

    def __init__(self, settle_seconds: float = 0.1):
        self.settle_seconds = settle_seconds
        self._depth = 0

    @property
    def held(self) -> bool:
        return self._depth > 0

    @contextmanager
    def hold(self):
        self._depth += 1
        try:
            yield self
        finally:
            self._schedule_release()

    def _schedule_release(self) -> None:
        if self.settle_seconds <= 0:
            self._release()
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._release()
            return
        loop.call_later(self.settle_seconds, self._release)

    def _release(self) -> None:
        self._depth = max(0, self._depth - 1)
