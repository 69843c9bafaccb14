"""Debounced best-effort autosave of the canvas snapshot and a thumbnail."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Protocol

from codraw.canvas.models import CanvasChange
from codraw.canvas.store import CanvasStore
from codraw.core.exceptions import StatementTimeoutError
from codraw.core.metrics import record_autosave
from codraw.core.request_context import log_context
from codraw.engine.imaging import to_data_url
from codraw.engine.write_latch import EngineWriteLatch

logger = logging.getLogger(__name__)


class StateWriter(Protocol):
    def __call__(self, board_id: str, data: dict[str, Any], preview: str | None) -> Awaitable[None]: ...


class PersistenceSync:
    def __init__(
        self,
        board_id: str,
        store: CanvasStore,
        writer: StateWriter,
        *,
        latch: EngineWriteLatch | None = None,
        quiet_seconds: float = 2.0,
        preview_scale: float = 0.5,
        preview_max_length: int = 8000,
        is_online: Callable[[], bool] | None = None,
    ):
        self.board_id = board_id
        self.store = store
        self.writer = writer
        self.latch = latch
        self.quiet_seconds = quiet_seconds
        self.preview_scale = preview_scale
        self.preview_max_length = preview_max_length
        self.is_online = is_online or (lambda: True)
        self._timer: asyncio.TimerHandle | None = None
        self._flush_task: asyncio.Task | None = None
        self._flush_lock = asyncio.Lock()
        self._dispose: Callable[[], None] | None = None

    @property
    def scheduled(self) -> bool:
        return self._timer is not None

    def start(self) -> None:
        if self._dispose is None:
            self._dispose = self.store.listen(self._on_change)

    def stop(self) -> None:
        self.cancel()
        if self._dispose is not None:
            self._dispose()
            self._dispose = None

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_change(self, change: CanvasChange) -> None:
        if change.source == "remote":
            return
        if self.latch is not None and self.latch.held:
            return
        self.schedule()

    def schedule(self) -> None:
        """(Re)start the single save timer."""
        self.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.quiet_seconds, self._fire)

    def _fire(self) -> None:
        self._timer = None
        if self.latch is not None and self.latch.held:
            self.schedule()
            return
        self._flush_task = asyncio.get_running_loop().create_task(self.flush())

    async def drain(self) -> None:
        """Wait for a timer-started save that is still writing."""
        task = self._flush_task
        if task is not None and not task.done():
            await task

    def render_preview(self) -> str | None:
        """Viewport thumbnail as a PNG data URL; None when empty, too large or unrenderable."""
        if self.store.is_empty:
            return None
        try:
            png = self.store.export_image(
                bounds=self.store.viewport,
                format="png",
                scale=self.preview_scale,
                background=False,
            )
        except (OSError, ValueError):
            logger.warning("sync.thumbnail_failed", exc_info=True)
            return None
        if png is None:
            return None
        preview = to_data_url(png, "image/png")
        if len(preview) > self.preview_max_length:
            logger.info("sync.thumbnail_omitted", extra={"length": len(preview)})
            return None
        return preview

    async def flush(self) -> bool:
        """Save now. Returns True when the write went through."""
        async with self._flush_lock:
            return await self._write()

    async def _write(self) -> bool:
        with log_context(board_id=self.board_id):
            if not self.is_online():
                logger.warning("sync.skipped_offline")
                record_autosave("skipped")
                return False

            data = self.store.get_snapshot()
            preview = self.render_preview()
            try:
                await self.writer(self.board_id, data, preview)
            except StatementTimeoutError as exc:
                logger.warning("sync.statement_timeout_ignored", extra={"error": str(exc)})
                record_autosave("timeout")
                return False
            except Exception:
                logger.exception("sync.save_failed")
                record_autosave("error")
                return False

            record_autosave("saved")
            logger.info("sync.saved", extra={"has_preview": preview is not None})
            return True
