"""
Generation pipeline.

Captures a snapshot of the visible canvas, asks the AI service for a
response or an overlay image, and stages the overlay as a locked, pending
image shape that the user later accepts or rejects.

State machine: idle -> generating -> {success -> idle, error -> idle}.
At most one request is in flight; a superseded or cancelled request
applies no side effects even if its response arrives later.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Literal

from codraw.canvas.models import LAYER_META_KEY, Asset, CanvasChange, Shape, new_asset_id, new_shape_id
from codraw.canvas.store import CanvasStore
from codraw.core.exceptions import AppError, GenerationCancelledError
from codraw.core.metrics import record_generation, record_pending_resolution
from codraw.core.request_context import log_context
from codraw.core.telemetry import trace_span
from codraw.engine import imaging
from codraw.engine.layers import LayerRegistry
from codraw.engine.write_latch import EngineWriteLatch
from codraw.services.canvas_ai import CanvasRequest, DrawOutcome, GenerationOutcome
from codraw.services.vertex_gemini import GeminiError

logger = logging.getLogger(__name__)

GenerationSource = Literal["auto", "voice", "chat"]
SolveFn = Callable[[CanvasRequest], GenerationOutcome]

GENERATING_MESSAGE = "Thinking..."
SUCCESS_MESSAGE = "Success!"


class SolverStatus(str, enum.Enum):
    IDLE = "idle"
    GENERATING = "generating"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class ReferenceImage:
    data: bytes
    mime_type: str = "image/png"


@dataclass
class GenerationRequest:
    source: GenerationSource = "auto"
    prompt: str | None = None
    reference_images: list[ReferenceImage] = field(default_factory=list)
    force: bool = False


@dataclass(frozen=True)
class GenerationResult:
    success: bool
    text: str = ""
    shape_id: str | None = None
    layer_id: str | None = None
    reason: str | None = None


@dataclass(frozen=True)
class PendingGeneration:
    shape_id: str
    layer_id: str
    created_at: float


class CancellationToken:
    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise GenerationCancelledError()


class GenerationPipeline:
    def __init__(
        self,
        store: CanvasStore,
        layers: LayerRegistry,
        latch: EngineWriteLatch,
        solve: SolveFn,
        *,
        is_voice_active: Callable[[], bool] | None = None,
        on_resolved: Callable[[], None] | None = None,
        snapshot_scale: float = 0.7,
        snapshot_quality: float = 0.7,
        background_threshold: int = 240,
        correct_whites: bool = False,
        success_reset_seconds: float = 2.0,
        error_reset_seconds: float = 3.0,
        timeout_seconds: float | None = 90.0,
    ):
        self.store = store
        self.layers = layers
        self.latch = latch
        self._solve = solve
        self.is_voice_active = is_voice_active or (lambda: False)
        self.on_resolved = on_resolved
        self.snapshot_scale = snapshot_scale
        self.snapshot_quality = snapshot_quality
        self.background_threshold = background_threshold
        self.correct_whites = correct_whites
        self.success_reset_seconds = success_reset_seconds
        self.error_reset_seconds = error_reset_seconds
        self.timeout_seconds = timeout_seconds

        self.ai_enabled = True
        self.status = SolverStatus.IDLE
        self.status_message = ""
        self.error_message = ""
        self._pending: list[PendingGeneration] = []
        self._token: CancellationToken | None = None
        self._reset_timer: asyncio.TimerHandle | None = None
        self._dispose: Callable[[], None] | None = None

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        if self._dispose is None:
            self._dispose = self.store.listen(self._on_canvas_change)

    def stop(self) -> None:
        self.cancel()
        self._cancel_reset()
        if self._dispose is not None:
            self._dispose()
            self._dispose = None

    # -- observable state --------------------------------------------------

    @property
    def busy(self) -> bool:
        return self._token is not None

    @property
    def pending(self) -> list[PendingGeneration]:
        return list(self._pending)

    @property
    def pending_image_ids(self) -> list[str]:
        return [item.shape_id for item in self._pending]

    @property
    def current_pending(self) -> PendingGeneration | None:
        return self._pending[-1] if self._pending else None

    def status_snapshot(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "status_message": self.status_message,
            "error_message": self.error_message,
            "ai_enabled": self.ai_enabled,
            "busy": self.busy,
            "pending_image_ids": self.pending_image_ids,
        }

    def set_ai_enabled(self, enabled: bool) -> None:
        self.ai_enabled = enabled

    # -- entry point -------------------------------------------------------

    def _guard(self, request: GenerationRequest) -> str | None:
        if request.source == "auto" and not self.ai_enabled:
            return "ai_disabled"
        if self.is_voice_active() and request.source != "voice" and not request.force:
            return "voice_session_active"
        if request.source == "auto" and not self._capture_ids():
            return "empty_canvas"
        if self._token is not None and request.source != "chat":
            return "busy"
        return None

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        reason = self._guard(request)
        if reason is not None:
            record_generation(request.source, "rejected")
            logger.info("solver.rejected", extra={"reason": reason, "source": request.source})
            return GenerationResult(success=False, reason=reason)

        if self._token is not None:
            logger.info("solver.superseded", extra={"source": request.source})
            self._token.cancel()

        token = CancellationToken()
        self._token = token
        self._cancel_reset()
        self.error_message = ""
        self._set_status(SolverStatus.GENERATING, GENERATING_MESSAGE)

        with log_context(generation_source=request.source), trace_span("generation", source=request.source):
            try:
                result = await self._run(request, token)
            except GenerationCancelledError:
                record_generation(request.source, "cancelled")
                logger.info("solver.cancelled")
                return GenerationResult(success=False, reason="cancelled")
            except (AppError, GeminiError, asyncio.TimeoutError) as exc:
                if token.cancelled:
                    record_generation(request.source, "cancelled")
                    return GenerationResult(success=False, reason="cancelled")
                message = self._describe_error(exc)
                record_generation(request.source, "error")
                logger.error("solver.failed", extra={"error": str(exc)})
                self._fail(token, message)
                return GenerationResult(success=False, reason=message)
            except asyncio.CancelledError:
                token.cancel()
                if self._token is token:
                    self._cancel_reset()
                    self.error_message = ""
                    self._set_status(SolverStatus.IDLE, "")
                record_generation(request.source, "cancelled")
                logger.info("solver.task_cancelled")
                raise
            finally:
                if self._token is token:
                    self._token = None

        record_generation(request.source, "staged" if result.shape_id else "responded")
        return result

    async def _run(self, request: GenerationRequest, token: CancellationToken) -> GenerationResult:
        snapshot = self._capture_snapshot()
        token.raise_if_cancelled()

        payload = CanvasRequest(
            source=request.source,
            prompt=request.prompt,
            snapshot=snapshot,
            snapshot_mime_type="image/jpeg",
            reference_images=[(ref.data, ref.mime_type) for ref in request.reference_images],
            layer_names=[layer.name for layer in self.layers.layers],
        )
        call = asyncio.to_thread(self._solve, payload)
        if self.timeout_seconds:
            outcome = await asyncio.wait_for(call, timeout=self.timeout_seconds)
        else:
            outcome = await call
        token.raise_if_cancelled()

        if not isinstance(outcome, DrawOutcome) or outcome.image is None:
            logger.info("solver.text_only", extra={"kind": outcome.kind})
            self._set_status(SolverStatus.IDLE, "")
            return GenerationResult(success=True, text=outcome.text)

        image = await asyncio.to_thread(self._prepare_image, outcome.image)
        token.raise_if_cancelled()

        shape_id, layer_id = self._stage(image, outcome.target_layer)
        self._set_status(SolverStatus.SUCCESS, SUCCESS_MESSAGE)
        self._schedule_reset(self.success_reset_seconds)
        logger.info("solver.staged", extra={"shape_id": shape_id, "layer_id": layer_id})
        return GenerationResult(success=True, text=outcome.text, shape_id=shape_id, layer_id=layer_id)

    def _capture_ids(self) -> list[str]:
        pending = set(self.pending_image_ids)
        return [shape_id for shape_id in self.store.shape_ids() if shape_id not in pending]

    def _capture_snapshot(self) -> bytes | None:
        ids = self._capture_ids()
        if not ids:
            return None
        return self.store.export_image(
            ids,
            bounds=self.store.viewport,
            format="jpeg",
            quality=self.snapshot_quality,
            scale=self.snapshot_scale,
            background=True,
        )

    def _prepare_image(self, data: bytes):
        image = imaging.decode_image(data)
        if self.correct_whites:
            image = imaging.correct_yellowed_whites(image, self.background_threshold)
        return imaging.remove_white_background(image, self.background_threshold)

    def _stage(self, image, target_layer: str | None) -> tuple[str, str]:
        """Insert the overlay as a locked pending image shape."""
        if target_layer:
            layer_id = self.layers.find_or_create_layer(target_layer)
        else:
            layer_id = self.layers.default_destination()
        placement = imaging.fit_to_viewport(image.width, image.height, self.store.viewport)

        asset = Asset(
            id=new_asset_id(),
            mime_type="image/png",
            data=imaging.encode_png(image),
            w=image.width,
            h=image.height,
            name="generated-solution.png",
        )
        shape = Shape(
            id=new_shape_id(),
            type="image",
            x=placement.x,
            y=placement.y,
            w=placement.w,
            h=placement.h,
            opacity=1.0 if self.layers.is_layer_visible(layer_id) else 0.0,
            is_locked=True,
            props={"assetId": asset.id, "w": placement.w, "h": placement.h},
            meta={LAYER_META_KEY: layer_id},
        )
        with self.latch.hold():
            self.store.create_asset(asset)
            try:
                self.store.create_shape(shape)
            except Exception:
                self.store.delete_asset(asset.id)
                raise
        self._pending.append(PendingGeneration(shape.id, layer_id, time.time()))
        return shape.id, layer_id

    # -- resolution --------------------------------------------------------

    def _take_pending(self, shape_id: str) -> PendingGeneration | None:
        for position, item in enumerate(self._pending):
            if item.shape_id == shape_id:
                return self._pending.pop(position)
        return None

    def handle_accept(self, shape_id: str) -> bool:
        item = self._take_pending(shape_id)
        if item is None:
            return False
        layer_id = self.layers.layer_for_shape(shape_id) or item.layer_id
        opacity = 1.0 if self.layers.is_layer_visible(layer_id) else 0.0
        with self.latch.hold():
            self.store.update_shape(shape_id, is_locked=False, opacity=opacity)
            self.store.update_shape(shape_id, is_locked=True)
        record_pending_resolution("accepted")
        logger.info("solver.accepted", extra={"shape_id": shape_id})
        self._resolved()
        return True

    def handle_reject(self, shape_id: str) -> bool:
        item = self._take_pending(shape_id)
        if item is None:
            return False
        shape = self.store.get_shape(shape_id)
        asset_id = shape.props.get("assetId") if shape else None
        with self.latch.hold():
            self.store.update_shape(shape_id, is_locked=False)
            self.store.delete_shape(shape_id)
            if asset_id:
                self.store.delete_asset(asset_id)
        record_pending_resolution("rejected")
        logger.info("solver.rejected_overlay", extra={"shape_id": shape_id})
        self._resolved()
        return True

    def accept_current(self) -> bool:
        current = self.current_pending
        return self.handle_accept(current.shape_id) if current else False

    def reject_current(self) -> bool:
        current = self.current_pending
        return self.handle_reject(current.shape_id) if current else False

    def _resolved(self) -> None:
        if self.on_resolved is not None:
            self.on_resolved()

    # -- cancellation ------------------------------------------------------

    def cancel(self) -> bool:
        """Invalidate the in-flight request and return to idle silently."""
        token = self._token
        if token is None:
            return False
        token.cancel()
        self._token = None
        self._cancel_reset()
        self.error_message = ""
        self._set_status(SolverStatus.IDLE, "")
        return True

    def _on_canvas_change(self, change: CanvasChange) -> None:
        if change.removed:
            removed = set(change.removed)
            self._pending = [item for item in self._pending if item.shape_id not in removed]
        if change.source == "remote" or not change.touches_shapes or self.latch.held:
            return
        if self.cancel():
            logger.info("solver.cancelled_by_edit")

    # -- status ------------------------------------------------------------

    def _set_status(self, status: SolverStatus, message: str) -> None:
        self.status = status
        self.status_message = message

    def _fail(self, token: CancellationToken, message: str) -> None:
        if token.cancelled or (self._token is not None and self._token is not token):
            return
        self.error_message = message
        self._set_status(SolverStatus.ERROR, "")
        self._schedule_reset(self.error_reset_seconds)

    @staticmethod
    def _describe_error(exc: BaseException) -> str:
        if isinstance(exc, asyncio.TimeoutError):
            return "Generation timed out"
        return str(exc) or "Generation failed"

    def _cancel_reset(self) -> None:
        if self._reset_timer is not None:
            self._reset_timer.cancel()
            self._reset_timer = None

    def _schedule_reset(self, delay: float) -> None:
        self._cancel_reset()
        loop = asyncio.get_running_loop()
        self._reset_timer = loop.call_later(delay, self._reset_to_idle)

    def _reset_to_idle(self) -> None:
        self._reset_timer = None
        if self._token is not None:
            return
        self.error_message = ""
        self._set_status(SolverStatus.IDLE, "")
