"""
Board sessions.

A ``BoardSession`` wires one canvas store to the engine components for a
single open whiteboard: layer registry, generation pipeline, activity
debouncer, autosave and the voice session with its two tools.
``BoardManager`` keeps one live session per board id.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine

from codraw.canvas.store import CanvasStore
from codraw.core.exceptions import ConfigurationError, EntityNotFoundError
from codraw.core.gemini_factory import GeminiNotConfiguredError, build_gemini_client
from codraw.core.request_context import log_context
from codraw.core.settings import settings
from codraw.engine.debounce import ActivityDebouncer
from codraw.engine.imaging import to_data_url
from codraw.engine.layers import LayerRegistry
from codraw.engine.solver import GenerationPipeline, GenerationRequest, SolveFn
from codraw.engine.sync import PersistenceSync, StateWriter
from codraw.engine.tools import ANALYZE_WORKSPACE, DRAW_ON_CANVAS
from codraw.engine.voice import VoiceSession
from codraw.engine.write_latch import EngineWriteLatch
from codraw.prompts.loader import get_prompt
from codraw.services.canvas_ai import CanvasAIService, CanvasRequest, GenerationOutcome
from codraw.services.realtime import QueueAudioSource, RealtimeTransport, WebSocketRealtimeTransport
from codraw.services.whiteboards import WhiteboardStateWriter
from codraw.services.workspace_analysis import WorkspaceAnalyzer

logger = logging.getLogger(__name__)

EMPTY_CANVAS_ANALYSIS = "The canvas is empty."


class BoardSession:
    def __init__(
        self,
        board_id: str,
        *,
        solve: SolveFn,
        writer: StateWriter,
        analyze: Callable[[str, str | None], str] | None = None,
        transport_factory: Callable[[], RealtimeTransport] | None = None,
        audio_source: QueueAudioSource | None = None,
        is_online: Callable[[], bool] | None = None,
    ):
        self.board_id = board_id
        self.analyze = analyze
        self.latch = EngineWriteLatch(settings.engine_write_settle_seconds)
        self.store = CanvasStore()
        self.layers = LayerRegistry(self.store, self.latch)
        self.sync = PersistenceSync(
            board_id,
            self.store,
            writer,
            latch=self.latch,
            quiet_seconds=settings.autosave_debounce_seconds,
            preview_scale=settings.preview_scale,
            preview_max_length=settings.preview_max_length,
            is_online=is_online,
        )
        self.audio_source = audio_source or QueueAudioSource()
        self.voice = VoiceSession(
            self.audio_source,
            transport_factory or _default_transport,
            {
                ANALYZE_WORKSPACE: self._analyze_workspace_tool,
                DRAW_ON_CANVAS: self._draw_on_canvas_tool,
            },
            instructions=get_prompt("voice_session_instructions"),
            voice=settings.realtime_voice,
        )
        self.solver = GenerationPipeline(
            self.store,
            self.layers,
            self.latch,
            solve,
            is_voice_active=lambda: self.voice.active,
            on_resolved=self.sync.schedule,
            snapshot_scale=settings.snapshot_scale,
            snapshot_quality=settings.snapshot_quality,
            background_threshold=settings.background_threshold,
            correct_whites=settings.correct_yellowed_whites,
            success_reset_seconds=settings.success_reset_seconds,
            error_reset_seconds=settings.error_reset_seconds,
            timeout_seconds=settings.generation_timeout_seconds,
        )
        self.debouncer = ActivityDebouncer(
            self.store,
            self._on_settled,
            quiet_seconds=settings.activity_debounce_seconds,
            latch=self.latch,
            is_busy=lambda: self.solver.busy,
        )
        self._tasks: set[asyncio.Task] = set()
        self.is_open = False

    def open(self, snapshot: dict[str, Any] | None = None) -> None:
        """Load the persisted snapshot and start listening. A corrupt snapshot leaves the board blank."""
        with log_context(board_id=self.board_id):
            if snapshot:
                try:
                    self.store.load_snapshot(snapshot)
                except (KeyError, ValueError, TypeError):
                    logger.exception("board.snapshot_corrupt")
            self.layers.load_from_page()
            self.layers.reconcile()
            self.solver.start()
            self.debouncer.start()
            self.sync.start()
            self.is_open = True
            logger.info("board.opened", extra={"shape_count": len(self.store.shape_ids())})

    async def close(self) -> None:
        with log_context(board_id=self.board_id):
            save_pending = self.sync.scheduled
            self.debouncer.stop()
            self.sync.stop()
            await self.sync.drain()
            if save_pending:
                await self.sync.flush()
            self.solver.stop()
            await self.voice.stop_session()
            self.audio_source.close()
            tasks, self._tasks = list(self._tasks), set()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self.layers.close()
            self.is_open = False
            logger.info("board.closed")

    def status(self) -> dict[str, Any]:
        return {
            "board_id": self.board_id,
            "solver": self.solver.status_snapshot(),
            "voice": self.voice.state(),
            "layers": [layer.to_dict() for layer in self.layers.layers],
            "active_layer_id": self.layers.active_layer_id,
            "shape_count": len(self.store.shape_ids()),
        }

    async def generate(self, request: GenerationRequest):
        with log_context(board_id=self.board_id):
            return await self.solver.generate(request)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _on_settled(self) -> None:
        if not self.solver.ai_enabled:
            return
        self._spawn(self.generate(GenerationRequest(source="auto")))

    # -- voice tools -------------------------------------------------------

    async def _draw_on_canvas_tool(self, arguments: dict[str, Any]) -> dict[str, Any]:
        instructions = (arguments.get("instructions") or "").strip() or None
        result = await self.generate(GenerationRequest(source="voice", prompt=instructions, force=True))
        return {"success": result.success}

    async def _analyze_workspace_tool(self, arguments: dict[str, Any]) -> str:
        if self.analyze is None:
            raise ConfigurationError("Workspace analysis is not configured")
        png = self.store.export_image(format="png", background=True)
        if png is None:
            return EMPTY_CANVAS_ANALYSIS
        focus = (arguments.get("focus") or "").strip() or None
        return await asyncio.to_thread(self.analyze, to_data_url(png), focus)


def _default_transport() -> RealtimeTransport:
    return WebSocketRealtimeTransport(settings.realtime_url, settings.realtime_model, settings.openai_api_key)


class _LazyCanvasAI:
    """Builds the Gemini-backed service on first use so boards open without credentials."""

    def __init__(self) -> None:
        self._service: CanvasAIService | None = None

    def __call__(self, request: CanvasRequest) -> GenerationOutcome:
        if self._service is None:
            try:
                client = build_gemini_client()
            except GeminiNotConfiguredError as exc:
                raise ConfigurationError(str(exc)) from exc
            self._service = CanvasAIService(client, classifier_model=settings.gemini_classifier_model)
        return self._service.solve(request)


def build_board_session(board_id: str) -> BoardSession:
    return BoardSession(
        board_id,
        solve=_LazyCanvasAI(),
        writer=WhiteboardStateWriter(),
        analyze=WorkspaceAnalyzer().analyze,
    )


class BoardManager:
    def __init__(self, session_factory: Callable[[str], BoardSession] | None = None):
        self.session_factory = session_factory or build_board_session
        self._sessions: dict[str, BoardSession] = {}

    def get(self, board_id: str) -> BoardSession:
        session = self._sessions.get(str(board_id))
        if session is None:
            raise EntityNotFoundError("Board session", board_id)
        return session

    def is_open(self, board_id: str) -> bool:
        return str(board_id) in self._sessions

    def open(self, board_id: str, snapshot: dict[str, Any] | None = None) -> BoardSession:
        key = str(board_id)
        session = self._sessions.get(key)
        if session is None:
            session = self.session_factory(key)
            session.open(snapshot)
            self._sessions[key] = session
        return session

    async def close(self, board_id: str) -> bool:
        session = self._sessions.pop(str(board_id), None)
        if session is None:
            return False
        await session.close()
        return True

    async def close_all(self) -> None:
        for board_id in list(self._sessions):
            await self.close(board_id)


board_manager = BoardManager()
