import asyncio
import io
import threading

import pytest
from PIL import Image

from codraw.canvas.models import Shape
from codraw.core import settings as settings_module
from codraw.core.exceptions import ConfigurationError
from codraw.engine.board import EMPTY_CANVAS_ANALYSIS, BoardManager, BoardSession
from codraw.engine.solver import SolverStatus
from codraw.services.canvas_ai import DrawOutcome


class MemoryWriter:
    def __init__(self):
        self.saves = []

    async def __call__(self, board_id, data, preview):
        self.saves.append((board_id, data, preview))


def _png():
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), (10, 120, 10)).save(buffer, format="PNG")
    return buffer.getvalue()


def _session(scripted_solver, analyze=None, writer=None):
    session = BoardSession("board-1", solve=scripted_solver, writer=writer or MemoryWriter(), analyze=analyze)
    session.open()
    return session


@pytest.mark.anyio
async def test_analyze_tool_on_empty_canvas(scripted_solver):
    session = _session(scripted_solver, analyze=lambda image, focus: "unused")

    assert await session._analyze_workspace_tool({}) == EMPTY_CANVAS_ANALYSIS

    await session.close()


@pytest.mark.anyio
async def test_analyze_tool_sends_canvas_and_focus(scripted_solver):
    calls = []

    def analyze(image, focus):
        calls.append((image, focus))
        return "A small square."

    session = _session(scripted_solver, analyze=analyze)
    session.store.create_shape(Shape(id="shape:a", w=20, h=20))

    result = await session._analyze_workspace_tool({"focus": "  the square "})

    assert result == "A small square."
    image, focus = calls[0]
    assert image.startswith("data:image/png;base64,")
    assert focus == "the square"
    await session.close()


@pytest.mark.anyio
async def test_analyze_tool_requires_analyzer(scripted_solver):
    session = _session(scripted_solver)

    with pytest.raises(ConfigurationError):
        await session._analyze_workspace_tool({})

    await session.close()


@pytest.mark.anyio
async def test_draw_tool_runs_forced_voice_generation(scripted_solver):
    scripted_solver.outcome = DrawOutcome(text="A tree.", image=_png())
    session = _session(scripted_solver)

    result = await session._draw_on_canvas_tool({"instructions": "draw a tree"})

    assert result == {"success": True}
    request = scripted_solver.requests[0]
    assert (request.source, request.prompt) == ("voice", "draw a tree")
    assert len(session.solver.pending_image_ids) == 1
    await session.close()


@pytest.mark.anyio
async def test_draw_tool_reports_failure(scripted_solver):
    scripted_solver.outcome = DrawOutcome(text="", image=b"not an image")
    session = _session(scripted_solver)

    assert await session._draw_on_canvas_tool({}) == {"success": False}
    assert session.solver.pending_image_ids == []
    await session.close()


@pytest.mark.anyio
async def test_cancelled_draw_returns_solver_to_idle():
    release = threading.Event()

    def solve(request):
        release.wait(timeout=2)
        return DrawOutcome(text="late", image=_png())

    session = _session(solve)
    task = asyncio.create_task(session._draw_on_canvas_tool({"instructions": "a boat"}))
    while not session.solver.busy:
        await asyncio.sleep(0.005)
    assert session.solver.status == SolverStatus.GENERATING

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    release.set()
    await asyncio.sleep(0.05)

    assert session.solver.status == SolverStatus.IDLE
    assert not session.solver.busy
    assert session.solver.pending_image_ids == []
    await session.close()


@pytest.mark.anyio
async def test_settled_activity_triggers_auto_generation(scripted_solver, monkeypatch):
    monkeypatch.setattr(settings_module.settings, "activity_debounce_seconds", 0.05)
    session = _session(scripted_solver)

    session.store.create_shape(Shape(id="shape:a", w=20, h=20))
    await asyncio.sleep(0.3)

    assert [request.source for request in scripted_solver.requests] == ["auto"]
    assert scripted_solver.requests[0].snapshot is not None
    await session.close()


@pytest.mark.anyio
async def test_close_flushes_pending_save(scripted_solver):
    writer = MemoryWriter()
    session = _session(scripted_solver, writer=writer)
    session.store.create_shape(Shape(id="shape:a", w=20, h=20))
    assert session.sync.scheduled

    await session.close()

    assert len(writer.saves) == 1
    assert writer.saves[0][1]["shapes"][0]["id"] == "shape:a"
    assert not session.is_open


@pytest.mark.anyio
async def test_corrupt_snapshot_opens_blank_board(scripted_solver):
    session = BoardSession("board-1", solve=scripted_solver, writer=MemoryWriter())

    session.open({"shapes": [{"x": 1}]})

    assert session.store.is_empty
    assert [layer.name for layer in session.layers.layers] == ["Background"]
    await session.close()


@pytest.mark.anyio
async def test_manager_keeps_one_session_per_board(scripted_solver):
    manager = BoardManager(lambda board_id: BoardSession(board_id, solve=scripted_solver, writer=MemoryWriter()))

    first = manager.open("board-1")
    assert manager.open("board-1") is first
    assert manager.is_open("board-1")

    assert await manager.close("board-1") is True
    assert await manager.close("board-1") is False
    assert not manager.is_open("board-1")
