import pytest
import httpx

from codraw.api.deps import get_board_manager
from codraw.core import settings as settings_module
from codraw.db import models  # noqa: F401
from codraw.db.base import Base
from codraw.db.session import get_engine, get_sessionmaker, init_engine
from codraw.engine.board import BoardManager, BoardSession
from codraw.main import app
from codraw.services import whiteboards as whiteboards_module
from codraw.services.canvas_ai import CanvasRequest, RespondOutcome
from codraw.services.whiteboards import WhiteboardStateWriter


@pytest.fixture()
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _use_test_db(tmp_path, monkeypatch):
    db_path = tmp_path / "test.db"
    database_url = f"sqlite+pysqlite:///{db_path}"

    monkeypatch.setattr(settings_module.settings, "database_url", database_url)
    monkeypatch.setattr(settings_module.settings, "db_auto_create", True)
    # Engine writes settle synchronously and timers stay out of the way unless a test opts in.
    monkeypatch.setattr(settings_module.settings, "engine_write_settle_seconds", 0.0)
    monkeypatch.setattr(settings_module.settings, "activity_debounce_seconds", 60.0)
    monkeypatch.setattr(settings_module.settings, "autosave_debounce_seconds", 60.0)

    init_engine(database_url)
    Base.metadata.create_all(bind=get_engine())
    whiteboards_module.invalidate_listing_cache()

    yield

    whiteboards_module.invalidate_listing_cache()


class ScriptedSolver:
    """Stands in for the Gemini-backed solve call; records every request."""

    def __init__(self, outcome=None):
        self.outcome = outcome
        self.requests: list[CanvasRequest] = []

    def __call__(self, request: CanvasRequest):
        self.requests.append(request)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome or RespondOutcome(text="ok")


@pytest.fixture()
def scripted_solver():
    return ScriptedSolver()


@pytest.fixture()
def board_manager(scripted_solver):
    def factory(board_id: str) -> BoardSession:
        return BoardSession(
            board_id,
            solve=scripted_solver,
            writer=WhiteboardStateWriter(get_sessionmaker()),
        )

    manager = BoardManager(factory)
    app.dependency_overrides[get_board_manager] = lambda: manager
    yield manager
    app.dependency_overrides.pop(get_board_manager, None)


@pytest.fixture()
async def client(board_manager):
    async with app.router.lifespan_context(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
        await board_manager.close_all()
