from collections.abc import Generator

from fastapi import Depends
from sqlalchemy.orm import Session

from codraw.db.session import get_db
from codraw.engine.board import BoardManager, board_manager
from codraw.services.transcription import Transcriber
from codraw.services.workspace_analysis import WorkspaceAnalyzer


def db_session() -> Generator[Session, None, None]:
    yield from get_db()


def get_board_manager() -> BoardManager:
    return board_manager


def get_transcriber() -> Transcriber:
    return Transcriber()


def get_workspace_analyzer() -> WorkspaceAnalyzer:
    return WorkspaceAnalyzer()


DbSessionDep = Depends(db_session)
BoardManagerDep = Depends(get_board_manager)
TranscriberDep = Depends(get_transcriber)
WorkspaceAnalyzerDep = Depends(get_workspace_analyzer)
