import asyncio
import logging
import re
import uuid
from typing import Any

from sqlalchemy import desc, select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from codraw.core.exceptions import EntityNotFoundError, PersistenceError, StatementTimeoutError
from codraw.db.models import DEFAULT_WHITEBOARD_TITLE, Whiteboard
from codraw.db.session import get_sessionmaker

logger = logging.getLogger(__name__)

STATEMENT_TIMEOUT_SQLSTATE = "57014"
_STATEMENT_TIMEOUT_RE = re.compile(r"statement timeout", re.IGNORECASE)

# Listing payloads, cleared by every mutation.
_listing_cache: list[dict[str, Any]] | None = None


def invalidate_listing_cache() -> None:
    global _listing_cache
    _listing_cache = None


def is_statement_timeout(exc: BaseException) -> bool:
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None) or getattr(exc, "code", None)
    if code == STATEMENT_TIMEOUT_SQLSTATE:
        return True
    return bool(_STATEMENT_TIMEOUT_RE.search(str(orig or exc)))


def whiteboard_summary(row: Whiteboard) -> dict[str, Any]:
    return {
        "whiteboard_id": row.whiteboard_id,
        "title": row.title,
        "preview": row.preview,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }


class WhiteboardService:
    def __init__(self, db: Session):
        self.db = db

    def create_whiteboard(self, title: str | None = None) -> Whiteboard:
        row = Whiteboard(title=(title or "").strip() or DEFAULT_WHITEBOARD_TITLE, data={})
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        invalidate_listing_cache()
        logger.info("whiteboards.created", extra={"whiteboard_id": str(row.whiteboard_id)})
        return row

    def get_whiteboard(self, whiteboard_id: uuid.UUID) -> Whiteboard:
        row = self.db.get(Whiteboard, whiteboard_id)
        if row is None:
            raise EntityNotFoundError("Whiteboard", whiteboard_id)
        return row

    def list_whiteboards(self) -> list[dict[str, Any]]:
        global _listing_cache
        if _listing_cache is None:
            rows = self.db.execute(select(Whiteboard).order_by(desc(Whiteboard.updated_at))).scalars().all()
            _listing_cache = [whiteboard_summary(row) for row in rows]
        return list(_listing_cache)

    def rename_whiteboard(self, whiteboard_id: uuid.UUID, title: str) -> Whiteboard:
        row = self.get_whiteboard(whiteboard_id)
        row.title = title.strip() or DEFAULT_WHITEBOARD_TITLE
        self.db.commit()
        self.db.refresh(row)
        invalidate_listing_cache()
        return row

    def delete_whiteboard(self, whiteboard_id: uuid.UUID) -> None:
        row = self.get_whiteboard(whiteboard_id)
        self.db.delete(row)
        self.db.commit()
        invalidate_listing_cache()
        logger.info("whiteboards.deleted", extra={"whiteboard_id": str(whiteboard_id)})

    def save_state(self, whiteboard_id: uuid.UUID, data: dict[str, Any], preview: str | None = None) -> None:
        """Persist a board snapshot; the preview column is only touched when a preview is given.

        Raises:
            EntityNotFoundError: unknown board
            StatementTimeoutError: the database cancelled the statement
            PersistenceError: any other database failure
        """
        row = self.get_whiteboard(whiteboard_id)
        row.data = data
        if preview is not None:
            row.preview = preview
        try:
            self.db.commit()
        except DBAPIError as exc:
            self.db.rollback()
            if is_statement_timeout(exc):
                raise StatementTimeoutError("Whiteboard save timed out", detail=str(exc)) from exc
            raise PersistenceError("Whiteboard save failed", detail=str(exc)) from exc
        invalidate_listing_cache()


class WhiteboardStateWriter:
    """Async writer used by autosave; runs the blocking save on a worker thread."""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    def _save(self, board_id: str, data: dict[str, Any], preview: str | None) -> None:
        factory = self.session_factory or get_sessionmaker()
        with factory() as db:
            WhiteboardService(db).save_state(uuid.UUID(str(board_id)), data, preview)

    async def __call__(self, board_id: str, data: dict[str, Any], preview: str | None) -> None:
        await asyncio.to_thread(self._save, board_id, data, preview)
