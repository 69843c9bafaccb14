from __future__ import annotations

import uuid

from sqlalchemy import JSON, DateTime, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql.sqltypes import Uuid

from codraw.db.base import Base

DEFAULT_WHITEBOARD_TITLE = "Untitled Whiteboard"


class Whiteboard(Base):
    __tablename__ = "whiteboards"

    whiteboard_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default=DEFAULT_WHITEBOARD_TITLE)
    data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    preview: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[object] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[object] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
