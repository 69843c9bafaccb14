import uuid
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import DBAPIError, OperationalError

from codraw.core.exceptions import PersistenceError, StatementTimeoutError
from codraw.db.session import get_sessionmaker
from codraw.services.whiteboards import WhiteboardService, WhiteboardStateWriter, is_statement_timeout


@pytest.mark.anyio
async def test_whiteboard_crud(client):
    resp = await client.post("/v1/whiteboards", json={"title": "  "})
    assert resp.status_code == 201
    created = resp.json()
    assert created["title"] == "Untitled Whiteboard"
    assert created["data"] == {}
    board_id = created["whiteboard_id"]

    resp = await client.get("/v1/whiteboards")
    assert [item["whiteboard_id"] for item in resp.json()] == [board_id]

    resp = await client.patch(f"/v1/whiteboards/{board_id}", json={"title": "Physics notes"})
    assert resp.json()["title"] == "Physics notes"

    # rename invalidates the listing cache
    resp = await client.get("/v1/whiteboards")
    assert resp.json()[0]["title"] == "Physics notes"

    resp = await client.delete(f"/v1/whiteboards/{board_id}")
    assert resp.status_code == 204

    resp = await client.get(f"/v1/whiteboards/{board_id}")
    assert resp.status_code == 404
    assert resp.json()["detail"] == f"Whiteboard not found: {board_id}"


@pytest.mark.anyio
async def test_create_without_body_and_unknown_delete(client):
    resp = await client.post("/v1/whiteboards")
    assert resp.status_code == 201
    assert resp.json()["title"] == "Untitled Whiteboard"

    resp = await client.delete(f"/v1/whiteboards/{uuid.uuid4()}")
    assert resp.status_code == 404


@pytest.mark.anyio
async def test_state_writer_persists_snapshot_and_preview():
    with get_sessionmaker()() as db:
        board_id = WhiteboardService(db).create_whiteboard("Board").whiteboard_id

    writer = WhiteboardStateWriter(get_sessionmaker())
    await writer(str(board_id), {"shapes": [{"id": "shape:a"}]}, "data:image/png;base64,AAAA")
    await writer(str(board_id), {"shapes": []}, None)

    with get_sessionmaker()() as db:
        row = WhiteboardService(db).get_whiteboard(board_id)
        assert row.data == {"shapes": []}
        assert row.preview == "data:image/png;base64,AAAA"


def _dbapi_error(message, pgcode=None):
    orig = Exception(message)
    orig.pgcode = pgcode
    return DBAPIError("UPDATE whiteboards", {}, orig)


def test_is_statement_timeout():
    assert is_statement_timeout(_dbapi_error("canceling", pgcode="57014"))
    assert is_statement_timeout(_dbapi_error("canceling statement due to statement timeout"))
    assert not is_statement_timeout(_dbapi_error("deadlock detected", pgcode="40P01"))


@pytest.mark.parametrize(
    "error,expected",
    [
        (_dbapi_error("canceling", pgcode="57014"), StatementTimeoutError),
        (OperationalError("UPDATE whiteboards", {}, Exception("disk I/O error")), PersistenceError),
    ],
)
def test_save_state_maps_database_errors(error, expected):
    with get_sessionmaker()() as db:
        board_id = WhiteboardService(db).create_whiteboard("Board").whiteboard_id

    db = get_sessionmaker()()
    try:
        db.commit = MagicMock(side_effect=error)
        with pytest.raises(expected):
            WhiteboardService(db).save_state(board_id, {"shapes": []})
    finally:
        db.close()
