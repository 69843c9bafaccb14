import uuid

from fastapi import APIRouter, Response

from codraw.api.deps import BoardManagerDep, DbSessionDep
from codraw.api.v1.schemas import WhiteboardCreate, WhiteboardRead, WhiteboardRename, WhiteboardSummary
from codraw.services.whiteboards import WhiteboardService


router = APIRouter(tags=["whiteboards"])


@router.post("/whiteboards", response_model=WhiteboardRead, status_code=201)
def create_whiteboard(payload: WhiteboardCreate | None = None, db=DbSessionDep):
    return WhiteboardService(db).create_whiteboard(payload.title if payload else None)


@router.get("/whiteboards", response_model=list[WhiteboardSummary])
def list_whiteboards(db=DbSessionDep):
    return WhiteboardService(db).list_whiteboards()


@router.get("/whiteboards/{whiteboard_id}", response_model=WhiteboardRead)
def get_whiteboard(whiteboard_id: uuid.UUID, db=DbSessionDep):
    return WhiteboardService(db).get_whiteboard(whiteboard_id)


@router.patch("/whiteboards/{whiteboard_id}", response_model=WhiteboardRead)
def rename_whiteboard(whiteboard_id: uuid.UUID, payload: WhiteboardRename, db=DbSessionDep):
    return WhiteboardService(db).rename_whiteboard(whiteboard_id, payload.title)


@router.delete("/whiteboards/{whiteboard_id}", status_code=204)
async def delete_whiteboard(whiteboard_id: uuid.UUID, db=DbSessionDep, manager=BoardManagerDep):
    await manager.close(str(whiteboard_id))
    WhiteboardService(db).delete_whiteboard(whiteboard_id)
    return Response(status_code=204)
