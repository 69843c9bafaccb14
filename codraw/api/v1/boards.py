import dataclasses
import uuid

from fastapi import APIRouter, File, Form, HTTPException, Response, UploadFile

from codraw.api.deps import BoardManagerDep, DbSessionDep
from codraw.api.v1.schemas import (
    AIToggle,
    GenerationResponse,
    LayerFind,
    LayerList,
    LayerMove,
    LayerRead,
    LayerRename,
    PendingResolution,
    PendingResolutionResult,
    ShapeAssignment,
    ShapeCreate,
    ShapeUpdate,
    ViewportUpdate,
)
from codraw.canvas.models import Bounds, Shape, new_shape_id
from codraw.core.exceptions import EntityNotFoundError
from codraw.engine.board import BoardSession
from codraw.engine.solver import GenerationRequest, ReferenceImage
from codraw.services.whiteboards import WhiteboardService


router = APIRouter(tags=["boards"])


def _layer_list(session: BoardSession) -> LayerList:
    index = session.layers.shape_index()
    return LayerList(
        layers=[
            LayerRead(
                id=layer.id,
                name=layer.name,
                is_visible=layer.is_visible,
                is_locked=layer.is_locked,
                shape_ids=index.get(layer.id, []),
            )
            for layer in session.layers.layers
        ],
        active_layer_id=session.layers.active_layer_id,
    )


def _get_shape_or_404(session: BoardSession, shape_id: str) -> Shape:
    shape = session.store.get_shape(shape_id)
    if shape is None:
        raise EntityNotFoundError("Shape", shape_id)
    return shape


@router.post("/boards/{board_id}/open")
async def open_board(board_id: uuid.UUID, db=DbSessionDep, manager=BoardManagerDep):
    if not manager.is_open(str(board_id)):
        row = WhiteboardService(db).get_whiteboard(board_id)
        manager.open(str(board_id), row.data or None)
    return manager.get(str(board_id)).status()


@router.post("/boards/{board_id}/close", status_code=204)
async def close_board(board_id: uuid.UUID, manager=BoardManagerDep):
    if not await manager.close(str(board_id)):
        raise EntityNotFoundError("Board session", board_id)
    return Response(status_code=204)


@router.get("/boards/{board_id}/status")
async def board_status(board_id: uuid.UUID, manager=BoardManagerDep):
    return manager.get(str(board_id)).status()


@router.get("/boards/{board_id}/snapshot")
async def board_snapshot(board_id: uuid.UUID, manager=BoardManagerDep):
    return manager.get(str(board_id)).store.get_snapshot()


@router.post("/boards/{board_id}/shapes", status_code=201)
async def create_shape(board_id: uuid.UUID, payload: ShapeCreate, manager=BoardManagerDep):
    session = manager.get(str(board_id))
    shape = Shape(**{**payload.model_dump(), "id": payload.id or new_shape_id()})
    if session.store.get_shape(shape.id) is not None:
        raise HTTPException(status_code=409, detail=f"shape already exists: {shape.id}")
    return session.store.create_shape(shape).to_dict()


@router.patch("/boards/{board_id}/shapes/{shape_id}")
async def update_shape(board_id: uuid.UUID, shape_id: str, payload: ShapeUpdate, manager=BoardManagerDep):
    session = manager.get(str(board_id))
    _get_shape_or_404(session, shape_id)
    updated = session.store.update_shape(shape_id, **payload.model_dump(exclude_unset=True))
    return updated.to_dict()


@router.delete("/boards/{board_id}/shapes/{shape_id}", status_code=204)
async def delete_shape(board_id: uuid.UUID, shape_id: str, manager=BoardManagerDep):
    session = manager.get(str(board_id))
    _get_shape_or_404(session, shape_id)
    session.store.delete_shape(shape_id)
    return Response(status_code=204)


@router.put("/boards/{board_id}/viewport")
async def set_viewport(board_id: uuid.UUID, payload: ViewportUpdate, manager=BoardManagerDep):
    session = manager.get(str(board_id))
    session.store.set_viewport(Bounds(payload.x, payload.y, payload.w, payload.h))
    return session.store.viewport.to_dict()


@router.post("/boards/{board_id}/generate", response_model=GenerationResponse)
async def generate(
    board_id: uuid.UUID,
    prompt: str | None = Form(default=None),
    source: str = Form(default="chat"),
    force: bool = Form(default=False),
    references: list[UploadFile] = File(default=[]),
    manager=BoardManagerDep,
):
    if source not in ("auto", "voice", "chat"):
        raise HTTPException(status_code=400, detail=f"unknown generation source: {source}")
    session = manager.get(str(board_id))
    reference_images = [
        ReferenceImage(data=await upload.read(), mime_type=upload.content_type or "image/png")
        for upload in references
    ]
    result = await session.generate(
        GenerationRequest(
            source=source,
            prompt=(prompt or "").strip() or None,
            reference_images=reference_images,
            force=force,
        )
    )
    return GenerationResponse(**dataclasses.asdict(result))


def _resolve(session: BoardSession, payload: PendingResolution | None, accept: bool) -> PendingResolutionResult:
    shape_id = payload.shape_id if payload else None
    if shape_id is None:
        resolved = session.solver.accept_current() if accept else session.solver.reject_current()
    else:
        resolved = session.solver.handle_accept(shape_id) if accept else session.solver.handle_reject(shape_id)
    return PendingResolutionResult(resolved=resolved, pending_image_ids=session.solver.pending_image_ids)


@router.post("/boards/{board_id}/pending/accept", response_model=PendingResolutionResult)
async def accept_pending(board_id: uuid.UUID, payload: PendingResolution | None = None, manager=BoardManagerDep):
    return _resolve(manager.get(str(board_id)), payload, accept=True)


@router.post("/boards/{board_id}/pending/reject", response_model=PendingResolutionResult)
async def reject_pending(board_id: uuid.UUID, payload: PendingResolution | None = None, manager=BoardManagerDep):
    return _resolve(manager.get(str(board_id)), payload, accept=False)


@router.put("/boards/{board_id}/ai")
async def toggle_ai(board_id: uuid.UUID, payload: AIToggle, manager=BoardManagerDep):
    session = manager.get(str(board_id))
    session.solver.set_ai_enabled(payload.enabled)
    return session.solver.status_snapshot()


@router.get("/boards/{board_id}/layers", response_model=LayerList)
async def list_layers(board_id: uuid.UUID, manager=BoardManagerDep):
    return _layer_list(manager.get(str(board_id)))


@router.post("/boards/{board_id}/layers", response_model=LayerList, status_code=201)
async def add_layer(board_id: uuid.UUID, manager=BoardManagerDep):
    session = manager.get(str(board_id))
    session.layers.add_layer()
    return _layer_list(session)


@router.post("/boards/{board_id}/layers/find", response_model=LayerList)
async def find_or_create_layer(board_id: uuid.UUID, payload: LayerFind, manager=BoardManagerDep):
    session = manager.get(str(board_id))
    session.layers.find_or_create_layer(payload.name_or_id)
    return _layer_list(session)


@router.delete("/boards/{board_id}/layers/{layer_id}", response_model=LayerList)
async def delete_layer(board_id: uuid.UUID, layer_id: str, manager=BoardManagerDep):
    session = manager.get(str(board_id))
    session.layers.delete_layer(layer_id)
    return _layer_list(session)


@router.patch("/boards/{board_id}/layers/{layer_id}", response_model=LayerList)
async def rename_layer(board_id: uuid.UUID, layer_id: str, payload: LayerRename, manager=BoardManagerDep):
    session = manager.get(str(board_id))
    session.layers.rename_layer(layer_id, payload.name)
    return _layer_list(session)


@router.post("/boards/{board_id}/layers/{layer_id}/activate", response_model=LayerList)
async def activate_layer(board_id: uuid.UUID, layer_id: str, manager=BoardManagerDep):
    session = manager.get(str(board_id))
    session.layers.set_active_layer(layer_id)
    return _layer_list(session)


@router.post("/boards/{board_id}/layers/{layer_id}/visibility", response_model=LayerList)
async def toggle_layer_visibility(board_id: uuid.UUID, layer_id: str, manager=BoardManagerDep):
    session = manager.get(str(board_id))
    session.layers.toggle_visibility(layer_id)
    return _layer_list(session)


@router.post("/boards/{board_id}/layers/{layer_id}/lock", response_model=LayerList)
async def toggle_layer_lock(board_id: uuid.UUID, layer_id: str, manager=BoardManagerDep):
    session = manager.get(str(board_id))
    session.layers.toggle_lock(layer_id)
    return _layer_list(session)


@router.post("/boards/{board_id}/layers/{layer_id}/move", response_model=LayerList)
async def move_layer(board_id: uuid.UUID, layer_id: str, payload: LayerMove, manager=BoardManagerDep):
    session = manager.get(str(board_id))
    session.layers.move_layer(layer_id, payload.direction)
    return _layer_list(session)


@router.post("/boards/{board_id}/layers/{layer_id}/shapes", response_model=LayerList)
async def assign_shape(board_id: uuid.UUID, layer_id: str, payload: ShapeAssignment, manager=BoardManagerDep):
    session = manager.get(str(board_id))
    session.layers.assign_shape_to_layer(payload.shape_id, layer_id)
    return _layer_list(session)
