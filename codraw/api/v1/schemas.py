import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class WhiteboardCreate(BaseModel):
    title: str | None = Field(default=None, max_length=255)


class WhiteboardRename(BaseModel):
    title: str = Field(min_length=1, max_length=255)


class WhiteboardSummary(BaseModel):
    whiteboard_id: uuid.UUID
    title: str
    preview: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class WhiteboardRead(WhiteboardSummary):
    data: dict[str, Any] = Field(default_factory=dict)


class ShapeCreate(BaseModel):
    id: str | None = None
    type: str = "draw"
    x: float = 0.0
    y: float = 0.0
    w: float = 0.0
    h: float = 0.0
    opacity: float = Field(default=1.0, ge=0.0, le=1.0)
    is_locked: bool = False
    props: dict[str, Any] = Field(default_factory=dict)
    meta: dict[str, Any] = Field(default_factory=dict)


class ShapeUpdate(BaseModel):
    x: float | None = None
    y: float | None = None
    w: float | None = None
    h: float | None = None
    opacity: float | None = Field(default=None, ge=0.0, le=1.0)
    is_locked: bool | None = None
    props: dict[str, Any] | None = None


class ViewportUpdate(BaseModel):
    x: float
    y: float
    w: float = Field(gt=0)
    h: float = Field(gt=0)


class GenerationResponse(BaseModel):
    success: bool
    text: str = ""
    shape_id: str | None = None
    layer_id: str | None = None
    reason: str | None = None


class PendingResolution(BaseModel):
    # Omitted means the most recent pending overlay.
    shape_id: str | None = None


class PendingResolutionResult(BaseModel):
    resolved: bool
    pending_image_ids: list[str]


class AIToggle(BaseModel):
    enabled: bool


class LayerRead(BaseModel):
    id: str
    name: str
    is_visible: bool
    is_locked: bool
    shape_ids: list[str] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class LayerList(BaseModel):
    layers: list[LayerRead]
    active_layer_id: str


class LayerRename(BaseModel):
    name: str = Field(min_length=1, max_length=255)


class LayerMove(BaseModel):
    direction: Literal["up", "down"]


class LayerFind(BaseModel):
    name_or_id: str = Field(min_length=1, max_length=255)


class ShapeAssignment(BaseModel):
    shape_id: str


class AnalyzeWorkspaceRequest(BaseModel):
    image: str = Field(min_length=1, description="Canvas raster as a data URL")
    focus: str | None = None


class AnalyzeWorkspaceResponse(BaseModel):
    success: bool = True
    analysis: str


class TranscriptionResponse(BaseModel):
    text: str
