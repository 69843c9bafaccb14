"""Record types for the in-process canvas document."""

from __future__ import annotations

import base64
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any

LAYER_META_KEY = "layerId"


def new_shape_id() -> str:
    return f"shape:{uuid.uuid4().hex}"


def new_asset_id() -> str:
    return f"asset:{uuid.uuid4().hex}"


@dataclass(frozen=True)
class Bounds:
    x: float
    y: float
    w: float
    h: float

    @property
    def is_empty(self) -> bool:
        return self.w <= 0 or self.h <= 0

    def union(self, other: Bounds) -> Bounds:
        left = min(self.x, other.x)
        top = min(self.y, other.y)
        right = max(self.x + self.w, other.x + other.w)
        bottom = max(self.y + self.h, other.y + other.h)
        return Bounds(left, top, right - left, bottom - top)

    def expand(self, padding: float) -> Bounds:
        return Bounds(self.x - padding, self.y - padding, self.w + 2 * padding, self.h + 2 * padding)

    def to_dict(self) -> dict[str, float]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Bounds:
        return cls(float(data["x"]), float(data["y"]), float(data["w"]), float(data["h"]))


@dataclass(frozen=True)
class Shape:
    """One canvas object. Instances are replaced, never mutated, on update."""

    id: str
    type: str = "draw"
    x: float = 0.0
    y: float = 0.0
    w: float = 0.0
    h: float = 0.0
    opacity: float = 1.0
    is_locked: bool = False
    props: dict[str, Any] = field(default_factory=dict)
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def bounds(self) -> Bounds:
        return Bounds(self.x, self.y, self.w, self.h)

    @property
    def layer_id(self) -> str | None:
        return self.meta.get(LAYER_META_KEY)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "x": self.x,
            "y": self.y,
            "w": self.w,
            "h": self.h,
            "opacity": self.opacity,
            "isLocked": self.is_locked,
            "props": dict(self.props),
            "meta": dict(self.meta),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Shape:
        return cls(
            id=str(data["id"]),
            type=str(data.get("type", "draw")),
            x=float(data.get("x", 0.0)),
            y=float(data.get("y", 0.0)),
            w=float(data.get("w", 0.0)),
            h=float(data.get("h", 0.0)),
            opacity=float(data.get("opacity", 1.0)),
            is_locked=bool(data.get("isLocked", False)),
            props=dict(data.get("props") or {}),
            meta=dict(data.get("meta") or {}),
        )


@dataclass(frozen=True)
class Asset:
    id: str
    mime_type: str
    data: bytes
    w: int
    h: int
    name: str = "asset"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "mimeType": self.mime_type,
            "w": self.w,
            "h": self.h,
            "src": base64.b64encode(self.data).decode("ascii"),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Asset:
        return cls(
            id=str(data["id"]),
            mime_type=str(data.get("mimeType", "image/png")),
            data=base64.b64decode(data.get("src") or b""),
            w=int(data.get("w", 0)),
            h=int(data.get("h", 0)),
            name=str(data.get("name", "asset")),
        )


@dataclass(frozen=True)
class CanvasChange:
    """A batch of document mutations delivered to store listeners.

    ``source`` is ``"user"`` for local edits (including engine writes, which
    are told apart by the write latch) and ``"remote"`` for snapshot loads.
    """

    added: tuple[str, ...] = ()
    updated: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    page_changed: bool = False
    source: str = "user"

    @property
    def touches_shapes(self) -> bool:
        return bool(self.added or self.updated or self.removed)

    @property
    def is_empty(self) -> bool:
        return not (self.touches_shapes or self.page_changed)
