"""
Layer registry.

Layers are an ordered list (front = last) persisted in the page metadata.
Each shape carries its owning layer in ``meta.layerId``; the layer-to-shapes
index is a memoized projection of those tags, so it cannot drift from them.
``reconcile`` re-tags shapes whose tag is missing or names a layer that no
longer exists, which is the only repair ever needed.

Operations never raise for unknown ids; they are no-ops.
"""

from __future__ import annotations

import dataclasses
import logging
import re
import uuid
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Any, Literal

from codraw.canvas.models import LAYER_META_KEY, CanvasChange, Shape
from codraw.canvas.store import CanvasStore
from codraw.engine.write_latch import EngineWriteLatch

logger = logging.getLogger(__name__)

DEFAULT_LAYER_ID = "default"
DEFAULT_LAYER_NAME = "Background"

_AUTO_NAME_RE = re.compile(r"^layer\s+(\d+)$", re.IGNORECASE)
_LAYER_PREFIX_RE = re.compile(r"^layer\s+", re.IGNORECASE)

Direction = Literal["up", "down"]


@dataclass
class Layer:
    id: str
    name: str
    is_visible: bool = True
    is_locked: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "isVisible": self.is_visible, "isLocked": self.is_locked}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Layer:
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            is_visible=bool(data.get("isVisible", True)),
            is_locked=bool(data.get("isLocked", False)),
        )


def normalize_layer_name(name: str) -> str:
    """Case-fold, collapse whitespace and drop a leading "Layer " prefix."""
    collapsed = " ".join(name.split()).lower()
    return _LAYER_PREFIX_RE.sub("", collapsed, count=1)


def auto_name_number(name: str) -> int | None:
    match = _AUTO_NAME_RE.match(name.strip())
    return int(match.group(1)) if match else None


def _new_layer_id() -> str:
    return f"layer-{uuid.uuid4().hex[:12]}"


class LayerRegistry:
    def __init__(self, store: CanvasStore, latch: EngineWriteLatch | None = None):
        self.store = store
        self.latch = latch
        self._layers: list[Layer] = [Layer(DEFAULT_LAYER_ID, DEFAULT_LAYER_NAME)]
        self.active_layer_id = DEFAULT_LAYER_ID
        self._auto_name_high_water = 0
        self._index_cache: tuple[tuple[int, tuple[str, ...]], dict[str, list[str]]] | None = None
        self._disposers = [
            store.register_before_create(self._on_before_create),
            store.listen(self._on_change),
        ]
        self.load_from_page()

    def close(self) -> None:
        for dispose in self._disposers:
            dispose()
        self._disposers = []

    # -- queries -----------------------------------------------------------

    @property
    def layers(self) -> list[Layer]:
        return [dataclasses.replace(layer) for layer in self._layers]

    def get_layer(self, layer_id: str | None) -> Layer | None:
        found = self._find(layer_id)
        return dataclasses.replace(found) if found else None

    def _find(self, layer_id: str | None) -> Layer | None:
        if layer_id is None:
            return None
        for layer in self._layers:
            if layer.id == layer_id:
                return layer
        return None

    def _index_of(self, layer_id: str) -> int | None:
        for position, layer in enumerate(self._layers):
            if layer.id == layer_id:
                return position
        return None

    def is_layer_visible(self, layer_id: str | None) -> bool:
        layer = self._find(layer_id)
        return layer.is_visible if layer else True

    def default_destination(self) -> str:
        """Active layer if it still exists, else the first layer."""
        if self._find(self.active_layer_id):
            return self.active_layer_id
        return self._layers[0].id

    def shape_index(self) -> dict[str, list[str]]:
        """Layer id -> shape ids in stacking order, projected from the shape tags."""
        key = (self.store.revision, tuple(layer.id for layer in self._layers))
        if self._index_cache is None or self._index_cache[0] != key:
            index: dict[str, list[str]] = {layer.id: [] for layer in self._layers}
            for shape in self.store.shapes():
                bucket = index.get(shape.layer_id or "")
                if bucket is not None:
                    bucket.append(shape.id)
            self._index_cache = (key, index)
        return {layer_id: list(ids) for layer_id, ids in self._index_cache[1].items()}

    def shapes_in_layer(self, layer_id: str) -> list[str]:
        return self.shape_index().get(layer_id, [])

    def layer_for_shape(self, shape_id: str) -> str | None:
        shape = self.store.get_shape(shape_id)
        if shape is None or self._find(shape.layer_id) is None:
            return None
        return shape.layer_id

    # -- layer operations --------------------------------------------------

    def set_active_layer(self, layer_id: str) -> None:
        if self._find(layer_id) is None:
            return
        self.active_layer_id = layer_id
        self._persist()

    def add_layer(self) -> str:
        number = max(self._auto_name_high_water, self._max_auto_suffix()) + 1
        layer = self._append_layer(f"Layer {number}")
        self.active_layer_id = layer.id
        self._persist()
        logger.info("layers.added", extra={"layer_id": layer.id, "layer_name": layer.name})
        return layer.id

    def delete_layer(self, layer_id: str) -> None:
        if len(self._layers) <= 1:
            return
        position = self._index_of(layer_id)
        if position is None:
            return

        shape_ids = self.shapes_in_layer(layer_id)
        if shape_ids:
            self.store.update_shapes({shape_id: {"is_locked": False} for shape_id in shape_ids})
            self.store.delete_shapes(shape_ids)

        del self._layers[position]
        if self.active_layer_id == layer_id:
            follower = self._layers[position] if position < len(self._layers) else self._layers[-1]
            self.active_layer_id = follower.id
        self._persist()
        logger.info("layers.deleted", extra={"layer_id": layer_id, "shape_count": len(shape_ids)})

    def toggle_visibility(self, layer_id: str) -> None:
        layer = self._find(layer_id)
        if layer is None:
            return
        layer.is_visible = not layer.is_visible
        self._apply_to_members(layer_id, opacity=1.0 if layer.is_visible else 0.0)
        self._persist()

    def toggle_lock(self, layer_id: str) -> None:
        layer = self._find(layer_id)
        if layer is None:
            return
        layer.is_locked = not layer.is_locked
        self._apply_to_members(layer_id, is_locked=layer.is_locked)
        self._persist()

    def rename_layer(self, layer_id: str, name: str) -> None:
        layer = self._find(layer_id)
        cleaned = name.strip()
        if layer is None or not cleaned:
            return
        layer.name = cleaned
        self._persist()

    def move_layer(self, layer_id: str, direction: Direction) -> None:
        position = self._index_of(layer_id)
        if position is None or direction not in ("up", "down"):
            return
        target = position + 1 if direction == "up" else position - 1
        if target < 0 or target >= len(self._layers):
            return

        self._layers.insert(target, self._layers.pop(position))
        for layer in self._layers:
            members = self.shapes_in_layer(layer.id)
            if members:
                self.store.bring_to_front(members)
        self._persist()

    def assign_shape_to_layer(self, shape_id: str, layer_id: str) -> None:
        shape = self.store.get_shape(shape_id)
        if shape is None or self._find(layer_id) is None or shape.layer_id == layer_id:
            return
        # Rewriting the single tag moves the shape out of its old layer in the same step.
        self.store.update_shape(
            shape_id,
            meta={**shape.meta, LAYER_META_KEY: layer_id},
            is_locked=shape.is_locked,
        )

    def find_or_create_layer(self, name_or_id: str) -> str:
        label = (name_or_id or "").strip()
        if not label:
            return self.default_destination()
        if self._find(label):
            return label

        wanted = normalize_layer_name(label)
        for layer in self._layers:
            if normalize_layer_name(layer.name) == wanted:
                return layer.id

        layer = self._append_layer(label)
        self._persist()
        logger.info("layers.created_for_target", extra={"layer_id": layer.id, "layer_name": label})
        return layer.id

    def reconcile(self) -> list[str]:
        """Re-tag shapes whose owning layer is missing or unknown; returns repaired ids."""
        known = {layer.id for layer in self._layers}
        fallback = self.default_destination()
        updates = {
            shape.id: {"meta": {**shape.meta, LAYER_META_KEY: fallback}, "is_locked": shape.is_locked}
            for shape in self.store.shapes()
            if shape.layer_id not in known
        }
        if updates:
            with self._engine_write():
                self.store.update_shapes(updates)
            logger.info("layers.reconciled", extra={"repaired": len(updates)})
        return list(updates)

    # -- persistence -------------------------------------------------------

    def load_from_page(self) -> None:
        meta = self.store.page_meta
        stored = meta.get("layers") or []
        self._layers = [Layer.from_dict(item) for item in stored] or [Layer(DEFAULT_LAYER_ID, DEFAULT_LAYER_NAME)]
        self._auto_name_high_water = max(int(meta.get("layerCounter") or 0), self._max_auto_suffix())
        active = meta.get("activeLayerId")
        self.active_layer_id = active if self._find(active) else self._layers[0].id

    def _persist(self) -> None:
        self.store.update_page_meta(
            layers=[layer.to_dict() for layer in self._layers],
            activeLayerId=self.active_layer_id,
            layerCounter=self._auto_name_high_water,
        )

    # -- internals ---------------------------------------------------------

    def _max_auto_suffix(self) -> int:
        numbers = [auto_name_number(layer.name) for layer in self._layers]
        return max((number for number in numbers if number is not None), default=0)

    def _append_layer(self, name: str) -> Layer:
        layer = Layer(id=_new_layer_id(), name=name)
        self._layers.append(layer)
        number = auto_name_number(name)
        if number is not None:
            self._auto_name_high_water = max(self._auto_name_high_water, number)
        return layer

    def _apply_to_members(self, layer_id: str, **changes: Any) -> None:
        updates: dict[str, dict[str, Any]] = {}
        for shape_id in self.shapes_in_layer(layer_id):
            shape = self.store.get_shape(shape_id)
            if shape is None:
                continue
            # Carrying the lock flag lets the update through on locked shapes.
            updates[shape_id] = {"is_locked": shape.is_locked, **changes}
        if updates:
            self.store.update_shapes(updates)

    def _engine_write(self):
        return self.latch.hold() if self.latch is not None else nullcontext()

    def _on_before_create(self, shape: Shape) -> Shape:
        layer = self._find(shape.layer_id) or self._find(self.default_destination())
        return dataclasses.replace(
            shape,
            meta={**shape.meta, LAYER_META_KEY: layer.id},
            opacity=shape.opacity if layer.is_visible else 0.0,
            is_locked=shape.is_locked or layer.is_locked,
        )

    def _on_change(self, change: CanvasChange) -> None:
        if change.source == "remote":
            self.load_from_page()
            self.reconcile()
