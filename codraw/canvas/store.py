"""
In-process canvas document.

Holds shapes in stacking order (front = last), image assets and page-level
metadata, and notifies listeners about every mutation batch. Engine
components never touch the dictionaries directly; they go through the
create/update/delete calls so listeners and before-create hooks see every
change.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Callable, Iterable

from codraw.canvas.models import Asset, Bounds, CanvasChange, Shape
from codraw.canvas.render import rasterize

logger = logging.getLogger(__name__)

ChangeListener = Callable[[CanvasChange], None]
BeforeCreateHook = Callable[[Shape], Shape]

DEFAULT_VIEWPORT = Bounds(0.0, 0.0, 1280.0, 720.0)


def _subscribe(registry: list, item) -> Callable[[], None]:
    registry.append(item)

    def dispose() -> None:
        if item in registry:
            registry.remove(item)

    return dispose


class CanvasStore:
    def __init__(self, viewport: Bounds | None = None):
        self._shapes: dict[str, Shape] = {}
        self._assets: dict[str, Asset] = {}
        self._page_meta: dict[str, Any] = {}
        self._listeners: list[ChangeListener] = []
        self._before_create: list[BeforeCreateHook] = []
        self.viewport = viewport or DEFAULT_VIEWPORT
        self.revision = 0

    # -- subscriptions -----------------------------------------------------

    def listen(self, listener: ChangeListener) -> Callable[[], None]:
        """Subscribe to mutation batches; returns a disposer."""
        return _subscribe(self._listeners, listener)

    def register_before_create(self, hook: BeforeCreateHook) -> Callable[[], None]:
        """Install a hook that may rewrite every shape before it is committed."""
        return _subscribe(self._before_create, hook)

    def _emit(self, change: CanvasChange) -> None:
        if change.is_empty:
            return
        self.revision += 1
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception("canvas.listener_failed")

    # -- reads -------------------------------------------------------------

    def get_shape(self, shape_id: str) -> Shape | None:
        return self._shapes.get(shape_id)

    def shapes(self) -> list[Shape]:
        return list(self._shapes.values())

    def shape_ids(self) -> list[str]:
        return list(self._shapes)

    def get_asset(self, asset_id: str) -> Asset | None:
        return self._assets.get(asset_id)

    @property
    def is_empty(self) -> bool:
        return not self._shapes

    @property
    def page_meta(self) -> dict[str, Any]:
        return dict(self._page_meta)

    # -- writes ------------------------------------------------------------

    def create_shape(self, shape: Shape) -> Shape:
        return self.create_shapes([shape])[0]

    def create_shapes(self, shapes: Iterable[Shape]) -> list[Shape]:
        created: list[Shape] = []
        for shape in shapes:
            for hook in list(self._before_create):
                shape = hook(shape)
            if shape.id in self._shapes:
                raise ValueError(f"shape already exists: {shape.id}")
            created.append(shape)
        for shape in created:
            self._shapes[shape.id] = shape
        self._emit(CanvasChange(added=tuple(shape.id for shape in created)))
        return created

    def _apply_update(self, shape_id: str, changes: dict[str, Any]) -> bool:
        shape = self._shapes.get(shape_id)
        if shape is None:
            return False
        # Locked shapes only accept partials that carry the lock flag.
        if shape.is_locked and "is_locked" not in changes:
            return False
        self._shapes[shape_id] = dataclasses.replace(shape, **changes)
        return True

    def update_shape(self, shape_id: str, **changes: Any) -> Shape | None:
        if self._apply_update(shape_id, changes):
            self._emit(CanvasChange(updated=(shape_id,)))
        return self._shapes.get(shape_id)

    def update_shapes(self, updates: dict[str, dict[str, Any]]) -> list[str]:
        updated = [shape_id for shape_id, changes in updates.items() if self._apply_update(shape_id, changes)]
        self._emit(CanvasChange(updated=tuple(updated)))
        return updated

    def delete_shape(self, shape_id: str) -> bool:
        return bool(self.delete_shapes([shape_id]))

    def delete_shapes(self, shape_ids: Iterable[str]) -> list[str]:
        """Delete unlocked shapes; unknown and locked ids are skipped."""
        removed: list[str] = []
        for shape_id in shape_ids:
            shape = self._shapes.get(shape_id)
            if shape is None or shape.is_locked:
                continue
            del self._shapes[shape_id]
            removed.append(shape_id)
        self._emit(CanvasChange(removed=tuple(removed)))
        return removed

    def bring_to_front(self, shape_ids: Iterable[str]) -> None:
        wanted = set(shape_ids)
        moving = [shape_id for shape_id in self._shapes if shape_id in wanted]
        for shape_id in moving:
            self._shapes[shape_id] = self._shapes.pop(shape_id)
        self._emit(CanvasChange(updated=tuple(moving)))

    def create_asset(self, asset: Asset) -> Asset:
        self._assets[asset.id] = asset
        return asset

    def delete_asset(self, asset_id: str) -> None:
        self._assets.pop(asset_id, None)

    def update_page_meta(self, **values: Any) -> None:
        self._page_meta.update(values)
        self._emit(CanvasChange(page_changed=True))

    def set_viewport(self, viewport: Bounds) -> None:
        self.viewport = viewport

    # -- snapshots ---------------------------------------------------------

    def get_snapshot(self) -> dict[str, Any]:
        return {
            "shapes": [shape.to_dict() for shape in self._shapes.values()],
            "assets": [asset.to_dict() for asset in self._assets.values()],
            "page": {"meta": dict(self._page_meta)},
            "viewport": self.viewport.to_dict(),
        }

    def load_snapshot(self, data: dict[str, Any]) -> None:
        """Replace the whole document. Before-create hooks do not run."""
        shapes = [Shape.from_dict(item) for item in data.get("shapes", [])]
        assets = [Asset.from_dict(item) for item in data.get("assets", [])]
        page_meta = dict((data.get("page") or {}).get("meta") or {})
        viewport = Bounds.from_dict(data["viewport"]) if data.get("viewport") else self.viewport

        removed = tuple(self._shapes)
        self._shapes = {shape.id: shape for shape in shapes}
        self._assets = {asset.id: asset for asset in assets}
        self._page_meta = page_meta
        self.viewport = viewport
        self._emit(
            CanvasChange(
                added=tuple(self._shapes),
                removed=removed,
                page_changed=True,
                source="remote",
            )
        )

    def export_image(
        self,
        shape_ids: Iterable[str] | None = None,
        *,
        bounds: Bounds | None = None,
        format: str = "png",
        quality: float = 0.92,
        scale: float = 1.0,
        background: bool = True,
        padding: float = 0.0,
    ) -> bytes | None:
        """Rasterize the given shapes (default: all); None when there is nothing to draw."""
        if shape_ids is None:
            selected = self.shapes()
        else:
            wanted = set(shape_ids)
            selected = [shape for shape in self._shapes.values() if shape.id in wanted]
        return rasterize(
            selected,
            dict(self._assets),
            bounds=bounds,
            format=format,
            quality=quality,
            scale=scale,
            background=background,
            padding=padding,
        )
