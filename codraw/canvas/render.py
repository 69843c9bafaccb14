"""Rasterize canvas shapes with Pillow for snapshots and thumbnails."""

from __future__ import annotations

import io
import logging
from typing import Iterable

from PIL import Image, ImageDraw, UnidentifiedImageError

from codraw.canvas.models import Asset, Bounds, Shape

logger = logging.getLogger(__name__)

_WHITE = (255, 255, 255, 255)
_TRANSPARENT = (0, 0, 0, 0)


def _scaled(value: float, scale: float) -> int:
    return int(round(value * scale))


def _with_opacity(image: Image.Image, opacity: float) -> Image.Image:
    if opacity >= 1.0:
        return image
    alpha = image.getchannel("A").point(lambda v: int(v * opacity))
    faded = image.copy()
    faded.putalpha(alpha)
    return faded


def _draw_image_shape(canvas: Image.Image, shape: Shape, asset: Asset, origin: tuple[float, float], scale: float) -> None:
    try:
        with Image.open(io.BytesIO(asset.data)) as source:
            picture = source.convert("RGBA")
    except (UnidentifiedImageError, OSError):
        logger.warning("render.asset_unreadable", extra={"asset_id": asset.id, "shape_id": shape.id})
        return
    size = (max(1, _scaled(shape.w, scale)), max(1, _scaled(shape.h, scale)))
    picture = _with_opacity(picture.resize(size), shape.opacity)
    position = (_scaled(shape.x - origin[0], scale), _scaled(shape.y - origin[1], scale))
    # paste clips at the edges, alpha_composite does the blending
    layer = Image.new("RGBA", canvas.size, _TRANSPARENT)
    layer.paste(picture, position)
    canvas.alpha_composite(layer)


def _draw_vector_shape(canvas: Image.Image, shape: Shape, origin: tuple[float, float], scale: float) -> None:
    layer = Image.new("RGBA", canvas.size, _TRANSPARENT)
    pen = ImageDraw.Draw(layer)
    color = shape.props.get("color", "black")
    width = max(1, _scaled(float(shape.props.get("strokeWidth", 2)), scale))
    points = shape.props.get("points")
    if points and len(points) > 1:
        path = [
            (_scaled(shape.x + float(px) - origin[0], scale), _scaled(shape.y + float(py) - origin[1], scale))
            for px, py in points
        ]
        pen.line(path, fill=color, width=width)
    else:
        left = _scaled(shape.x - origin[0], scale)
        top = _scaled(shape.y - origin[1], scale)
        right = left + max(1, _scaled(shape.w, scale))
        bottom = top + max(1, _scaled(shape.h, scale))
        pen.rectangle((left, top, right, bottom), outline=color, width=width)
    canvas.alpha_composite(_with_opacity(layer, shape.opacity))


def content_bounds(shapes: Iterable[Shape]) -> Bounds | None:
    bounds: Bounds | None = None
    for shape in shapes:
        bounds = shape.bounds if bounds is None else bounds.union(shape.bounds)
    return bounds


def rasterize(
    shapes: list[Shape],
    assets: dict[str, Asset],
    *,
    bounds: Bounds | None = None,
    format: str = "png",
    quality: float = 0.92,
    scale: float = 1.0,
    background: bool = True,
    padding: float = 0.0,
) -> bytes | None:
    """Render ``shapes`` (in stacking order) into an encoded image.

    Returns None when there is nothing to draw.
    """
    if not shapes:
        return None
    area = bounds or content_bounds(shapes)
    if area is None:
        return None
    area = area.expand(padding) if padding else area
    if area.is_empty:
        return None

    size = (max(1, _scaled(area.w, scale)), max(1, _scaled(area.h, scale)))
    canvas = Image.new("RGBA", size, _WHITE if background else _TRANSPARENT)
    origin = (area.x, area.y)
    for shape in shapes:
        if shape.opacity <= 0:
            continue
        asset = assets.get(shape.props.get("assetId", "")) if shape.type == "image" else None
        if asset is not None:
            _draw_image_shape(canvas, shape, asset, origin, scale)
        else:
            _draw_vector_shape(canvas, shape, origin, scale)

    buffer = io.BytesIO()
    if format.lower() in {"jpeg", "jpg"}:
        flattened = Image.new("RGB", size, _WHITE[:3])
        flattened.paste(canvas, mask=canvas.getchannel("A"))
        flattened.save(buffer, format="JPEG", quality=max(1, min(95, int(quality * 100))))
    else:
        canvas.save(buffer, format="PNG")
    return buffer.getvalue()
