"""Post-processing for generated overlay images."""

from __future__ import annotations

import base64
import io
from dataclasses import dataclass

from PIL import Image, ImageChops, UnidentifiedImageError

from codraw.canvas.models import Bounds
from codraw.core.exceptions import ImageDecodeError


@dataclass(frozen=True)
class Placement:
    x: float
    y: float
    w: float
    h: float


def decode_image(data: bytes) -> Image.Image:
    """Fully decode ``data`` into RGBA; truncated or unknown input raises ImageDecodeError."""
    if not data:
        raise ImageDecodeError("empty image payload")
    try:
        with Image.open(io.BytesIO(data)) as source:
            source.load()
            return source.convert("RGBA")
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise ImageDecodeError("generated image could not be decoded", detail=str(exc)) from exc


def _channel_mask(image: Image.Image, thresholds: tuple[int, int, int]) -> Image.Image:
    """L-mode mask that is 255 where every RGB channel reaches its threshold."""
    red, green, blue = image.convert("RGB").split()
    masks = [
        band.point(lambda value, limit=limit: 255 if value >= limit else 0)
        for band, limit in zip((red, green, blue), thresholds)
    ]
    return ImageChops.multiply(ImageChops.multiply(masks[0], masks[1]), masks[2])


def remove_white_background(image: Image.Image, threshold: int = 240) -> Image.Image:
    """Make every pixel whose R, G and B are all >= threshold fully transparent."""
    result = image.convert("RGBA")
    mask = _channel_mask(result, (threshold, threshold, threshold))
    alpha = ImageChops.subtract(result.getchannel("A"), mask)
    result.putalpha(alpha)
    return result


def correct_yellowed_whites(image: Image.Image, threshold: int = 240) -> Image.Image:
    """Push near-white pixels with a slight yellow cast to pure white.

    A pixel qualifies when R and G are >= threshold and B is >= threshold - 15.
    """
    result = image.convert("RGBA")
    mask = _channel_mask(result, (threshold, threshold, max(0, threshold - 15)))
    alpha = result.getchannel("A")
    white = Image.new("RGBA", result.size, (255, 255, 255, 255))
    result.paste(white, mask=mask)
    result.putalpha(alpha)
    return result


def fit_to_viewport(width: int, height: int, viewport: Bounds) -> Placement:
    """Uniformly scale ``width`` x ``height`` to fit the viewport, centered."""
    if width <= 0 or height <= 0:
        raise ImageDecodeError("generated image has no pixels")
    scale = min(viewport.w / width, viewport.h / height)
    w = width * scale
    h = height * scale
    return Placement(
        x=viewport.x + (viewport.w - w) / 2,
        y=viewport.y + (viewport.h - h) / 2,
        w=w,
        h=h,
    )


def encode_png(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def to_data_url(data: bytes, mime_type: str = "image/png") -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def from_data_url(value: str) -> tuple[bytes, str]:
    """Split a ``data:`` URL (or bare base64) into bytes and mime type."""
    mime_type = "image/png"
    payload = value
    if value.startswith("data:"):
        header, _, payload = value.partition(",")
        mime_type = header[5:].split(";")[0] or mime_type
    try:
        return base64.b64decode(payload, validate=True), mime_type
    except ValueError as exc:
        raise ImageDecodeError("invalid base64 image payload") from exc
