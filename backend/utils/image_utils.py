"""Bounding boxes on the 0-1000 scale, image loading and cropping."""

from __future__ import annotations

import base64
import io
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Tuple

import requests
from PIL import Image as PILImage, ImageOps, UnidentifiedImageError

logger = logging.getLogger(__name__)

BOX_SCALE = 1000


@dataclass(frozen=True)
class BoundingBox:
    """Normalized box, coordinates in ``[0, 1000]`` independent of aspect ratio."""

    y0: int
    x0: int
    y1: int
    x1: int

    @classmethod
    def from_box_2d(cls, values: Iterable[Any]) -> "BoundingBox":
        """Build from the detector's ``[y0, x0, y1, x1]`` list."""
        items = [int(round(float(v))) for v in values]
        if len(items) != 4:
            raise ValueError(f"box_2d must have 4 coordinates, got {len(items)}")
        return cls(*items)

    @classmethod
    def from_detection(cls, detection) -> "BoundingBox":
        return cls(detection.y0, detection.x0, detection.y1, detection.x1)

    def validate(self) -> None:
        coords = (self.y0, self.x0, self.y1, self.x1)
        if any(c < 0 or c > BOX_SCALE for c in coords):
            raise ValueError(f"Bounding box outside 0-{BOX_SCALE}: {coords}")
        if self.y1 <= self.y0 or self.x1 <= self.x0:
            raise ValueError(f"Bounding box has no area: {coords}")

    @property
    def is_valid(self) -> bool:
        try:
            self.validate()
        except ValueError:
            return False
        return True

    def to_pixels(self, width: int, height: int) -> Tuple[int, int, int, int]:
        """Return ``(left, top, right, bottom)`` pixel coordinates."""
        left = round(self.x0 / BOX_SCALE * width)
        top = round(self.y0 / BOX_SCALE * height)
        right = round(self.x1 / BOX_SCALE * width)
        bottom = round(self.y1 / BOX_SCALE * height)
        return left, top, right, bottom

    def as_list(self):
        return [self.y0, self.x0, self.y1, self.x1]


def crop_to_box(image_data: bytes, box: BoundingBox, quality: int = 95) -> bytes:
    """Crop ``image_data`` to ``box`` and return JPEG bytes.

    Raises ``ValueError`` for an empty or undecodable image, or a box that
    does not cover at least one pixel.
    """
    if not image_data:
        raise ValueError("Empty image data")
    box.validate()

    try:
        image = PILImage.open(io.BytesIO(image_data))
        image = ImageOps.exif_transpose(image)
    except (UnidentifiedImageError, OSError) as exc:
        raise ValueError(f"Cannot decode image: {exc}") from exc
    if image.mode != "RGB":
        image = image.convert("RGB")

    left, top, right, bottom = box.to_pixels(image.width, image.height)
    if right <= left or bottom <= top:
        raise ValueError(f"Bounding box {box.as_list()} is smaller than one pixel")

    cropped = image.crop((left, top, right, bottom))
    logger.debug(
        "Cropped %dx%d image to %dx%d",
        image.width, image.height, cropped.width, cropped.height,
    )
    buffer = io.BytesIO()
    cropped.save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()


def load_image_bytes(image, timeout: Optional[float] = 20.0) -> bytes:
    """Read the bytes of an Image row from local storage or an http(s) URL."""
    location = image.file_path or ""
    if location.startswith(("http://", "https://")):
        response = requests.get(location, timeout=timeout)
        response.raise_for_status()
        return response.content
    with open(location, "rb") as fh:
        return fh.read()


def to_base64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def guess_media_type(data: bytes) -> str:
    """Best-effort media type for an image payload sent to the LLM."""
    if data.startswith(b"\x89PNG"):
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data.startswith(b"GIF8"):
        return "image/gif"
    return "image/jpeg"
