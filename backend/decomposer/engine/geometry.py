"""Pixel geometry — normalized box to pixel rect, crop/downscale, square padding.

All functions are pure and safe to call from concurrent workers. The padding
helpers come in an inverse pair: ``pad_to_square`` prepares a crop for a
generator that only produces square output, ``unpad`` restores the generator's
answer to the crop's own size.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from PIL import Image

from decomposer.engine.errors import GeometryError
from decomposer.models.element import BOX_SCALE, Box

# Padding added around every detection box before cropping (pixels).
CROP_PADDING = 50

# Longest side of a crop sent to the agent service.
MAX_CROP_DIMENSION = 1024

# Longest side of the full slide sent to detection.
MAX_DETECTION_DIMENSION = 1536

_WHITE = (255, 255, 255, 255)
_RESAMPLE = Image.Resampling.LANCZOS


@dataclass(frozen=True)
class PixelRect:
    """Half-open pixel rectangle [left, right) x [top, bottom)."""

    left: int
    top: int
    right: int
    bottom: int

    @property
    def width(self) -> int:
        return self.right - self.left

    @property
    def height(self) -> int:
        return self.bottom - self.top

    def as_tuple(self) -> tuple[int, int, int, int]:
        return (self.left, self.top, self.right, self.bottom)


@dataclass(frozen=True)
class SquareInsets:
    """Offsets of the original content inside a padded square."""

    left: int
    top: int
    right: int
    bottom: int
    size: int


def crop_region(image_size: tuple[int, int], box: Box, padding: int = CROP_PADDING) -> PixelRect:
    """Map a normalized box to a padded pixel rectangle clamped to the image.

    Raises GeometryError when the clamped rectangle has no area.
    """
    width, height = image_size
    x1 = box.xmin / BOX_SCALE * width - padding
    y1 = box.ymin / BOX_SCALE * height - padding
    x2 = box.xmax / BOX_SCALE * width + padding
    y2 = box.ymax / BOX_SCALE * height + padding

    rect = PixelRect(
        left=max(0, math.floor(x1)),
        top=max(0, math.floor(y1)),
        right=min(width, math.ceil(x2)),
        bottom=min(height, math.ceil(y2)),
    )
    if rect.width <= 0 or rect.height <= 0:
        raise GeometryError(
            f"Degenerate crop {rect.width}x{rect.height} for box {box.as_list()} "
            f"on {width}x{height} image"
        )
    return rect


def crop_and_downscale(
    image: Image.Image, rect: PixelRect, max_dim: int = MAX_CROP_DIMENSION
) -> Image.Image:
    """Extract ``rect`` and shrink it uniformly if either side exceeds ``max_dim``."""
    crop = image.crop(rect.as_tuple())
    return downscale_to_fit(crop, max_dim)


def downscale_to_fit(image: Image.Image, max_dim: int) -> Image.Image:
    w, h = image.size
    if w <= max_dim and h <= max_dim:
        return image
    scale = max_dim / max(w, h)
    new_size = (max(1, round(w * scale)), max(1, round(h * scale)))
    return image.resize(new_size, _RESAMPLE)


def pad_to_square(image: Image.Image) -> tuple[Image.Image, SquareInsets]:
    """Center ``image`` on a white square canvas of side max(w, h)."""
    w, h = image.size
    size = max(w, h)
    left = (size - w) // 2
    top = (size - h) // 2

    rgba = image.convert("RGBA")
    square = Image.new("RGBA", (size, size), _WHITE)
    square.paste(rgba, (left, top), rgba)

    insets = SquareInsets(
        left=left,
        top=top,
        right=size - w - left,
        bottom=size - h - top,
        size=size,
    )
    return square, insets


def unpad(square_output: Image.Image, original_width: int, original_height: int) -> Image.Image:
    """Restore a generator's square output to the original crop size.

    The generator may answer at a different resolution than the padded input,
    so the region holding the original content is computed as a fraction of
    the output size rather than from the input insets. Skipping the rescale
    makes the restored image look zoomed in.
    """
    if original_width <= 0 or original_height <= 0:
        raise GeometryError(f"Cannot unpad to {original_width}x{original_height}")

    out_w, out_h = square_output.size
    longest = max(original_width, original_height)

    src_w = original_width / longest * out_w
    src_h = original_height / longest * out_h
    sx = (out_w - src_w) / 2
    sy = (out_h - src_h) / 2

    return square_output.convert("RGBA").resize(
        (original_width, original_height),
        _RESAMPLE,
        box=(sx, sy, sx + src_w, sy + src_h),
    )
