"""White-backdrop removal for generated element images.

The cleaner stage is told to isolate its subject on pure white. Two modes turn
that backdrop transparent:

- ``all``: every near-white pixel loses its alpha. Used when the element has no
  white interior that could be mistaken for backdrop.
- ``flood``: only near-white pixels reachable from the image border through
  4-connected near-white pixels lose their alpha. Enclosed white fills (a
  white card, the inside of a ring) keep it.

The flood fill is done with connected-component labeling rather than a pixel
queue: a near-white component is cleared iff it touches the border, which is
exactly the set a border-seeded breadth-first fill would visit.
"""

from __future__ import annotations

from typing import Literal

import numpy as np
from numpy.typing import NDArray
from PIL import Image
from scipy.ndimage import label

DEFAULT_TOLERANCE = 8

TransparencyMode = Literal["flood", "all"]

# 4-connectivity: edge neighbours only, no diagonals.
_FOUR_CONNECTED = np.array(
    [[0, 1, 0],
     [1, 1, 1],
     [0, 1, 0]],
    dtype=bool,
)


def background_mask(rgba: NDArray[np.uint8], tolerance: int = DEFAULT_TOLERANCE) -> NDArray[np.bool_]:
    """Pixels whose R, G and B all exceed 255 - tolerance and that are not already transparent."""
    floor = 255 - tolerance
    rgb = rgba[..., :3]
    return np.all(rgb > floor, axis=-1) & (rgba[..., 3] > 0)


def border_connected(mask: NDArray[np.bool_]) -> NDArray[np.bool_]:
    """Subset of ``mask`` 4-connected to any border pixel of ``mask``."""
    if mask.size == 0:
        return mask.copy()

    labels, n = label(mask, structure=_FOUR_CONNECTED)
    if n == 0:
        return np.zeros_like(mask)

    edge_labels = np.concatenate([labels[0, :], labels[-1, :], labels[:, 0], labels[:, -1]])
    seeds = np.unique(edge_labels[edge_labels > 0])
    return np.isin(labels, seeds)


def remove_background(
    image: Image.Image,
    mode: TransparencyMode = "flood",
    tolerance: int = DEFAULT_TOLERANCE,
) -> Image.Image:
    """Return a copy of ``image`` with its white backdrop made transparent."""
    if mode not in ("flood", "all"):
        raise ValueError(f"Unknown transparency mode: {mode!r}")

    rgba = np.array(image.convert("RGBA"), dtype=np.uint8)
    mask = background_mask(rgba, tolerance)
    if mode == "flood":
        mask = border_connected(mask)

    rgba[..., 3][mask] = 0
    return Image.fromarray(rgba)


def mode_for(is_white_interior: bool) -> TransparencyMode:
    """Protect enclosed white only when the element is known to contain some."""
    return "flood" if is_white_interior else "all"
