"""Image encoding helpers — PIL images to PNG bytes / base64 and back."""

from __future__ import annotations

import base64
import binascii
import io
import re

from PIL import Image

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w/+.-]+);base64,(?P<data>.*)$", re.DOTALL)


def to_png_bytes(image: Image.Image) -> bytes:
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


def from_bytes(data: bytes) -> Image.Image:
    """Decode image bytes into a fully loaded RGBA image."""
    img = Image.open(io.BytesIO(data))
    img.load()
    return img.convert("RGBA")


def to_base64(image: Image.Image) -> str:
    return base64.b64encode(to_png_bytes(image)).decode("ascii")


def decode_base64(payload: str) -> bytes:
    """Accept raw base64 or a ``data:<mime>;base64,`` URL."""
    match = _DATA_URL_RE.match(payload.strip())
    data = match.group("data") if match else payload
    try:
        return base64.b64decode(data, validate=False)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64 image payload: {e}") from e
