# backend/fingerprint.py
"""
Content addressing for generation requests.

Two requests that would send identical inputs to a provider get the same
fingerprint, whoever submitted them and whenever. Request id, priority,
cost ceiling, composition hints and timestamps are deliberately left out.
"""

import base64
import binascii
import hashlib
import io
import json
from typing import Any, List

from PIL import Image, UnidentifiedImageError

from .errors import InvalidInput
from .model import GenerationRequest, SketchData


def stable_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


MAX_SKETCH_PIXELS = 4096 * 4096
MAX_SKETCH_BYTES = 20 * 1024 * 1024


def _open_image(
    data: bytes, max_pixels: int = MAX_SKETCH_PIXELS, max_bytes: int = MAX_SKETCH_BYTES
) -> Image.Image:
    if not data:
        raise InvalidInput("Sketch image is empty")
    if len(data) > max_bytes:
        raise InvalidInput(
            f"Sketch is {len(data)} bytes, the limit is {max_bytes}",
            suggested_fix="Export the sketch at a smaller size",
        )
    try:
        img = Image.open(io.BytesIO(data))
        # header only so far; refuse huge canvases before decoding pixels
        if img.width * img.height > max_pixels:
            raise InvalidInput(
                f"Sketch is {img.width}x{img.height}, the limit is {max_pixels} pixels",
                suggested_fix="Export the sketch at a smaller size",
            )
        img.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise InvalidInput(f"Sketch image cannot be decoded: {e}") from e
    return img


def sketch_digest(data: bytes) -> str:
    """
    Hash of the decoded pixels, so the same drawing saved as PNG or WebP
    addresses the same cache entry.
    """
    img = _open_image(data).convert("RGBA")
    h = hashlib.sha256()
    h.update(f"{img.width}x{img.height}:".encode("ascii"))
    h.update(img.tobytes())
    return h.hexdigest()


def fingerprint(request: GenerationRequest) -> str:
    params = request.params
    style = request.style_preset
    payload = {
        "sketch": sketch_digest(request.sketch.image),
        "prompt": " ".join(request.prompt.split()),
        "negative_prompt": request.negative_prompt or "",
        "style_preset": style.id if style else "",
        "params": {
            "strength": round(params.strength, 2),
            "steps": params.steps,
            "guidance": round(params.guidance, 1),
            "seed": params.seed,
            "width": request.target_width,
            "height": request.target_height,
        },
        "provider": request.provider or "",
    }
    return sha256_text(stable_json(payload))


def _palette(img: Image.Image, max_colors: int) -> List[str]:
    small = img.convert("RGB")
    small.thumbnail((64, 64))
    colors = small.getcolors(maxcolors=64 * 64) or []
    colors.sort(key=lambda c: c[0], reverse=True)
    return ["#{:02x}{:02x}{:02x}".format(*rgb) for _, rgb in colors[:max_colors]]


def describe_sketch(
    data: bytes,
    max_colors: int = 8,
    max_pixels: int = MAX_SKETCH_PIXELS,
    max_bytes: int = MAX_SKETCH_BYTES,
) -> SketchData:
    """Read dimensions and the dominant palette of an uploaded sketch."""
    img = _open_image(data, max_pixels, max_bytes)
    return SketchData(
        image=data,
        width=img.width,
        height=img.height,
        color_palette=_palette(img, max_colors),
    )


def decode_sketch(encoded: str) -> bytes:
    """Decode a base64 sketch, accepting data URLs as sent by canvas clients."""
    if encoded.startswith("data:") and "," in encoded:
        encoded = encoded.split(",", 1)[1]
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidInput(f"Sketch is not valid base64: {e}") from e
