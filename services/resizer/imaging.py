"""Image resizing (Pillow).

`resize_to_width` scales an image to a fixed width, keeping the aspect ratio,
and re-encodes it as PNG. Pillow is CPU-bound and synchronous, so callers run
it through `asyncio.to_thread`.
"""

from __future__ import annotations

import io

from PIL import Image, UnidentifiedImageError

from core.errors import PoisonMessageError


def resize_to_width(data: bytes, width: int = 500) -> bytes:
    """Resize encoded image bytes to `width` pixels wide.

    Args:
        data: Source image in any format Pillow can decode.
        width: Target width; height follows the source aspect ratio (at least 1 px).

    Returns:
        PNG-encoded bytes.

    Raises:
        PoisonMessageError: the bytes are not a decodable image.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            height = max(1, round(img.height * width / img.width))
            resized = img.resize((width, height), Image.Resampling.LANCZOS)
    except (UnidentifiedImageError, OSError) as e:
        raise PoisonMessageError(f"cannot decode image: {e}") from e
    if resized.mode not in ("1", "L", "LA", "P", "RGB", "RGBA"):
        resized = resized.convert("RGBA")  # CMYK/YCbCr have no PNG encoding
    out = io.BytesIO()
    resized.save(out, format="PNG")
    return out.getvalue()
