"""Screenshot post-processing: scaling and format conversion."""

from __future__ import annotations

import io

from PIL import Image

SUPPORTED_FORMATS = ("png", "jpeg")


def process_screenshot(
    raw_png: bytes,
    format: str = "png",
    scale: float = 1.0,
    quality: int = 85,
) -> bytes:
    """Scale a raw PNG screenshot and optionally convert it to JPEG.

    Args:
        raw_png: Raw PNG bytes from simctl screenshot.
        format: Output format, "png" or "jpeg".
        scale: Scale factor (0.1 to 1.0).
        quality: JPEG quality (1 to 100). Ignored for PNG.

    Returns:
        The encoded image bytes. Unscaled PNG input is returned unchanged.
    """
    fmt = format.lower()
    if fmt == "jpg":
        fmt = "jpeg"
    if fmt not in SUPPORTED_FORMATS:
        raise ValueError(f"Unsupported screenshot format: {format}")
    if fmt == "png" and scale == 1.0:
        return raw_png

    img = Image.open(io.BytesIO(raw_png))

    if scale != 1.0:
        new_w = max(1, int(img.width * scale))
        new_h = max(1, int(img.height * scale))
        img = img.resize((new_w, new_h), Image.LANCZOS)

    buf = io.BytesIO()
    if fmt == "jpeg":
        # JPEG doesn't support alpha
        if img.mode in ("RGBA", "LA", "P"):
            img = img.convert("RGB")
        img.save(buf, format="JPEG", quality=quality)
    else:
        img.save(buf, format="PNG")
    return buf.getvalue()


def output_suffix(format: str) -> str:
    return ".jpg" if format.lower() in ("jpeg", "jpg") else ".png"
