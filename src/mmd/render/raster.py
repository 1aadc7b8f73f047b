"""Raster post-processing with Pillow.

The engine captures the diagram supersampled (device scale factor > 1).
fit_to_canvas downsamples it with LANCZOS to fit inside the requested box
and centres it on a canvas of exactly that size.
"""

from __future__ import annotations

from io import BytesIO

from PIL import Image, ImageColor

__all__ = ["fit_to_canvas", "parse_background"]

_TRANSPARENT = (0, 0, 0, 0)
_WHITE = (255, 255, 255, 255)


def parse_background(color: str) -> tuple[int, int, int, int]:
    """Convert a CSS colour to RGBA. Unknown colours fall back to white."""
    value = color.strip().lower()
    if value in ("transparent", "none"):
        return _TRANSPARENT
    try:
        rgba = ImageColor.getcolor(value, "RGBA")
    except ValueError:
        return _WHITE
    return rgba  # type: ignore[return-value]


def fit_to_canvas(png: bytes, width: int, height: int, background: str) -> tuple[bytes, int, int]:
    """Downsample a PNG into a width x height canvas.

    Args:
        png: Captured PNG bytes (any size)
        width: Target canvas width
        height: Target canvas height
        background: CSS colour used for the letterbox area

    Returns:
        Tuple of (png_bytes, width, height) of the final image
    """
    with Image.open(BytesIO(png)) as source:
        image = source.convert("RGBA")

    scale = min(width / image.width, height / image.height)
    fitted_size = (max(1, round(image.width * scale)), max(1, round(image.height * scale)))
    if fitted_size != image.size:
        image = image.resize(fitted_size, Image.Resampling.LANCZOS)

    canvas = Image.new("RGBA", (width, height), parse_background(background))
    offset = ((width - image.width) // 2, (height - image.height) // 2)
    canvas.alpha_composite(image, dest=offset)

    out = BytesIO()
    canvas.save(out, format="PNG", optimize=False)
    return out.getvalue(), canvas.width, canvas.height
