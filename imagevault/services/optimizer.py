"""Upload optimization.

Every upload is re-encoded before it is charged against any quota: oriented
from EXIF, bounded to the configured box and written in a web-friendly
encoding. The size that comes out of here is the size both usage ledgers see.
"""

from __future__ import annotations

from dataclasses import dataclass
import io
import logging
from typing import Any

from PIL import Image, ImageOps, UnidentifiedImageError

from imagevault.core.config import get_settings
from imagevault.core.errors import OptimizationError


logger = logging.getLogger(__name__)

# EXIF tag that Pillow consumes when auto-rotating.
_EXIF_ORIENTATION = 0x0112
# zlib effort for PNG output.
PNG_COMPRESS_LEVEL = 9

_MIME_BY_FORMAT = {
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "gif": "image/gif",
}
_ALPHA_MODES = frozenset({"RGBA", "LA", "PA", "RGBa", "La"})


@dataclass(frozen=True)
class OptimizedImage:
    data: bytes
    width: int
    height: int
    format: str
    mime_type: str
    has_alpha: bool
    is_progressive: bool
    original_size: int
    optimized_size: int
    compression_ratio: float


def _has_alpha(image: Image.Image) -> bool:
    if image.mode in _ALPHA_MODES:
        return True
    return image.mode == "P" and "transparency" in image.info


def _is_animated(image: Image.Image) -> bool:
    return bool(getattr(image, "is_animated", False)) and getattr(image, "n_frames", 1) > 1


def _decode(raw: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(raw))
        # Force a full decode so truncated payloads fail here and not mid-encode.
        image.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
        raise OptimizationError(f"Failed to optimize image: {exc}") from exc
    return image


def _metadata_kwargs(source: Image.Image) -> dict[str, Any]:
    # Carry EXIF (minus orientation, already applied) and the ICC profile into the output.
    kwargs: dict[str, Any] = {}
    icc_profile = source.info.get("icc_profile")
    if icc_profile:
        kwargs["icc_profile"] = icc_profile
    cached = source.getexif()
    if cached:
        # getexif() returns the object cached on the source; edit a copy.
        exif = Image.Exif()
        exif.load(cached.tobytes())
        exif.pop(_EXIF_ORIENTATION, None)
        if len(exif):
            kwargs["exif"] = exif.tobytes()
    return kwargs


def _flatten_rgb(image: Image.Image) -> Image.Image:
    if image.mode in ("RGB", "L", "CMYK"):
        return image
    if image.mode == "P":
        image = image.convert("RGBA")
    if image.mode in _ALPHA_MODES:
        background = Image.new("RGB", image.size, (255, 255, 255))
        background.paste(image.convert("RGBA"), mask=image.convert("RGBA").split()[-1])
        return background
    return image.convert("RGB")


def _webp_ready(image: Image.Image) -> Image.Image:
    if image.mode in ("RGB", "RGBA"):
        return image
    if _has_alpha(image):
        return image.convert("RGBA")
    return image.convert("RGB")


def _encode(image: Image.Image, source_format: str, quality: int, metadata: dict[str, Any]) -> tuple[bytes, str, bool]:
    buffer = io.BytesIO()
    if source_format in ("JPEG", "MPO"):
        output_format = "jpeg"
        image = _flatten_rgb(image)
        image.save(buffer, format="JPEG", quality=quality, optimize=True, progressive=True, **metadata)
        progressive = True
    elif source_format == "PNG":
        output_format = "png"
        image.save(buffer, format="PNG", optimize=True, compress_level=PNG_COMPRESS_LEVEL, **metadata)
        progressive = False
    elif source_format in ("WEBP", "GIF"):
        # Static GIFs are re-encoded as WebP.
        output_format = "webp"
        image = _webp_ready(image)
        image.save(buffer, format="WEBP", quality=quality, **metadata)
        progressive = False
    else:
        output_format = "jpeg"
        image = _flatten_rgb(image)
        image.save(buffer, format="JPEG", quality=quality, optimize=True, progressive=True, **metadata)
        progressive = True
    return buffer.getvalue(), output_format, progressive


def optimize_image(
    raw: bytes,
    *,
    max_width: int | None = None,
    max_height: int | None = None,
    quality: int | None = None,
) -> OptimizedImage:
    settings = get_settings()
    max_width = max_width or settings.image_max_width
    max_height = max_height or settings.image_max_height
    quality = quality or settings.image_quality
    # Work on an immutable copy; the caller's buffer is never touched.
    payload = bytes(raw)
    original_size = len(payload)
    if original_size == 0:
        raise OptimizationError("Failed to optimize image: empty upload")

    source = _decode(payload)
    source_format = (source.format or "").upper()

    if source_format == "GIF" and _is_animated(source):
        # Animated GIFs pass through untouched.
        width, height = source.size
        return OptimizedImage(
            data=payload,
            width=width,
            height=height,
            format="gif",
            mime_type=_MIME_BY_FORMAT["gif"],
            has_alpha=_has_alpha(source),
            is_progressive=False,
            original_size=original_size,
            optimized_size=original_size,
            compression_ratio=1.0,
        )

    try:
        image = ImageOps.exif_transpose(source)
        metadata = _metadata_kwargs(source)
        if image.width > max_width or image.height > max_height:
            # thumbnail keeps aspect ratio and never enlarges.
            image.thumbnail((max_width, max_height), Image.Resampling.LANCZOS)
        data, output_format, progressive = _encode(image, source_format, quality, metadata)
        has_alpha = output_format != "jpeg" and _has_alpha(image)
        width, height = image.size
    except (OSError, ValueError) as exc:
        raise OptimizationError(f"Failed to optimize image: {exc}") from exc

    optimized_size = len(data)
    compression_ratio = original_size / optimized_size if optimized_size else 1.0
    logger.debug(
        "image_optimized source_format=%s output_format=%s size=%s->%s dims=%sx%s",
        source_format or "unknown",
        output_format,
        original_size,
        optimized_size,
        width,
        height,
    )
    return OptimizedImage(
        data=data,
        width=width,
        height=height,
        format=output_format,
        mime_type=_MIME_BY_FORMAT[output_format],
        has_alpha=has_alpha,
        is_progressive=progressive,
        original_size=original_size,
        optimized_size=optimized_size,
        compression_ratio=compression_ratio,
    )
