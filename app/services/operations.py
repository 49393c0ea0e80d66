"""Image operation engine.

Each operation takes an :class:`ImageBuffer` and returns a new one; the input
is never mutated. Failures raise :class:`OperationError` (or one of its
subclasses) naming the stage that failed. All pixel work is done with Pillow.
"""

from __future__ import annotations

import math
from io import BytesIO
from typing import Any, Callable, Dict, Optional, Tuple

from PIL import Image, ImageEnhance, ImageFilter, ImageOps, UnidentifiedImageError

from app.core.config import settings
from app.core.errors import (
    DimensionExceeded,
    InvalidCropRegion,
    OperationError,
    UnsupportedFormat,
    WatermarkSourceMissing,
)
from app.models.image import ImageBuffer, color_space_for
from app.models.transform import FitMode

SEPIA_TINT = (255, 238, 196)
DEFAULT_PNG_COMPRESSION = 6

# Pillow encoder names for the formats the pipeline can target.
ENCODERS = {
    "jpeg": "JPEG",
    "png": "PNG",
    "webp": "WEBP",
    "avif": "AVIF",
}

_FORMAT_ALIASES = {"jpg": "jpeg", "mpo": "jpeg"}

_RESAMPLE = Image.Resampling.LANCZOS


def _normalize_mode(image: Image.Image) -> Image.Image:
    """Bring any decoded mode into L, LA, RGB or RGBA."""

    if image.mode in ("L", "LA", "RGB", "RGBA"):
        return image
    if image.mode in ("P", "PA"):
        has_transparency = image.mode == "PA" or "transparency" in image.info
        return image.convert("RGBA" if has_transparency else "RGB")
    if image.mode in ("1", "I", "I;16", "F"):
        return image.convert("L")
    return image.convert("RGB")


def _has_alpha(image: Image.Image) -> bool:
    return image.mode in ("RGBA", "LA")


def _background(mode: str) -> Any:
    return {"RGBA": (0, 0, 0, 0), "LA": (0, 0), "RGB": (0, 0, 0)}.get(mode, 0)


def _scaled_size(width: int, height: int, scale: float) -> Tuple[int, int]:
    return max(1, round(width * scale)), max(1, round(height * scale))


def decode(data: bytes) -> ImageBuffer:
    """Decode raw bytes into a working buffer."""

    try:
        image = Image.open(BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise OperationError("decode", f"Unable to decode image: {exc}") from exc

    fmt = (image.format or "png").lower()
    fmt = _FORMAT_ALIASES.get(fmt, fmt)
    return ImageBuffer(image=_normalize_mode(image), format=fmt)


def read_metadata(data: bytes) -> Dict[str, Any]:
    """Return width, height, format, colour space and alpha flag of encoded bytes."""

    try:
        with Image.open(BytesIO(data)) as image:
            fmt = (image.format or "").lower()
            return {
                "width": image.width,
                "height": image.height,
                "format": _FORMAT_ALIASES.get(fmt, fmt),
                "color_space": color_space_for(image.mode),
                "has_alpha": image.mode in ("RGBA", "LA", "PA") or "transparency" in image.info,
            }
    except (UnidentifiedImageError, OSError) as exc:
        raise OperationError("metadata", f"Failed to extract image metadata: {exc}") from exc


def resize(
    buffer: ImageBuffer,
    width: Optional[int] = None,
    height: Optional[int] = None,
    fit: FitMode | str = FitMode.inside,
    allow_enlargement: bool = False,
    max_dimension: Optional[int] = None,
) -> ImageBuffer:
    """Resize within ``max_dimension``; a missing side follows the aspect ratio."""

    limit = max_dimension or settings.max_image_dimension
    if (width and width > limit) or (height and height > limit):
        raise DimensionExceeded(limit)
    if not width and not height:
        return buffer

    fit = FitMode(fit)
    image = buffer.image
    src_w, src_h = image.size

    if not width or not height:
        scale = width / src_w if width else height / src_h
        if not allow_enlargement:
            scale = min(scale, 1.0)
        return buffer.with_image(image.resize(_scaled_size(src_w, src_h, scale), _RESAMPLE))

    if fit is FitMode.fill:
        target = (width, height) if allow_enlargement else (min(width, src_w), min(height, src_h))
        return buffer.with_image(image.resize(target, _RESAMPLE))

    scale_x, scale_y = width / src_w, height / src_h
    if fit in (FitMode.cover, FitMode.outside):
        scale = max(scale_x, scale_y)
    else:
        scale = min(scale_x, scale_y)
    if not allow_enlargement:
        scale = min(scale, 1.0)
    scaled = image.resize(_scaled_size(src_w, src_h, scale), _RESAMPLE)

    if fit is FitMode.cover:
        crop_w, crop_h = min(width, scaled.width), min(height, scaled.height)
        left = (scaled.width - crop_w) // 2
        top = (scaled.height - crop_h) // 2
        scaled = scaled.crop((left, top, left + crop_w, top + crop_h))
    elif fit is FitMode.contain:
        canvas = Image.new(scaled.mode, (width, height), _background(scaled.mode))
        canvas.paste(scaled, ((width - scaled.width) // 2, (height - scaled.height) // 2))
        scaled = canvas

    return buffer.with_image(scaled)


def crop(buffer: ImageBuffer, width: Optional[int], height: Optional[int], x: int = 0, y: int = 0) -> ImageBuffer:
    if not width or not height:
        raise InvalidCropRegion("Width and height are required for cropping")
    if x < 0 or y < 0 or x + width > buffer.width or y + height > buffer.height:
        raise InvalidCropRegion(
            f"Region {width}x{height} at ({x}, {y}) exceeds image bounds {buffer.width}x{buffer.height}"
        )
    return buffer.with_image(buffer.image.crop((x, y, x + width, y + height)))


# Clockwise quarter turns map onto lossless transpositions.
_QUARTER_TURNS = {
    90: Image.Transpose.ROTATE_270,
    180: Image.Transpose.ROTATE_180,
    270: Image.Transpose.ROTATE_90,
}


def rotate(buffer: ImageBuffer, angle: float) -> ImageBuffer:
    """Rotate clockwise by ``angle`` degrees, expanding the canvas."""

    normalized = angle % 360
    if normalized == 0:
        return buffer
    image = buffer.image
    if normalized in _QUARTER_TURNS:
        return buffer.with_image(image.transpose(_QUARTER_TURNS[int(normalized)]))
    rotated = image.rotate(
        -angle,
        resample=Image.Resampling.BICUBIC,
        expand=True,
        fillcolor=_background(image.mode),
    )
    return buffer.with_image(rotated)


def flip(buffer: ImageBuffer) -> ImageBuffer:
    """Reflect top to bottom."""

    return buffer.with_image(buffer.image.transpose(Image.Transpose.FLIP_TOP_BOTTOM))


def mirror(buffer: ImageBuffer) -> ImageBuffer:
    """Reflect left to right."""

    return buffer.with_image(buffer.image.transpose(Image.Transpose.FLIP_LEFT_RIGHT))


def _on_colour(image: Image.Image, operation: Callable[[Image.Image], Image.Image]) -> Image.Image:
    """Apply ``operation`` to the colour bands only, keeping alpha untouched."""

    if not _has_alpha(image):
        return operation(image)
    alpha = image.getchannel("A")
    result = operation(image.convert("RGB" if image.mode == "RGBA" else "L"))
    result.putalpha(alpha)
    return result


def _grayscale(image: Image.Image) -> Image.Image:
    return image.convert("LA" if _has_alpha(image) else "L")


def _sepia(image: Image.Image) -> Image.Image:
    toned = ImageOps.colorize(image.convert("L"), black=(0, 0, 0), white=SEPIA_TINT)
    if _has_alpha(image):
        toned.putalpha(image.getchannel("A"))
    return toned


def _linear(image: Image.Image, factor: float) -> Image.Image:
    intercept = 128 * (1 - factor)
    table = [max(0, min(255, round(factor * value + intercept))) for value in range(256)]
    return image.point(table * len(image.getbands()))


def apply_filters(
    buffer: ImageBuffer,
    grayscale: bool = False,
    sepia: bool = False,
    blur: Optional[float] = None,
    sharpen: bool = False,
    brightness: Optional[float] = None,
    contrast: Optional[float] = None,
    saturation: Optional[float] = None,
) -> ImageBuffer:
    """Apply filters in the fixed order grayscale, sepia, blur, sharpen,
    brightness, contrast, saturation."""

    image = buffer.image
    if grayscale:
        image = _grayscale(image)
    if sepia:
        image = _sepia(image)
    if blur is not None:
        image = image.filter(ImageFilter.GaussianBlur(radius=blur))
    if sharpen:
        image = _on_colour(image, lambda im: im.filter(ImageFilter.UnsharpMask(radius=2, percent=150, threshold=3)))
    if brightness is not None:
        image = _on_colour(image, lambda im: ImageEnhance.Brightness(im).enhance(brightness))
    if contrast is not None:
        image = _on_colour(image, lambda im: _linear(im, contrast))
    if saturation is not None:
        image = _on_colour(image, lambda im: ImageEnhance.Color(im).enhance(saturation))
    return buffer.with_image(image)


def _anchor(gravity: str, base: Tuple[int, int], overlay: Tuple[int, int]) -> Tuple[int, int]:
    base_w, base_h = base
    width, height = overlay
    if gravity in ("west", "northwest", "southwest"):
        x = 0
    elif gravity in ("east", "northeast", "southeast"):
        x = base_w - width
    else:
        x = (base_w - width) // 2
    if gravity in ("north", "northwest", "northeast"):
        y = 0
    elif gravity in ("south", "southwest", "southeast"):
        y = base_h - height
    else:
        y = (base_h - height) // 2
    return x, y


def watermark(
    buffer: ImageBuffer,
    overlay: Optional[bytes],
    gravity: str = "southeast",
    opacity: float = 0.5,
    scale: Optional[float] = None,
) -> ImageBuffer:
    """Composite ``overlay`` scaled to a fraction of the base width."""

    if not overlay:
        raise WatermarkSourceMissing()
    try:
        mark = Image.open(BytesIO(overlay))
        mark.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise OperationError("watermark", f"Invalid watermark image: {exc}") from exc

    fraction = scale if scale is not None else settings.watermark_scale
    mark = mark.convert("RGBA")
    target_w = max(1, math.floor(buffer.width * fraction))
    target_h = max(1, round(mark.height * target_w / mark.width))
    mark = mark.resize((target_w, target_h), _RESAMPLE)
    mark.putalpha(mark.getchannel("A").point(lambda value: round(value * opacity)))

    base = buffer.image.convert("RGBA")
    layer = Image.new("RGBA", base.size, (0, 0, 0, 0))
    layer.paste(mark, _anchor(gravity, base.size, mark.size))
    composed = Image.alpha_composite(base, layer)
    if not buffer.has_alpha:
        composed = composed.convert("RGB")
    return buffer.with_image(composed)


def _flatten(image: Image.Image) -> Image.Image:
    """Drop alpha onto a black background for encoders without transparency."""

    if not _has_alpha(image):
        return image
    target_mode = "RGB" if image.mode == "RGBA" else "L"
    background = Image.new(target_mode, image.size, _background(target_mode))
    background.paste(image.convert(target_mode), mask=image.getchannel("A"))
    return background


def _avif_available() -> bool:
    Image.init()
    return "AVIF" in Image.SAVE


def _encoder_options(
    fmt: str,
    stage: str,
    default_quality: int,
    quality: Optional[int] = None,
    progressive: Optional[bool] = None,
    compression_level: Optional[int] = None,
    lossless: Optional[bool] = None,
) -> Dict[str, Any]:
    supplied = {
        "quality": quality,
        "progressive": progressive,
        "compression_level": compression_level,
        "lossless": lossless,
    }
    accepted = {
        "jpeg": ("quality", "progressive"),
        "png": ("compression_level",),
        "webp": ("quality", "lossless"),
        "avif": ("quality",),
    }[fmt]
    rejected = [name for name, value in supplied.items() if value is not None and name not in accepted]
    if rejected:
        raise OperationError(stage, f"Options {', '.join(rejected)} are not supported for {fmt}")

    if fmt == "jpeg":
        return {"quality": quality or default_quality, "progressive": bool(progressive)}
    if fmt == "png":
        level = DEFAULT_PNG_COMPRESSION if compression_level is None else compression_level
        return {"compress_level": level}
    if fmt == "webp":
        return {"quality": quality or default_quality, "lossless": bool(lossless), "method": 4}
    return {"quality": quality or default_quality}


def _encode(buffer: ImageBuffer, fmt: str, stage: str, **options: Any) -> ImageBuffer:
    fmt = _FORMAT_ALIASES.get(fmt.lower(), fmt.lower())
    if fmt not in ENCODERS or (fmt == "avif" and not _avif_available()):
        raise UnsupportedFormat(stage, fmt)

    default_quality = options.pop("default_quality", None) or settings.default_quality
    save_options = _encoder_options(fmt, stage, default_quality=default_quality, **options)
    image = _flatten(buffer.image) if fmt == "jpeg" else buffer.image

    output = BytesIO()
    try:
        image.save(output, format=ENCODERS[fmt], **save_options)
    except (OSError, ValueError, KeyError) as exc:
        raise OperationError(stage, f"Failed to encode {fmt}: {exc}") from exc
    data = output.getvalue()

    reopened = Image.open(BytesIO(data))
    reopened.load()
    return ImageBuffer(image=_normalize_mode(reopened), format=fmt, data=data)


def convert_format(
    buffer: ImageBuffer,
    fmt: str,
    quality: Optional[int] = None,
    progressive: Optional[bool] = None,
    compression_level: Optional[int] = None,
    lossless: Optional[bool] = None,
    default_quality: Optional[int] = None,
) -> ImageBuffer:
    """Encode into ``fmt`` with format-specific options."""

    return _encode(
        buffer,
        fmt,
        "format",
        quality=quality,
        progressive=progressive,
        compression_level=compression_level,
        lossless=lossless,
        default_quality=default_quality,
    )


def compress(buffer: ImageBuffer, quality: Optional[int] = None, fmt: Optional[str] = None) -> ImageBuffer:
    """Re-encode at ``quality`` in ``fmt`` or the buffer's current format.

    PNG is lossless, so quality does not apply and maximum zlib effort is used instead.
    """

    target = _FORMAT_ALIASES.get((fmt or buffer.format).lower(), (fmt or buffer.format).lower())
    if target == "png":
        return _encode(buffer, target, "compress", compression_level=9)
    return _encode(buffer, target, "compress", quality=quality or settings.default_quality)


def encode(buffer: ImageBuffer) -> bytes:
    """Return final bytes, encoding in the current format if no encoding stage ran."""

    if buffer.data is not None:
        return buffer.data
    if buffer.format in ENCODERS:
        return _encode(buffer, buffer.format, "encode").data

    # Source formats outside the conversion targets (gif, tiff, bmp) pass through Pillow as-is.
    output = BytesIO()
    try:
        buffer.image.save(output, format=buffer.format.upper())
    except (OSError, ValueError, KeyError) as exc:
        raise UnsupportedFormat("encode", buffer.format) from exc
    return output.getvalue()
