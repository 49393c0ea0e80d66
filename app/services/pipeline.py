"""Pipeline executor: runs a transform specification through the operation engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple, Union

from app.core.config import settings
from app.core.logging import get_logger
from app.models.image import ImageBuffer
from app.models.transform import FitMode, TransformSpecification
from app.services import operations

logger = get_logger(__name__)


@dataclass(frozen=True)
class Rotate:
    angle: float


@dataclass(frozen=True)
class Flip:
    pass


@dataclass(frozen=True)
class Mirror:
    pass


@dataclass(frozen=True)
class Crop:
    width: int
    height: int
    x: int = 0
    y: int = 0


@dataclass(frozen=True)
class Resize:
    width: Optional[int]
    height: Optional[int]
    fit: FitMode = FitMode.inside
    allow_enlargement: bool = False


@dataclass(frozen=True)
class Filters:
    grayscale: bool = False
    sepia: bool = False
    blur: Optional[float] = None
    sharpen: bool = False
    brightness: Optional[float] = None
    contrast: Optional[float] = None
    saturation: Optional[float] = None


@dataclass(frozen=True)
class Watermark:
    image: Optional[bytes]
    gravity: str = "southeast"
    opacity: float = 0.5


@dataclass(frozen=True)
class Compress:
    quality: int = 80
    format: Optional[str] = None


@dataclass(frozen=True)
class ConvertFormat:
    format: str
    quality: Optional[int] = None
    progressive: Optional[bool] = None
    compression_level: Optional[int] = None
    lossless: Optional[bool] = None


Operation = Union[Rotate, Flip, Mirror, Crop, Resize, Filters, Watermark, Compress, ConvertFormat]

GEOMETRY = (Rotate, Flip, Mirror, Crop, Resize)
CONTENT = (Filters, Watermark)
ENCODING = (Compress, ConvertFormat)


def plan(spec: TransformSpecification) -> Tuple[Operation, ...]:
    """Translate a specification into operations in fixed precedence.

    rotate, flip, mirror, crop, resize, filters, watermark, compress, format.
    """

    steps: List[Operation] = []
    if spec.rotate is not None:
        steps.append(Rotate(angle=spec.rotate))
    if spec.flip:
        steps.append(Flip())
    if spec.mirror:
        steps.append(Mirror())
    if spec.crop is not None:
        steps.append(Crop(width=spec.crop.width, height=spec.crop.height, x=spec.crop.x, y=spec.crop.y))
    if spec.resize is not None:
        steps.append(
            Resize(
                width=spec.resize.width,
                height=spec.resize.height,
                fit=spec.resize.fit,
                allow_enlargement=spec.resize.allow_enlargement,
            )
        )
    if spec.filters is not None:
        steps.append(Filters(**spec.filters.model_dump()))
    if spec.watermark is not None:
        steps.append(
            Watermark(
                image=spec.watermark.image,
                gravity=spec.watermark.gravity.value,
                opacity=spec.watermark.opacity,
            )
        )
    if spec.compress is not None:
        compress_format = spec.compress.format.value if spec.compress.format else None
        steps.append(Compress(quality=spec.compress.quality, format=compress_format))
    if spec.format is not None:
        options = spec.format_options.model_dump() if spec.format_options else {}
        steps.append(ConvertFormat(format=spec.format.value, **options))
    return tuple(steps)


@dataclass(frozen=True)
class PipelineResult:
    """Final encoded image and its metadata."""

    data: bytes
    width: int
    height: int
    format: str
    color_space: str
    has_alpha: bool

    @property
    def size(self) -> int:
        return len(self.data)


StageCallback = Callable[[str], None]


class PipelineExecutor:
    """Applies operations from one specification, failing on the first error."""

    def __init__(
        self,
        max_dimension: Optional[int] = None,
        default_quality: Optional[int] = None,
        watermark_scale: Optional[float] = None,
    ) -> None:
        self.max_dimension = max_dimension or settings.max_image_dimension
        self.default_quality = default_quality or settings.default_quality
        self.watermark_scale = watermark_scale if watermark_scale is not None else settings.watermark_scale

    def apply(self, buffer: ImageBuffer, operation: Operation) -> ImageBuffer:
        """Dispatch one operation to the engine."""

        if isinstance(operation, Rotate):
            return operations.rotate(buffer, operation.angle)
        if isinstance(operation, Flip):
            return operations.flip(buffer)
        if isinstance(operation, Mirror):
            return operations.mirror(buffer)
        if isinstance(operation, Crop):
            return operations.crop(buffer, operation.width, operation.height, operation.x, operation.y)
        if isinstance(operation, Resize):
            return operations.resize(
                buffer,
                width=operation.width,
                height=operation.height,
                fit=operation.fit,
                allow_enlargement=operation.allow_enlargement,
                max_dimension=self.max_dimension,
            )
        if isinstance(operation, Filters):
            return operations.apply_filters(
                buffer,
                grayscale=operation.grayscale,
                sepia=operation.sepia,
                blur=operation.blur,
                sharpen=operation.sharpen,
                brightness=operation.brightness,
                contrast=operation.contrast,
                saturation=operation.saturation,
            )
        if isinstance(operation, Watermark):
            return operations.watermark(
                buffer,
                operation.image,
                gravity=operation.gravity,
                opacity=operation.opacity,
                scale=self.watermark_scale,
            )
        if isinstance(operation, Compress):
            return operations.compress(buffer, quality=operation.quality, fmt=operation.format)
        if isinstance(operation, ConvertFormat):
            return operations.convert_format(
                buffer,
                operation.format,
                quality=operation.quality,
                progressive=operation.progressive,
                compression_level=operation.compression_level,
                lossless=operation.lossless,
                default_quality=self.default_quality,
            )
        raise TypeError(f"Unknown pipeline operation: {type(operation).__name__}")

    def run(
        self,
        data: bytes,
        spec: TransformSpecification,
        on_stage: StageCallback | None = None,
    ) -> PipelineResult:
        """Decode ``data``, apply ``spec`` and return the encoded result.

        ``on_stage`` is called with ``decoded``, ``geometry``, ``content`` and
        ``encoded`` as each group of stages finishes.
        """

        notify = on_stage or (lambda stage: None)
        steps = plan(spec)

        buffer = operations.decode(data)
        notify("decoded")

        for phase, kinds in (("geometry", GEOMETRY), ("content", CONTENT), ("encoding", ENCODING)):
            for step in steps:
                if isinstance(step, kinds):
                    buffer = self.apply(buffer, step)
                    logger.debug("pipeline_stage_applied", stage=type(step).__name__.lower())
            if phase != "encoding":
                notify(phase)

        encoded = operations.encode(buffer)
        metadata = operations.read_metadata(encoded)
        notify("encoded")

        return PipelineResult(
            data=encoded,
            width=metadata["width"],
            height=metadata["height"],
            format=metadata["format"],
            color_space=metadata["color_space"],
            has_alpha=metadata["has_alpha"],
        )

    def optimize(self, data: bytes, quality: int, fmt: Optional[str] = None) -> PipelineResult:
        """Re-encode ``data`` at ``quality`` without touching geometry."""

        buffer = operations.compress(operations.decode(data), quality=quality, fmt=fmt)
        metadata = operations.read_metadata(buffer.data)
        return PipelineResult(
            data=buffer.data,
            width=metadata["width"],
            height=metadata["height"],
            format=metadata["format"],
            color_space=metadata["color_space"],
            has_alpha=metadata["has_alpha"],
        )
