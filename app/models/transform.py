"""Transform specification: the validated, immutable description of requested work."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import (
    AliasChoices,
    Base64Bytes,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from app.core.errors import TransformValidationError

MAX_RESIZE_DIMENSION = 4000

# Fixed precedence used by the pipeline and by the transformation history.
OPERATION_ORDER: Tuple[str, ...] = (
    "rotate",
    "flip",
    "mirror",
    "crop",
    "resize",
    "filters",
    "watermark",
    "compress",
    "format",
)


class FitMode(str, Enum):
    """How a resize fits the source into the requested box."""

    cover = "cover"
    contain = "contain"
    fill = "fill"
    inside = "inside"
    outside = "outside"


class OutputFormat(str, Enum):
    """Encodings the pipeline can produce."""

    jpeg = "jpeg"
    png = "png"
    webp = "webp"
    avif = "avif"

    @classmethod
    def normalize(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower()
            if value == "jpg":
                return cls.jpeg.value
        return value


class Gravity(str, Enum):
    """Anchor positions for watermark placement."""

    north = "north"
    northeast = "northeast"
    east = "east"
    southeast = "southeast"
    south = "south"
    southwest = "southwest"
    west = "west"
    northwest = "northwest"
    center = "center"


class _Options(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)


class ResizeOptions(_Options):
    width: Optional[int] = Field(default=None, ge=1, le=MAX_RESIZE_DIMENSION)
    height: Optional[int] = Field(default=None, ge=1, le=MAX_RESIZE_DIMENSION)
    fit: FitMode = Field(
        default=FitMode.inside,
        validation_alias=AliasChoices("fit", "fitMode", "fit_mode"),
    )
    allow_enlargement: bool = Field(
        default=False,
        validation_alias=AliasChoices("allow_enlargement", "allowEnlargement"),
    )


class CropOptions(_Options):
    width: int = Field(ge=1)
    height: int = Field(ge=1)
    x: int = Field(default=0, ge=0)
    y: int = Field(default=0, ge=0)


class FilterOptions(_Options):
    """Colour and detail filters. Adjustments are neutral at 1.0."""

    grayscale: bool = False
    sepia: bool = False
    blur: Optional[float] = Field(default=None, ge=0.3, le=1000)
    sharpen: bool = False
    brightness: Optional[float] = Field(default=None, ge=0.1, le=3)
    contrast: Optional[float] = Field(default=None, ge=0.1, le=3)
    saturation: Optional[float] = Field(default=None, ge=0, le=3)


class FormatOptions(_Options):
    quality: Optional[int] = Field(default=None, ge=1, le=100)
    progressive: Optional[bool] = None
    compression_level: Optional[int] = Field(
        default=None,
        ge=0,
        le=9,
        validation_alias=AliasChoices("compression_level", "compressionLevel"),
    )
    lossless: Optional[bool] = None


class CompressOptions(_Options):
    quality: int = Field(default=80, ge=1, le=100)
    format: Optional[OutputFormat] = None

    @field_validator("format", mode="before")
    @classmethod
    def normalize_format(cls, value: Any) -> Any:
        return OutputFormat.normalize(value)


class WatermarkOptions(_Options):
    image: Optional[Base64Bytes] = Field(default=None, description="Base64 encoded overlay image.")
    gravity: Gravity = Gravity.southeast
    opacity: float = Field(default=0.5, ge=0, le=1)


# Options that only make sense for particular encoders.
_FORMAT_OPTION_SUPPORT: Dict[str, Tuple[OutputFormat, ...]] = {
    "quality": (OutputFormat.jpeg, OutputFormat.webp, OutputFormat.avif),
    "progressive": (OutputFormat.jpeg,),
    "compression_level": (OutputFormat.png,),
    "lossless": (OutputFormat.webp,),
}


class TransformSpecification(_Options):
    """Ordered-by-precedence set of operations to apply to one image."""

    resize: Optional[ResizeOptions] = None
    crop: Optional[CropOptions] = None
    rotate: Optional[float] = Field(default=None, ge=-360, le=360)
    flip: Optional[bool] = None
    mirror: Optional[bool] = None
    filters: Optional[FilterOptions] = None
    format: Optional[OutputFormat] = None
    format_options: Optional[FormatOptions] = Field(
        default=None,
        validation_alias=AliasChoices("format_options", "formatOptions"),
    )
    compress: Optional[CompressOptions] = None
    watermark: Optional[WatermarkOptions] = None

    @field_validator("format", mode="before")
    @classmethod
    def normalize_format(cls, value: Any) -> Any:
        return OutputFormat.normalize(value)

    @model_validator(mode="after")
    def check_consistency(self) -> "TransformSpecification":
        """Reject empty specifications and encoder options the target format ignores."""

        if not self.requested_operations():
            raise ValueError("At least one transformation must be requested.")

        if self.format_options is not None:
            if self.format is None:
                raise ValueError("'formatOptions' requires 'format'.")
            for option, formats in _FORMAT_OPTION_SUPPORT.items():
                if getattr(self.format_options, option) is not None and self.format not in formats:
                    raise ValueError(f"'{option}' is not supported for {self.format.value} output.")
        return self

    @classmethod
    def parse(cls, data: Mapping[str, Any] | "TransformSpecification") -> "TransformSpecification":
        """Validate raw input, raising TransformValidationError on any problem."""

        if isinstance(data, cls):
            return data
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            errors = [
                {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
                for error in exc.errors()
            ]
            raise TransformValidationError("Invalid transformation specification", errors) from exc

    def requested_operations(self) -> List[str]:
        """Names of the operations that will run, in pipeline precedence."""

        requested = []
        for name in OPERATION_ORDER:
            value = getattr(self, name)
            if value is None or value is False:
                continue
            requested.append(name)
        return requested

    def history_entries(self) -> List[Tuple[str, Any]]:
        """Return (type, parameters) pairs recorded on the derived image."""

        entries: List[Tuple[str, Any]] = []
        for name in self.requested_operations():
            value = getattr(self, name)
            if name == "filters":
                entries.append(("filter", value.model_dump(mode="json", exclude_defaults=True)))
            elif name == "watermark":
                entries.append(("watermark", value.model_dump(mode="json", exclude={"image"})))
            elif name == "format":
                parameters: Dict[str, Any] = {"format": value.value}
                if self.format_options is not None:
                    parameters.update(self.format_options.model_dump(mode="json", exclude_none=True))
                entries.append(("format", parameters))
            elif isinstance(value, BaseModel):
                entries.append((name, value.model_dump(mode="json", exclude_none=True)))
            else:
                entries.append((name, value))
        return entries
