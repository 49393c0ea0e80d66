"""Tests for transform specification validation."""

import base64

import pytest

from app.core.errors import TransformValidationError
from app.models.transform import FitMode, Gravity, OutputFormat, TransformSpecification


def _fields(exc_info):
    return [error["field"] for error in exc_info.value.errors]


def test_empty_specification_rejected():
    """Test that a specification requesting nothing is refused."""
    with pytest.raises(TransformValidationError):
        TransformSpecification.parse({})


def test_false_flags_do_not_count_as_operations():
    """Test that flip/mirror set to false leave nothing to do."""
    with pytest.raises(TransformValidationError):
        TransformSpecification.parse({"flip": False, "mirror": False})


def test_crop_without_height_rejected():
    """Test that crop requires both width and height."""
    with pytest.raises(TransformValidationError) as exc_info:
        TransformSpecification.parse({"crop": {"width": 100, "x": 0, "y": 0}})
    assert "crop.height" in _fields(exc_info)


def test_resize_dimension_limit():
    """Test that the request model refuses sizes above 4000 pixels."""
    spec = TransformSpecification.parse({"resize": {"width": 4000}})
    assert spec.resize.width == 4000

    with pytest.raises(TransformValidationError) as exc_info:
        TransformSpecification.parse({"resize": {"width": 4001}})
    assert "resize.width" in _fields(exc_info)


def test_resize_defaults_and_aliases():
    """Test default fit and the camelCase spellings accepted from clients."""
    spec = TransformSpecification.parse({"resize": {"width": 10, "fitMode": "cover", "allowEnlargement": True}})
    assert spec.resize.fit is FitMode.cover
    assert spec.resize.allow_enlargement is True

    default = TransformSpecification.parse({"resize": {"height": 10}})
    assert default.resize.fit is FitMode.inside
    assert default.resize.allow_enlargement is False


def test_unknown_fields_rejected():
    """Test that misspelled operations are reported rather than ignored."""
    with pytest.raises(TransformValidationError) as exc_info:
        TransformSpecification.parse({"resise": {"width": 10}})
    assert "resise" in _fields(exc_info)


def test_jpg_normalized_to_jpeg():
    """Test that the jpg alias resolves to jpeg."""
    spec = TransformSpecification.parse({"format": "JPG"})
    assert spec.format is OutputFormat.jpeg


def test_unknown_format_rejected():
    """Test that unsupported output formats are refused."""
    with pytest.raises(TransformValidationError):
        TransformSpecification.parse({"format": "bmp"})


def test_format_options_require_format():
    """Test that encoder options without a target format are refused."""
    with pytest.raises(TransformValidationError):
        TransformSpecification.parse({"rotate": 90, "formatOptions": {"quality": 70}})


@pytest.mark.parametrize(
    "fmt, options",
    [
        ("png", {"quality": 70}),
        ("webp", {"progressive": True}),
        ("jpeg", {"compressionLevel": 3}),
        ("jpeg", {"lossless": True}),
    ],
)
def test_format_options_must_match_format(fmt, options):
    """Test that options the target encoder ignores are refused."""
    with pytest.raises(TransformValidationError):
        TransformSpecification.parse({"format": fmt, "formatOptions": options})


def test_format_options_accepted_for_matching_format():
    """Test accepted encoder options."""
    spec = TransformSpecification.parse({"format": "jpeg", "formatOptions": {"quality": 70, "progressive": True}})
    assert spec.format_options.quality == 70
    assert spec.format_options.progressive is True


def test_filter_ranges():
    """Test filter bounds."""
    TransformSpecification.parse({"filters": {"blur": 0.3, "brightness": 3, "saturation": 0}})
    with pytest.raises(TransformValidationError):
        TransformSpecification.parse({"filters": {"blur": 0.1}})
    with pytest.raises(TransformValidationError):
        TransformSpecification.parse({"filters": {"contrast": 5}})


def test_rotate_range():
    """Test rotation bounds."""
    TransformSpecification.parse({"rotate": -360})
    with pytest.raises(TransformValidationError):
        TransformSpecification.parse({"rotate": 361})


def test_requested_operations_follow_pipeline_order():
    """Test that operations are listed in precedence order regardless of input order."""
    spec = TransformSpecification.parse(
        {
            "format": "webp",
            "filters": {"grayscale": True},
            "resize": {"width": 10},
            "rotate": 90,
            "mirror": True,
        }
    )
    assert spec.requested_operations() == ["rotate", "mirror", "resize", "filters", "format"]


def test_history_entries():
    """Test the lineage entries recorded for a derived image."""
    overlay = base64.b64encode(b"fake-png").decode()
    spec = TransformSpecification.parse(
        {
            "resize": {"width": 800, "height": 600},
            "filters": {"grayscale": True},
            "watermark": {"image": overlay, "gravity": "north", "opacity": 0.3},
            "format": "webp",
            "formatOptions": {"quality": 70},
        }
    )
    entries = dict(spec.history_entries())

    assert list(dict(spec.history_entries())) == ["resize", "filter", "watermark", "format"]
    assert entries["resize"] == {"width": 800, "height": 600, "fit": "inside", "allow_enlargement": False}
    assert entries["filter"] == {"grayscale": True}
    assert entries["watermark"] == {"gravity": "north", "opacity": 0.3}
    assert entries["format"] == {"format": "webp", "quality": 70}


def test_watermark_image_is_base64_decoded():
    """Test that the overlay arrives as raw bytes."""
    spec = TransformSpecification.parse({"watermark": {"image": base64.b64encode(b"abc").decode()}})
    assert spec.watermark.image == b"abc"
    assert spec.watermark.gravity is Gravity.southeast
    assert spec.watermark.opacity == 0.5


def test_parse_returns_existing_specification():
    spec = TransformSpecification.parse({"flip": True})
    assert TransformSpecification.parse(spec) is spec
