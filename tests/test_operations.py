"""Tests for the Pillow operation engine."""

from io import BytesIO

import pytest
from PIL import Image

from app.core.errors import (
    DimensionExceeded,
    InvalidCropRegion,
    OperationError,
    UnsupportedFormat,
    WatermarkSourceMissing,
)
from app.models.image import ImageBuffer
from app.services import operations


def _buffer(width=200, height=100, mode="RGB", color=(200, 60, 30), fmt="png"):
    fill = color if mode != "RGBA" else color + (255,)
    return ImageBuffer(image=Image.new(mode, (width, height), fill), format=fmt)


def _split_buffer(width=200, height=100):
    """Left half red, right half blue; top row marked green on the left."""
    image = Image.new("RGB", (width, height), (255, 0, 0))
    image.paste(Image.new("RGB", (width // 2, height), (0, 0, 255)), (width // 2, 0))
    image.paste(Image.new("RGB", (width // 2, 1), (0, 255, 0)), (0, 0))
    return ImageBuffer(image=image, format="png")


def _png_bytes(width, height, color=(255, 255, 255, 255)):
    output = BytesIO()
    Image.new("RGBA", (width, height), color).save(output, format="PNG")
    return output.getvalue()


def test_decode_and_metadata(image_factory):
    """Test decoding bytes and reading their metadata."""
    data = image_factory(120, 80, "JPEG")
    buffer = operations.decode(data)
    assert (buffer.width, buffer.height) == (120, 80)
    assert buffer.format == "jpeg"

    metadata = operations.read_metadata(data)
    assert metadata == {"width": 120, "height": 80, "format": "jpeg", "color_space": "srgb", "has_alpha": False}


def test_decode_garbage_fails_at_decode_stage():
    """Test that undecodable bytes name the decode stage."""
    with pytest.raises(OperationError) as exc_info:
        operations.decode(b"not an image")
    assert exc_info.value.stage == "decode"


def test_resize_inside_never_enlarges_by_default():
    """Test that inside fit keeps the aspect ratio and does not upscale."""
    resized = operations.resize(_buffer(200, 100), width=100, height=100)
    assert resized.image.size == (100, 50)

    unchanged = operations.resize(_buffer(200, 100), width=400, height=400)
    assert unchanged.image.size == (200, 100)


def test_resize_single_dimension_keeps_aspect_ratio():
    """Test that a missing side follows the source aspect ratio."""
    assert operations.resize(_buffer(200, 100), width=50).image.size == (50, 25)
    assert operations.resize(_buffer(200, 100), height=20).image.size == (40, 20)


def test_resize_with_enlargement():
    """Test upscaling when explicitly allowed."""
    resized = operations.resize(_buffer(200, 100), width=400, height=400, allow_enlargement=True)
    assert resized.image.size == (400, 200)


def test_resize_cover_fill_contain_produce_requested_box():
    """Test the fits that always produce the exact requested box."""
    source = _buffer(200, 100)
    assert operations.resize(source, width=80, height=80, fit="cover").image.size == (80, 80)
    assert operations.resize(source, width=80, height=80, fit="fill").image.size == (80, 80)
    assert operations.resize(source, width=80, height=80, fit="contain").image.size == (80, 80)


def test_resize_outside_covers_box():
    """Test that outside fit covers the box without cropping."""
    assert operations.resize(_buffer(200, 100), width=80, height=80, fit="outside").image.size == (160, 80)


def test_resize_dimension_boundary():
    """Test the 4000 pixel limit: 4000 succeeds, 4001 fails."""
    source = _buffer(100, 50)
    assert operations.resize(source, width=4000, allow_enlargement=True).image.size == (4000, 2000)

    with pytest.raises(DimensionExceeded) as exc_info:
        operations.resize(source, width=4001)
    assert "4000" in str(exc_info.value)


def test_resize_respects_custom_limit():
    with pytest.raises(DimensionExceeded):
        operations.resize(_buffer(100, 50), height=300, max_dimension=200)


def test_resize_clears_encoded_data():
    """Test that a geometry stage discards previously encoded bytes."""
    encoded = operations.convert_format(_buffer(200, 100), "webp")
    assert encoded.data is not None
    assert operations.resize(encoded, width=50).data is None


def test_crop_region():
    """Test extracting a region."""
    cropped = operations.crop(_split_buffer(), 50, 40, x=120, y=10)
    assert cropped.image.size == (50, 40)
    assert cropped.image.getpixel((0, 0)) == (0, 0, 255)


def test_crop_outside_bounds_rejected():
    """Test that regions beyond the image raise an invalid crop error."""
    with pytest.raises(InvalidCropRegion):
        operations.crop(_buffer(200, 100), 150, 50, x=100, y=0)


def test_crop_without_height_rejected():
    with pytest.raises(InvalidCropRegion):
        operations.crop(_buffer(200, 100), 50, None)


def test_rotate_quarter_turn_swaps_dimensions():
    """Test clockwise quarter turns."""
    rotated = operations.rotate(_split_buffer(200, 100), 90)
    assert rotated.image.size == (100, 200)
    # Clockwise: the red left half ends up on top.
    assert rotated.image.getpixel((50, 10)) == (255, 0, 0)
    assert rotated.image.getpixel((50, 190)) == (0, 0, 255)


def test_rotate_arbitrary_angle_expands_canvas():
    rotated = operations.rotate(_buffer(200, 100), 45)
    assert rotated.image.width > 200
    assert rotated.image.height > 100


def test_rotate_full_turn_is_noop():
    source = _buffer(200, 100)
    assert operations.rotate(source, 360) is source


def test_flip_reflects_vertically():
    """Test that flip moves the top row to the bottom."""
    flipped = operations.flip(_split_buffer())
    assert flipped.image.getpixel((10, 99)) == (0, 255, 0)
    assert flipped.image.getpixel((10, 0)) == (255, 0, 0)


def test_mirror_reflects_horizontally():
    """Test that mirror swaps left and right."""
    mirrored = operations.mirror(_split_buffer())
    assert mirrored.image.getpixel((10, 50)) == (0, 0, 255)
    assert mirrored.image.getpixel((190, 50)) == (255, 0, 0)


def test_grayscale_filter():
    filtered = operations.apply_filters(_buffer(), grayscale=True)
    assert filtered.image.mode == "L"
    assert filtered.color_space == "b-w"


def test_sepia_keeps_alpha():
    """Test that colour filters leave the alpha channel untouched."""
    source = ImageBuffer(image=Image.new("RGBA", (20, 20), (120, 120, 120, 90)), format="png")
    toned = operations.apply_filters(source, sepia=True)
    assert toned.image.mode == "RGBA"
    red, green, blue, alpha = toned.image.getpixel((5, 5))
    assert alpha == 90
    assert red >= green >= blue


def test_brightness_and_contrast():
    """Test that brightness scales and contrast pivots around mid grey."""
    source = _buffer(color=(100, 100, 100))
    assert operations.apply_filters(source, brightness=2).image.getpixel((0, 0)) == (200, 200, 200)
    assert operations.apply_filters(source, contrast=2).image.getpixel((0, 0)) == (72, 72, 72)


def test_filters_apply_in_fixed_order():
    """Test that brightness is applied before contrast."""
    # Contrast first would give 72 and then 144.
    source = _buffer(color=(100, 100, 100))
    filtered = operations.apply_filters(source, contrast=2, brightness=2)
    assert filtered.image.getpixel((0, 0)) == (255, 255, 255)


def test_saturation_zero_removes_colour():
    desaturated = operations.apply_filters(_buffer(color=(200, 60, 30)), saturation=0)
    red, green, blue = desaturated.image.getpixel((0, 0))
    assert red == green == blue


def test_blur_and_sharpen_keep_size():
    filtered = operations.apply_filters(_split_buffer(), blur=2, sharpen=True)
    assert filtered.image.size == (200, 100)


def test_watermark_requires_overlay():
    """Test that a watermark without an image fails at the watermark stage."""
    with pytest.raises(WatermarkSourceMissing) as exc_info:
        operations.watermark(_buffer(), None)
    assert exc_info.value.stage == "watermark"


def test_watermark_composited_in_corner():
    """Test placement and opacity of the overlay."""
    base = _buffer(200, 100, color=(0, 0, 0))
    marked = operations.watermark(base, _png_bytes(40, 40), gravity="southeast", opacity=1.0, scale=0.2)
    assert marked.image.mode == "RGB"
    # Overlay is 40px wide (20% of 200) anchored bottom-right.
    assert marked.image.getpixel((199, 99)) == (255, 255, 255)
    assert marked.image.getpixel((150, 99)) == (0, 0, 0)
    assert marked.image.getpixel((0, 0)) == (0, 0, 0)

    faded = operations.watermark(base, _png_bytes(40, 40), gravity="northwest", opacity=0.5, scale=0.2)
    red, _, _ = faded.image.getpixel((0, 0))
    assert 120 <= red <= 135


def test_convert_to_webp():
    converted = operations.convert_format(_buffer(), "webp", quality=60)
    assert converted.format == "webp"
    assert operations.read_metadata(converted.data)["format"] == "webp"


def test_convert_rgba_to_jpeg_flattens_alpha():
    """Test that JPEG output drops transparency."""
    source = ImageBuffer(image=Image.new("RGBA", (20, 20), (255, 0, 0, 0)), format="png")
    converted = operations.convert_format(source, "jpeg")
    assert converted.image.mode == "RGB"
    assert operations.read_metadata(converted.data)["has_alpha"] is False


def test_convert_rejects_options_for_other_formats():
    """Test that encoder options must match the target format."""
    with pytest.raises(OperationError) as exc_info:
        operations.convert_format(_buffer(), "png", quality=50)
    assert exc_info.value.stage == "format"


def test_convert_rejects_unknown_format():
    with pytest.raises(UnsupportedFormat):
        operations.convert_format(_buffer(), "bmp")


def test_avif_unavailable_is_reported():
    """Test that a Pillow build without AVIF support fails cleanly."""
    Image.init()
    if "AVIF" in Image.SAVE:
        pytest.skip("Pillow built with AVIF support")
    with pytest.raises(UnsupportedFormat):
        operations.convert_format(_buffer(), "avif")


def test_compress_keeps_source_format():
    """Test that compress re-encodes in the current format unless told otherwise."""
    jpeg = operations.decode(operations.convert_format(_buffer(), "jpeg").data)
    assert operations.compress(jpeg, quality=40).format == "jpeg"
    assert operations.compress(jpeg, quality=40, fmt="webp").format == "webp"


def test_compress_png_ignores_quality():
    compressed = operations.compress(_buffer(), quality=10)
    assert compressed.format == "png"
    assert operations.read_metadata(compressed.data)["width"] == 200


def test_encode_uses_current_format_when_no_encoding_stage_ran():
    data = operations.encode(_buffer(fmt="png"))
    assert operations.read_metadata(data)["format"] == "png"
