"""
Test cases for image decoding and preprocessing.
"""

import io

import numpy as np
import pytest
from PIL import Image

from geowraith.core.errors import InvalidImage
from geowraith.vector.imaging import (
    CLIP_INPUT_SIZE,
    CLIP_MEAN,
    CLIP_STD,
    decode_image,
    image_statistics,
    read_exif_location,
    to_normalized_array,
    _dms_to_degrees,
)
from fakes import make_image_bytes


def test_decode_drops_alpha():
    """RGBA input comes out as RGB."""
    image = Image.new("RGBA", (20, 10), (10, 20, 30, 128))
    buf = io.BytesIO()
    image.save(buf, format="PNG")

    decoded = decode_image(buf.getvalue())

    assert decoded.mode == "RGB"
    assert decoded.size == (20, 10)


def test_decode_rejects_garbage():
    with pytest.raises(InvalidImage):
        decode_image(b"\x00\x01not-an-image")


def test_decode_rejects_empty():
    with pytest.raises(InvalidImage):
        decode_image(b"")


def test_preprocess_shape_and_normalization():
    """Non-square input is centre-cropped to the backend square and normalized."""
    image_bytes = make_image_bytes((255, 0, 0), size=(400, 300))

    pixels = to_normalized_array(decode_image(image_bytes))

    assert pixels.shape == (3, CLIP_INPUT_SIZE, CLIP_INPUT_SIZE)
    assert pixels.dtype == np.float32
    # Solid red: every pixel equals the normalized channel values
    expected_r = (1.0 - CLIP_MEAN[0]) / CLIP_STD[0]
    expected_g = (0.0 - CLIP_MEAN[1]) / CLIP_STD[1]
    assert np.allclose(pixels[0], expected_r, atol=1e-4)
    assert np.allclose(pixels[1], expected_g, atol=1e-4)


def test_image_statistics_layout():
    stats = image_statistics(decode_image(make_image_bytes((0, 0, 255))))

    assert stats.shape == (15,)
    # Blue channel mean is 1, std is 0
    assert stats[2] == pytest.approx(1.0, abs=1e-4)
    assert stats[5] == pytest.approx(0.0, abs=1e-4)
    # Hue histogram sums to one
    assert stats[9:].sum() == pytest.approx(1.0, abs=1e-5)


def test_exif_location_absent_for_plain_png():
    assert read_exif_location(make_image_bytes()) is None


def test_exif_location_absent_for_garbage():
    assert read_exif_location(b"garbage") is None


def test_dms_conversion():
    assert _dms_to_degrees((48, 51, 24), "N") == pytest.approx(48.8566, abs=1e-3)
    assert _dms_to_degrees((2, 21, 7.92), "W") == pytest.approx(-2.3522, abs=1e-3)


if __name__ == "__main__":
    pytest.main([__file__])
