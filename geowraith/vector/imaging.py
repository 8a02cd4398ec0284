"""
Image decoding and preprocessing with Pillow.
"""

import io
from typing import Optional, Tuple

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from ..core.errors import InvalidImage

# CLIP ViT-B/32 preprocessing constants
CLIP_INPUT_SIZE = 224
CLIP_MEAN = np.array([0.48145466, 0.4578275, 0.40821073], dtype=np.float32)
CLIP_STD = np.array([0.26862954, 0.26130258, 0.27577711], dtype=np.float32)

STATS_SIZE = 64
HUE_BINS = 6

GPS_IFD = 0x8825


def decode_image(image_bytes: bytes) -> Image.Image:
    """Decode bytes into an upright RGB image."""
    if not image_bytes:
        raise InvalidImage("Image payload is empty")
    try:
        image = Image.open(io.BytesIO(image_bytes))
        image.load()
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise InvalidImage(f"Could not decode image: {e}") from e

    # Canonical orientation first, then drop alpha
    image = ImageOps.exif_transpose(image)
    if image.mode != "RGB":
        image = image.convert("RGB")
    return image


def fit_square(image: Image.Image, size: int = CLIP_INPUT_SIZE) -> Image.Image:
    """Bicubic resize with centre crop to a size x size square."""
    return ImageOps.fit(image, (size, size), method=Image.Resampling.BICUBIC, centering=(0.5, 0.5))


def to_normalized_array(image: Image.Image, size: int = CLIP_INPUT_SIZE,
                        mean: np.ndarray = CLIP_MEAN, std: np.ndarray = CLIP_STD) -> np.ndarray:
    """
    Produce a channels-first float32 array ready for a vision backend.

    Returns:
        Array of shape (3, size, size)
    """
    square = fit_square(image, size)
    pixels = np.asarray(square, dtype=np.float32) / 255.0
    pixels = (pixels - mean) / std
    return np.transpose(pixels, (2, 0, 1)).copy()


def image_statistics(image: Image.Image) -> np.ndarray:
    """
    Colour statistics used by the deterministic fallback embedding.

    Returns a 15-element vector: RGB mean and std, luma mean and std, mean
    saturation and a normalized hue histogram.
    """
    small = fit_square(image, STATS_SIZE)
    rgb = np.asarray(small, dtype=np.float32) / 255.0
    flat = rgb.reshape(-1, 3)

    rgb_mean = flat.mean(axis=0)
    rgb_std = flat.std(axis=0)

    luma = 0.299 * flat[:, 0] + 0.587 * flat[:, 1] + 0.114 * flat[:, 2]

    hsv = np.asarray(small.convert("HSV"), dtype=np.float32).reshape(-1, 3) / 255.0
    saturation = hsv[:, 1].mean()
    hist, _ = np.histogram(hsv[:, 0], bins=HUE_BINS, range=(0.0, 1.0))
    hist = hist.astype(np.float32) / max(1, hist.sum())

    return np.concatenate([
        rgb_mean,
        rgb_std,
        np.array([luma.mean(), luma.std(), saturation], dtype=np.float32),
        hist,
    ]).astype(np.float32)


def _dms_to_degrees(dms, ref: str) -> float:
    degrees, minutes, seconds = (float(x) for x in dms)
    value = degrees + minutes / 60.0 + seconds / 3600.0
    if ref in ("S", "W"):
        value = -value
    return value


def read_exif_location(image_bytes: bytes) -> Optional[Tuple[float, float]]:
    """
    Read a GPS coordinate from EXIF metadata.

    Returns:
        (lat, lon) or None when the image carries no usable GPS block
    """
    try:
        image = Image.open(io.BytesIO(image_bytes))
        gps = image.getexif().get_ifd(GPS_IFD)
    except (UnidentifiedImageError, OSError, ValueError):
        return None

    if not gps or 2 not in gps or 4 not in gps:
        return None

    try:
        lat = _dms_to_degrees(gps[2], gps.get(1, "N"))
        lon = _dms_to_degrees(gps[4], gps.get(3, "E"))
    except (TypeError, ValueError, ZeroDivisionError):
        return None

    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        return None
    if lat == 0.0 and lon == 0.0:
        return None
    return lat, lon
