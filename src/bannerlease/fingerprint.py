"""Image fingerprints for checking that a banner still shows the rented ad.

The fingerprint is a global mean threshold over a 300x300 luminance image:
one bit per pixel, set when the pixel is brighter than the image mean. It is
deliberately coarse. It survives recompression and small rendering
differences, but not cropping or rotation, and it can accept an unrelated
image whose light/dark layout happens to be similar.
"""

import math
from io import BytesIO

from PIL import Image, ImageOps, UnidentifiedImageError

from src.bannerlease.errors import FingerprintError

FINGERPRINT_SIZE = 300
DEFAULT_TOLERANCE = 0.10


def fingerprint(image: Image.Image, size: int = FINGERPRINT_SIZE) -> str:
    """Compute the bitstring fingerprint of an image.

    Args:
        image: Any Pillow image.
        size: Side of the square the image is normalized to.

    Returns:
        A string of size * size '0'/'1' characters.
    """
    if image.width == 0 or image.height == 0:
        raise FingerprintError("Cannot fingerprint an empty image")

    # Scale to cover the square and center-crop, then drop to luminance
    normalized = ImageOps.fit(image.convert("RGB"), (size, size), method=Image.Resampling.BILINEAR)
    pixels = normalized.convert("L").tobytes()

    mean = sum(pixels) / len(pixels)
    return "".join("1" if p > mean else "0" for p in pixels)


def fingerprint_bytes(data: bytes, size: int = FINGERPRINT_SIZE) -> str:
    """Decode encoded image bytes (PNG, JPEG, ...) and fingerprint them."""
    try:
        with Image.open(BytesIO(data)) as image:
            image.load()
            return fingerprint(image, size)
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise FingerprintError(f"Cannot decode image: {e}") from e


def distance(fp_a: str, fp_b: str) -> int:
    """Hamming distance between two fingerprints.

    Fingerprints of different lengths are maximally dissimilar.
    """
    if len(fp_a) != len(fp_b):
        return max(len(fp_a), len(fp_b))
    return sum(1 for a, b in zip(fp_a, fp_b) if a != b)


def is_match(fp_a: str, fp_b: str, tolerance: float = DEFAULT_TOLERANCE) -> bool:
    """Whether two fingerprints differ in at most floor(len * tolerance) bits."""
    threshold = math.floor(len(fp_a) * tolerance)
    return distance(fp_a, fp_b) <= threshold
