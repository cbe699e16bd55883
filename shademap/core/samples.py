"""
Image sample store: decoded input images as per-pixel intensity vectors.

The solvers never see image files. This module turns N input images into a
single (W*H, N) float64 array where row i holds the N intensities observed
at flat pixel index i = y * W + x, one column per image, in input order.

Decoding rules:
    - 8-bit images (L, RGB, RGBA, P, ...) are scaled to [0, 1].
    - 16-bit grayscale (I;16 and friends, or I) is scaled by 65535.
    - Float images (F) are used as is.
    - Colour images are reduced to Rec. 709 relative luminance.
    - With colorspace="srgb" the sRGB transfer curve is undone first so the
      values are proportional to scene radiance. "linear" (the default)
      takes stored values at face value.

HEIC/HEIF files are readable through pillow-heif, so phone captures can be
used directly.

Validation follows the boundary rules of the pipeline: the image count is
checked before anything is decoded, the first image fixes the resolution,
and every later image must match it.
"""

from pathlib import Path
from typing import Callable

import numpy as np
from PIL import Image
from pillow_heif import register_heif_opener

from shademap.core.errors import (
    DecodeFailureError,
    InsufficientImagesError,
    ResolutionMismatchError,
)

register_heif_opener()


# Three unknowns per normal and per light direction.
MIN_IMAGES = 3

# Rec. 709 / sRGB primaries, applied to linear RGB.
LUMINANCE_WEIGHTS = np.array([0.2126, 0.7152, 0.0722], dtype=np.float64)

_SIXTEEN_BIT_MODES = {"I;16", "I;16L", "I;16B", "I;16N", "I"}


def srgb_to_linear(values: np.ndarray) -> np.ndarray:
    """Undo the sRGB transfer curve on values in [0, 1]."""
    values = np.asarray(values, dtype=np.float64)
    return np.where(
        values <= 0.04045,
        values / 12.92,
        ((values + 0.055) / 1.055) ** 2.4,
    )


def decode_intensity(image: Image.Image, colorspace: str = "linear") -> np.ndarray:
    """
    Convert a Pillow image into an (H, W) float64 intensity array.

    Args:
        image:      Any Pillow image.
        colorspace: "linear" or "srgb", the transfer curve of the stored values.

    Returns:
        (H, W) float64 array, nominally in [0, 1].
    """
    if image.mode == "F":
        values = np.asarray(image, dtype=np.float64)
        channels = 1
    elif image.mode in _SIXTEEN_BIT_MODES:
        values = np.asarray(image, dtype=np.float64) / 65535.0
        channels = 1
    elif image.mode == "L":
        values = np.asarray(image, dtype=np.float64) / 255.0
        channels = 1
    else:
        # Palette, alpha and CMYK images all go through RGB.
        values = np.asarray(image.convert("RGB"), dtype=np.float64) / 255.0
        channels = 3

    if colorspace == "srgb":
        values = srgb_to_linear(np.clip(values, 0.0, 1.0))

    if channels == 3:
        values = values @ LUMINANCE_WEIGHTS
    return values


def _load_image(path: Path, colorspace: str) -> np.ndarray:
    """Decode one file into an intensity array, wrapping every failure."""
    if not path.is_file():
        raise DecodeFailureError(f"Input image not found: {path}")
    try:
        with Image.open(path) as img:
            img.load()
            return decode_intensity(img, colorspace)
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise DecodeFailureError(f"Could not decode image {path}: {e}") from e


class ImageSampleStore:
    """
    Per-pixel intensity samples for one run.

    Attributes:
        intensities: (W*H, N) float64, read-only.
        width:       Image width W in pixels.
        height:      Image height H in pixels.
        names:       One label per image (file name, or "image_<i>").
    """

    def __init__(self, intensities: np.ndarray, width: int, height: int,
                 names: list[str] | None = None):
        intensities = np.array(intensities, dtype=np.float64)
        if intensities.ndim != 2 or intensities.shape[0] != width * height:
            raise ValueError(
                f"Expected intensities of shape ({width * height}, N), "
                f"got {intensities.shape}"
            )
        if intensities.shape[1] < MIN_IMAGES:
            raise InsufficientImagesError(
                f"At least {MIN_IMAGES} images are required, got {intensities.shape[1]}"
            )
        intensities.setflags(write=False)

        self.intensities = intensities
        self.width = width
        self.height = height
        self.names = names or [f"image_{i}" for i in range(intensities.shape[1])]

    @property
    def image_count(self) -> int:
        return self.intensities.shape[1]

    @property
    def pixel_count(self) -> int:
        return self.intensities.shape[0]

    def image(self, index: int) -> np.ndarray:
        """Intensities of one input image as an (H, W) array."""
        return self.intensities[:, index].reshape(self.height, self.width)

    @classmethod
    def from_arrays(cls, arrays, names: list[str] | None = None) -> "ImageSampleStore":
        """
        Build a store from already decoded (H, W) intensity arrays.

        Raises:
            InsufficientImagesError: Fewer than MIN_IMAGES arrays.
            ResolutionMismatchError: The arrays differ in shape.
        """
        arrays = [np.asarray(a, dtype=np.float64) for a in arrays]
        if len(arrays) < MIN_IMAGES:
            raise InsufficientImagesError(
                f"At least {MIN_IMAGES} images are required, got {len(arrays)}"
            )

        height, width = arrays[0].shape
        for i, array in enumerate(arrays[1:], start=1):
            if array.shape != (height, width):
                label = names[i] if names else f"image_{i}"
                raise ResolutionMismatchError(
                    f"{label} is {array.shape[1]}x{array.shape[0]}, "
                    f"expected {width}x{height}"
                )

        stacked = np.stack([a.reshape(-1) for a in arrays], axis=1)
        return cls(stacked, width, height, names)

    @classmethod
    def from_files(cls, image_paths, colorspace: str = "linear",
                   on_progress: Callable[[str], None] | None = None) -> "ImageSampleStore":
        """
        Decode and validate a list of image files.

        The count check runs before any file is opened. The first image sets
        the resolution; each later image is compared as soon as it is decoded
        so a mismatch fails without decoding the rest.

        Raises:
            InsufficientImagesError: Fewer than MIN_IMAGES paths.
            DecodeFailureError:      A file is missing or unreadable.
            ResolutionMismatchError: A file differs from the first in size.
        """
        paths = [Path(p) for p in image_paths]
        if len(paths) < MIN_IMAGES:
            raise InsufficientImagesError(
                f"At least {MIN_IMAGES} images are required, got {len(paths)}"
            )

        arrays = []
        for path in paths:
            array = _load_image(path, colorspace)
            if arrays and array.shape != arrays[0].shape:
                raise ResolutionMismatchError(
                    f"{path.name} is {array.shape[1]}x{array.shape[0]}, "
                    f"expected {arrays[0].shape[1]}x{arrays[0].shape[0]} "
                    f"(from {paths[0].name})"
                )
            arrays.append(array)
            if on_progress:
                on_progress(f"Decoded {path.name} ({array.shape[1]}x{array.shape[0]})")

        return cls.from_arrays(arrays, names=[p.name for p in paths])

    def balanced(self) -> "ImageSampleStore":
        """
        Return a copy where every image has the same mean intensity.

        Each image is scaled so its mean equals the mean over all images.
        Images that are entirely black are left as they are.
        """
        # One scale factor per column (image).
        means = self.intensities.mean(axis=0)
        target = means.mean()
        scale = np.ones_like(means)
        nonzero = means > 0
        scale[nonzero] = target / means[nonzero]
        return ImageSampleStore(self.intensities * scale, self.width, self.height,
                                list(self.names))
