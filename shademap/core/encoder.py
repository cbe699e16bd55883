"""
Normal map encoding and output.

Each unit normal component in [-1, 1] maps linearly onto [0, 255]:

    R = (Nx + 1) / 2  -> neutral 128
    G = (Ny + 1) / 2  -> neutral 128
    B = (Nz + 1) / 2  -> 255 for a normal facing the camera

Values are written as they are, in linear colorspace, with no sRGB curve.

Internally y grows down the image. The "opengl" convention (the default,
used by Blender, Unity and glTF) stores +Y as up, so the green channel
holds -y. "directx" (Unreal, 3ds Max) stores image-down y directly.

Writes go to a temporary file next to the destination and are moved into
place only after the image has been saved completely, so a failed write
leaves no output file behind.
"""

import os
import tempfile
from pathlib import Path

import numpy as np
from PIL import Image

from shademap.core.errors import WriteFailureError


def _convention_sign(convention: str) -> np.ndarray:
    if convention == "opengl":
        return np.array([1.0, -1.0, 1.0])
    if convention == "directx":
        return np.array([1.0, 1.0, 1.0])
    raise ValueError(f"Unknown normal convention: {convention!r}")


def encode_normal_map(normals: np.ndarray, convention: str = "opengl") -> np.ndarray:
    """
    Quantise an (H, W, 3) unit normal field to uint8 RGB.

    Args:
        normals:    (H, W, 3) float normals in image coordinates.
        convention: "opengl" or "directx".

    Returns:
        (H, W, 3) uint8 array.
    """
    signed = np.asarray(normals, dtype=np.float64) * _convention_sign(convention)
    encoded = np.rint((np.clip(signed, -1.0, 1.0) + 1.0) / 2.0 * 255.0)
    return encoded.astype(np.uint8)


def decode_normal_map(pixels: np.ndarray, convention: str = "opengl",
                      normalize: bool = True) -> np.ndarray:
    """
    Inverse of encode_normal_map.

    Args:
        pixels:     (H, W, 3) uint8 RGB.
        convention: The convention the pixels were written with.
        normalize:  Rescale the decoded vectors to unit length.

    Returns:
        (H, W, 3) float64 normals in image coordinates.
    """
    decoded = np.asarray(pixels, dtype=np.float64)[..., :3] / 255.0 * 2.0 - 1.0
    decoded = decoded * _convention_sign(convention)
    if normalize:
        lengths = np.linalg.norm(decoded, axis=-1, keepdims=True)
        decoded = decoded / np.where(lengths > 0, lengths, 1.0)
    return decoded


def write_normal_map(normals: np.ndarray, output_path, convention: str = "opengl") -> Path:
    """
    Encode and save a normal field, replacing output_path atomically.

    The file format follows the extension of output_path (PNG, TIFF, ...).

    Raises:
        WriteFailureError: The directory is missing or unwritable, the
                           format is unknown, or saving fails.
    """
    output_path = Path(output_path)
    image = Image.fromarray(encode_normal_map(normals, convention))

    # No extension means PNG.
    image_format = Image.registered_extensions().get(output_path.suffix.lower() or ".png")
    if image_format is None:
        raise WriteFailureError(f"Unsupported output format: {output_path.name}")

    directory = output_path.parent
    if not directory.is_dir():
        raise WriteFailureError(f"Output directory does not exist: {directory}")

    try:
        fd, temp_name = tempfile.mkstemp(prefix=f".{output_path.name}.", dir=directory)
        os.close(fd)
    except OSError as e:
        raise WriteFailureError(f"Cannot write to {directory}: {e}") from e

    # mkstemp in the destination directory keeps os.replace on one
    # filesystem, where it is atomic.
    temp_path = Path(temp_name)
    try:
        image.save(temp_path, format=image_format)
        os.replace(temp_path, output_path)
    except (OSError, ValueError, KeyError) as e:
        temp_path.unlink(missing_ok=True)
        raise WriteFailureError(f"Failed to write normal map {output_path}: {e}") from e

    return output_path
