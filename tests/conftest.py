"""
Shared fixtures: synthetic Lambertian scenes and image files.

Scenes are built analytically so every test knows the true normals and
lights it expects to recover.
"""

import numpy as np
import pytest
from PIL import Image


def _light(tilt_deg, azimuth_deg):
    tilt = np.radians(tilt_deg)
    azimuth = np.radians(azimuth_deg)
    return np.array([
        np.sin(tilt) * np.cos(azimuth),
        np.sin(tilt) * np.sin(azimuth),
        np.cos(tilt),
    ])


def _spherical_cap(size, radius, max_tilt_deg):
    """(size, size, 3) normals of a flat plane with a spherical bump in the middle."""
    sphere_radius = radius / np.sin(np.radians(max_tilt_deg))
    offsets = np.arange(size) + 0.5 - size / 2.0
    dx, dy = np.meshgrid(offsets, offsets)
    distance_sq = dx ** 2 + dy ** 2

    normals = np.zeros((size, size, 3))
    normals[..., 2] = 1.0
    inside = distance_sq < radius ** 2
    normals[inside, 0] = dx[inside] / sphere_radius
    normals[inside, 1] = dy[inside] / sphere_radius
    normals[inside, 2] = np.sqrt(sphere_radius ** 2 - distance_sq[inside]) / sphere_radius
    return normals


def _shade(normals, lights):
    """One (H, W) Lambertian image per light, attached shadows clamped to 0."""
    shading = np.clip(normals @ np.asarray(lights).T, 0.0, None)
    return [shading[..., i] for i in range(shading.shape[-1])]


@pytest.fixture
def light_from_angles():
    return _light


@pytest.fixture
def spherical_cap():
    return _spherical_cap


@pytest.fixture
def shade():
    return _shade


@pytest.fixture
def write_gray(tmp_path):
    """Write an (H, W) array in [0, 1] as an 8-bit grayscale PNG."""
    def write(name, values):
        path = tmp_path / name
        pixels = np.rint(np.clip(values, 0.0, 1.0) * 255).astype(np.uint8)
        Image.fromarray(pixels).save(path)
        return path
    return write


def angular_error_deg(a, b):
    cosines = np.sum(a * b, axis=-1) / (
        np.linalg.norm(a, axis=-1) * np.linalg.norm(b, axis=-1)
    )
    return np.degrees(np.arccos(np.clip(cosines, -1.0, 1.0)))


@pytest.fixture
def angular_error():
    return angular_error_deg
