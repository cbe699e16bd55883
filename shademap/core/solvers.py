"""
Least squares solvers for the joint light / normal estimate.

Lambertian shading ties the three quantities of a photometric stereo
capture together with one dot product per pixel and image:

    intensity[p, i] ~= normal[p] . light[i]

Holding the normals fixed, each image's light is the least squares solution
of a (pixels x 3) system. Holding the lights fixed, each pixel's normal is
the least squares solution of an (images x 3) system. The convergence loop
alternates the two.

Both solvers build a single pseudo-inverse per call and apply it to every
image or pixel through parallel_for. The pseudo-inverse is truncated: singular
values below rcond * largest are dropped, so a rank-deficient system (normals
that all lie in a plane, lights that all point the same way) yields the
minimum-norm solution in the observable subspace instead of blowing up. A
system with no usable singular value at all raises SingularSystemError.

Fallback rules:
    - Normal matrix of rank 0           -> every light keeps its previous value.
    - An image's solved light is ~zero  -> that light keeps its previous value.
    - Light matrix of rank 0            -> every normal keeps its previous value.
    - A pixel's solved normal is ~zero  -> that pixel keeps its previous normal.
Each fallback and each rank-deficient solve is counted in SolveStats.
"""

from dataclasses import dataclass

import numpy as np

from shademap.core.errors import SingularSystemError
from shademap.core.parallel import parallel_for


# Solved vectors shorter than this cannot be normalised meaningfully.
MIN_VECTOR_LENGTH = 1e-12


@dataclass
class SolveStats:
    """Running tally of degenerate solves across a run."""
    singular_light_systems: int = 0
    singular_lights: int = 0
    rank_deficient_light_solves: int = 0
    singular_normal_systems: int = 0
    singular_pixels: int = 0
    rank_deficient_normal_solves: int = 0

    @property
    def total_fallbacks(self) -> int:
        return (self.singular_light_systems + self.singular_lights
                + self.singular_normal_systems + self.singular_pixels)

    def summary(self) -> str:
        return (
            f"{self.singular_lights} light fallbacks, "
            f"{self.singular_pixels} pixel fallbacks, "
            f"{self.singular_light_systems + self.singular_normal_systems} singular systems, "
            f"{self.rank_deficient_light_solves + self.rank_deficient_normal_solves} "
            "rank-deficient solves"
        )


# ---------------------------------------------------------------------------
# Seed normal field
# ---------------------------------------------------------------------------

def initial_normal_field(width: int, height: int, strength: float = 0.5) -> np.ndarray:
    """
    Build the dome-shaped seed normal field.

    Each pixel centre's offset from the image centre is divided by half of
    the larger image dimension, giving (u, v) in roughly [-1, 1]. The seed
    normal is normalize(strength * u, strength * v, 1): straight up at the
    centre, tilting outwards towards the edges, symmetric in both axes.

    Args:
        width, height: Image size in pixels.
        strength:      Slope of the dome; the default 0.5 tilts the normal at
                       the middle of the longer edge by atan(0.5).

    Returns:
        (width * height, 3) float64 unit normals, row-major.
    """
    # Scale both axes by the same half extent so the dome stays round on
    # non-square images.
    half_extent = max(width, height) / 2.0
    us = (np.arange(width) + 0.5 - width / 2.0) / half_extent
    vs = (np.arange(height) + 0.5 - height / 2.0) / half_extent
    u, v = np.meshgrid(us, vs)

    field = np.stack([strength * u, strength * v, np.ones_like(u)], axis=-1)
    field = field.reshape(-1, 3)
    return field / np.linalg.norm(field, axis=1, keepdims=True)


def initial_light_set(image_count: int) -> np.ndarray:
    """One (0, 0, 1) light per image, used as the fallback before the first solve."""
    lights = np.zeros((image_count, 3), dtype=np.float64)
    lights[:, 2] = 1.0
    return lights


# ---------------------------------------------------------------------------
# Linear algebra
# ---------------------------------------------------------------------------

def pseudo_inverse(matrix: np.ndarray, rcond: float = 1e-8) -> tuple[np.ndarray, int]:
    """
    Truncated SVD pseudo-inverse.

    Args:
        matrix: (M, K) system matrix.
        rcond:  Relative cutoff for small singular values.

    Returns:
        (pinv, rank) where pinv has shape (K, M) and rank counts the singular
        values that were kept.

    Raises:
        SingularSystemError: The matrix is zero or not finite (rank 0).
    """
    if not np.all(np.isfinite(matrix)):
        raise SingularSystemError("System matrix contains non-finite values")

    u, s, vt = np.linalg.svd(matrix, full_matrices=False)
    if s.size == 0 or s[0] <= 0:
        raise SingularSystemError("System matrix has rank 0")

    # Singular values below the cutoff count as zero, which gives the
    # minimum-norm solution on the directions the matrix does span.
    keep = s > rcond * s[0]
    inverse_s = np.divide(1.0, s, out=np.zeros_like(s), where=keep)
    return (vt.T * inverse_s) @ u.T, int(keep.sum())


# ---------------------------------------------------------------------------
# Light directions
# ---------------------------------------------------------------------------

def solve_light_directions(normals: np.ndarray, intensities: np.ndarray,
                           previous_lights: np.ndarray,
                           light_magnitude: str = "retain",
                           rcond: float = 1e-8, workers: int = 1,
                           stats: SolveStats | None = None) -> np.ndarray:
    """
    Fit one light vector per image to the current normal field.

    Solves normals @ light_i ~= intensities[:, i] for every image i.

    Args:
        normals:         (P, 3) current unit normals (read only).
        intensities:     (P, N) samples, one column per image.
        previous_lights: (N, 3) lights from the previous iteration.
        light_magnitude: "retain" keeps the least squares length, "unit"
                         rescales each light to length one.
        rcond:           Pseudo-inverse cutoff.
        workers:         parallel_for thread count.
        stats:           Tally to update, if given.

    Returns:
        (N, 3) new light set. previous_lights is not modified.
    """
    stats = stats if stats is not None else SolveStats()
    image_count = intensities.shape[1]

    try:
        pinv, rank = pseudo_inverse(normals, rcond)
    except SingularSystemError:
        stats.singular_light_systems += 1
        return np.array(previous_lights, dtype=np.float64)

    if rank < 3:
        stats.rank_deficient_light_solves += 1

    lights = np.empty((image_count, 3), dtype=np.float64)

    def solve(chunk):
        # (3, P) @ (P, k) gives one light per column; transpose to rows.
        solved = (pinv @ intensities[:, chunk]).T
        lengths = np.linalg.norm(solved, axis=1)

        # A black image, or one with no variation the normals can explain,
        # solves to ~zero. Keep its previous light instead.
        bad = ~np.isfinite(lengths) | (lengths < MIN_VECTOR_LENGTH)
        solved[bad] = previous_lights[chunk][bad]

        if light_magnitude == "unit":
            solved /= np.linalg.norm(solved, axis=1, keepdims=True)
        lights[chunk] = solved
        return int(bad.sum())

    stats.singular_lights += sum(parallel_for(solve, image_count, workers, chunk_size=1))
    return lights


# ---------------------------------------------------------------------------
# Normal field
# ---------------------------------------------------------------------------

def solve_normal_field(lights: np.ndarray, intensities: np.ndarray,
                       previous_normals: np.ndarray,
                       rcond: float = 1e-8, workers: int = 1,
                       chunk_size: int = 65_536,
                       stats: SolveStats | None = None) -> np.ndarray:
    """
    Fit a unit normal to every pixel given the current light set.

    Solves lights @ n ~= intensities[p, :] for every pixel p, then
    normalises. The light pseudo-inverse is shared by all pixels, so each
    chunk is a single (k, N) x (N, 3) product.

    Args:
        lights:           (N, 3) current lights (read only).
        intensities:      (P, N) samples.
        previous_normals: (P, 3) normals from the previous iteration.
        rcond:            Pseudo-inverse cutoff.
        workers:          parallel_for thread count.
        chunk_size:       Pixels per parallel_for chunk.
        stats:            Tally to update, if given.

    Returns:
        (P, 3) unit normals. previous_normals is not modified.
    """
    stats = stats if stats is not None else SolveStats()

    try:
        pinv, rank = pseudo_inverse(lights, rcond)
    except SingularSystemError:
        stats.singular_normal_systems += 1
        return np.array(previous_normals, dtype=np.float64)

    if rank < 3:
        stats.rank_deficient_normal_solves += 1

    normals = np.empty(previous_normals.shape, dtype=np.float64)
    solve_t = pinv.T

    def solve(chunk):
        # Row p of (k, N) @ (N, 3) is pinv @ intensities[p], i.e. the
        # albedo-scaled normal of that pixel.
        solved = intensities[chunk] @ solve_t
        lengths = np.linalg.norm(solved, axis=1)

        # Normalising strips the albedo. Pixels that are black in every
        # image have nothing to normalise and keep their previous normal.
        bad = ~np.isfinite(lengths) | (lengths < MIN_VECTOR_LENGTH)
        good = ~bad
        solved[good] /= lengths[good, np.newaxis]
        solved[bad] = previous_normals[chunk][bad]
        normals[chunk] = solved
        return int(bad.sum())

    pixel_count = intensities.shape[0]
    stats.singular_pixels += sum(parallel_for(solve, pixel_count, workers, chunk_size))
    return normals


def lambertian_residual(normals: np.ndarray, lights: np.ndarray,
                        intensities: np.ndarray) -> float:
    """Root mean square difference between observed and predicted shading."""
    predicted = normals @ lights.T
    return float(np.sqrt(np.mean((predicted - intensities) ** 2)))
