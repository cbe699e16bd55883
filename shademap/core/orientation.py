"""
Global and corner-based orientation corrections.

The joint light/normal estimate is only defined up to a rotation shared by
every normal and every light: rotating both leaves every dot product, and
therefore every predicted intensity, unchanged. Two passes pin that freedom
down and remove the convex bias of the directional light model.

Orientation normalisation:
    Rotate the whole solution so the mean normal points straight at the
    camera, (0, 0, 1). The same rotation is applied to the lights.

Corner flattening:
    Real captures use nearby point lights, so patches closer to a lamp
    receive more light and a directional least squares fit reads the whole
    frame as bulging towards the camera. Assuming the surface is flat near
    the image corners, the normal averaged over each corner patch should be
    (0, 0, 1). Each corner gets the rotation that makes it so, and every
    pixel is rotated by a bilinear blend of the four corner rotations:

        TL ------ TR        fx = x / W
        |    p     |        fy = y / H
        BL ------ BR

    "slerp" blends along x on the top and bottom edges, then along y between
    them. "linear" blends the four rotation vectors with bilinear weights,
    which matches slerp for the small angles this pass normally sees.

Rotations are scipy Rotation objects (quaternions internally), so the exact
anti-aligned case and near-identity rotations need no special Euler handling.
"""

import numpy as np
from scipy.spatial.transform import Rotation

from shademap.core.parallel import parallel_for


UP = np.array([0.0, 0.0, 1.0])

# Vectors shorter than this carry no direction; their rotation is identity.
MIN_DIRECTION_LENGTH = 1e-12

CORNER_NAMES = ("top-left", "top-right", "bottom-left", "bottom-right")


def rotation_to_up(vector: np.ndarray) -> Rotation:
    """
    Minimal rotation taking the direction of vector onto (0, 0, 1).

    The axis is vector x up and the angle the angle between them. Returns
    identity for a zero vector or one already pointing up, and a half turn
    about the x axis for a vector pointing straight down.
    """
    vector = np.asarray(vector, dtype=np.float64)
    length = np.linalg.norm(vector)
    if not np.isfinite(length) or length < MIN_DIRECTION_LENGTH:
        return Rotation.identity()

    direction = vector / length
    axis = np.cross(direction, UP)
    sin_angle = np.linalg.norm(axis)
    cos_angle = float(np.dot(direction, UP))

    # Parallel or anti-parallel: the cross product gives no axis. Any axis
    # in the xy plane turns a downward vector up; x is used.
    if sin_angle < MIN_DIRECTION_LENGTH:
        if cos_angle > 0:
            return Rotation.identity()
        return Rotation.from_rotvec([np.pi, 0.0, 0.0])

    angle = np.arctan2(sin_angle, cos_angle)
    return Rotation.from_rotvec(axis / sin_angle * angle)


def tilt_degrees(vectors: np.ndarray) -> np.ndarray:
    """Angle in degrees between each row of vectors and (0, 0, 1)."""
    vectors = np.atleast_2d(vectors)
    lengths = np.linalg.norm(vectors, axis=1)
    cosines = np.clip(vectors[:, 2] / np.maximum(lengths, MIN_DIRECTION_LENGTH), -1.0, 1.0)
    return np.degrees(np.arccos(cosines))


def _normalize_rows(vectors: np.ndarray) -> np.ndarray:
    return vectors / np.linalg.norm(vectors, axis=1, keepdims=True)


# ---------------------------------------------------------------------------
# Orientation normalisation
# ---------------------------------------------------------------------------

def normalize_orientation(normals: np.ndarray, lights: np.ndarray
                          ) -> tuple[np.ndarray, np.ndarray, Rotation]:
    """
    Rotate normals and lights together so the mean normal faces the camera.

    Args:
        normals: (P, 3) unit normals.
        lights:  (N, 3) lights; their lengths are preserved.

    Returns:
        (rotated normals, rotated lights, the rotation applied).
    """
    rotation = rotation_to_up(normals.mean(axis=0))

    # Rotation.apply needs writable buffers, and snapshot arrays are
    # read-only, so rotate copies. The inputs stay untouched.
    rotated_normals = _normalize_rows(rotation.apply(np.array(normals)))
    rotated_lights = rotation.apply(np.array(lights))
    return rotated_normals, np.atleast_2d(rotated_lights), rotation


# ---------------------------------------------------------------------------
# Corner flattening
# ---------------------------------------------------------------------------

def corner_patch_size(width: int, height: int, fraction: float) -> int:
    """Side length in pixels of the square patch sampled at each corner."""
    return max(1, int(round(fraction * min(width, height))))


def corner_estimates(normals: np.ndarray, width: int, height: int,
                     fraction: float = 0.125) -> np.ndarray:
    """
    Average normal of each corner patch.

    Returns:
        (4, 3) unit vectors in CORNER_NAMES order. A patch whose normals
        cancel out reports (0, 0, 1).
    """
    size = corner_patch_size(width, height, fraction)
    grid = normals.reshape(height, width, 3)
    # Square size x size patches, in CORNER_NAMES order.
    patches = (
        grid[:size, :size],
        grid[:size, width - size:],
        grid[height - size:, :size],
        grid[height - size:, width - size:],
    )

    estimates = np.empty((4, 3), dtype=np.float64)
    for i, patch in enumerate(patches):
        mean = patch.reshape(-1, 3).mean(axis=0)
        length = np.linalg.norm(mean)
        estimates[i] = mean / length if length >= MIN_DIRECTION_LENGTH else UP
    return estimates


def _slerp_towards(start: Rotation, end: Rotation, t: np.ndarray) -> Rotation:
    """start * (start^-1 * end)^t, evaluated per element of t."""
    step = (start.inv() * end).as_rotvec()
    t = np.asarray(t, dtype=np.float64)
    # A single start/end pair fans out over every t; paired sequences of
    # rotations take one t each.
    if step.ndim == 1:
        return start * Rotation.from_rotvec(np.outer(t, step))
    return start * Rotation.from_rotvec(step * t[:, np.newaxis])


class CornerRotationBlend:
    """
    Per-pixel rotations blended from the four corner rotations.

    Built once per flattening pass; rotations_for() is then safe to call
    from several threads at once since it only reads the corner data.
    """

    def __init__(self, corner_rotations: Rotation, width: int, height: int,
                 mode: str = "slerp"):
        if mode not in ("slerp", "linear"):
            raise ValueError(f"Unknown rotation blend: {mode!r}")
        self.width = width
        self.height = height
        self.mode = mode
        self.fx = np.arange(width, dtype=np.float64) / width
        self.fy = np.arange(height, dtype=np.float64) / height

        if mode == "slerp":
            # The top and bottom edge rotations only depend on the column,
            # so precompute one row of each. Per-pixel work is then a single
            # slerp between the two along y.
            self._top = _slerp_towards(corner_rotations[0], corner_rotations[1], self.fx)
            self._bottom = _slerp_towards(corner_rotations[2], corner_rotations[3], self.fx)
        else:
            self._corner_rotvecs = corner_rotations.as_rotvec()

    def rotations_for(self, indices: np.ndarray) -> Rotation:
        """Rotations for the given flat pixel indices (row-major)."""
        rows, cols = np.divmod(indices, self.width)
        fy = self.fy[rows]

        if self.mode == "slerp":
            return _slerp_towards(self._top[cols], self._bottom[cols], fy)

        # Bilinear weights in TL, TR, BL, BR order, matching CORNER_NAMES
        # and the row order of the corner rotation vectors.
        fx = self.fx[cols]
        weights = np.stack([
            (1.0 - fx) * (1.0 - fy),
            fx * (1.0 - fy),
            (1.0 - fx) * fy,
            fx * fy,
        ], axis=1)
        return Rotation.from_rotvec(weights @ self._corner_rotvecs)


def flatten_corners(normals: np.ndarray, width: int, height: int,
                    corner_fraction: float = 0.125, blend: str = "slerp",
                    workers: int = 1, chunk_size: int = 65_536
                    ) -> tuple[np.ndarray, np.ndarray]:
    """
    Rotate every normal by the bilinear blend of the four corner corrections.

    Args:
        normals:         (P, 3) unit normals, row-major over a width x height grid.
        width, height:   Grid size.
        corner_fraction: Corner patch side as a fraction of min(width, height).
        blend:           "slerp" or "linear".
        workers:         parallel_for thread count.
        chunk_size:      Pixels per parallel_for chunk.

    Returns:
        (flattened unit normals, (4, 3) corner estimates measured before the pass).
    """
    # Measure each corner once, up front. Every chunk then reads the same
    # blender, whatever order the threads run in.
    estimates = corner_estimates(normals, width, height, corner_fraction)
    corner_rotations = Rotation.concatenate([rotation_to_up(e) for e in estimates])
    blender = CornerRotationBlend(corner_rotations, width, height, blend)

    flattened = np.empty(normals.shape, dtype=np.float64)

    def apply(chunk):
        indices = np.arange(chunk.start, chunk.stop)
        # Copy the slice: the normals may come from a read-only snapshot.
        rotated = blender.rotations_for(indices).apply(np.array(normals[chunk]))
        # Renormalise to keep unit length exact after the float rotation.
        flattened[chunk] = _normalize_rows(rotated)

    parallel_for(apply, normals.shape[0], workers, chunk_size)
    return flattened, estimates
