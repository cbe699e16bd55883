"""
Tunable parameters for a reconstruction run.

All knobs live on one frozen dataclass so the engine, the solvers and the
CLI agree on names and defaults. The module-level constants are the
defaults; the CLI only overrides what the user passes on the command line.

Defaults:
    iterations       8 alternating light/normal solves (see ITERATION_PRESETS
                     in pipeline.py for the named presets)
    dome_strength    0.5, the tilt of the seed dome at half the larger image
                     dimension away from the centre (a 26.6 degree tilt)
    corner_fraction  1/8 of the smaller image dimension per corner patch
    light_magnitude  "retain" keeps each light's least squares length, which
                     absorbs light intensity and mean albedo; "unit" rescales
                     every light to length one after each solve
"""

import os
from dataclasses import dataclass


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_ITERATIONS = 8

DEFAULT_DOME_STRENGTH = 0.5

DEFAULT_CORNER_FRACTION = 0.125

# Singular values below RCOND * largest singular value are treated as zero
# when building pseudo-inverses.
DEFAULT_RCOND = 1e-8

# Pixels per parallel-for chunk. Large enough that numpy kernels dominate
# the thread pool overhead.
DEFAULT_CHUNK_SIZE = 65_536

LIGHT_MAGNITUDE_MODES = ("retain", "unit")
BLEND_MODES = ("slerp", "linear")
INPUT_COLORSPACES = ("linear", "srgb")
NORMAL_CONVENTIONS = ("opengl", "directx")


def default_workers() -> int:
    """Number of parallel-for workers when the user does not pick one."""
    return os.cpu_count() or 1


@dataclass(frozen=True)
class ReconstructionSettings:
    """
    Every parameter of a single reconstruction run.

    Validation happens in __post_init__ so an invalid combination fails
    before any image is decoded.
    """
    iterations: int = DEFAULT_ITERATIONS
    dome_strength: float = DEFAULT_DOME_STRENGTH
    corner_fraction: float = DEFAULT_CORNER_FRACTION
    rotation_blend: str = "slerp"
    flatten_passes: int = 1
    light_magnitude: str = "retain"
    reorient_each_iteration: bool = True
    input_colorspace: str = "linear"
    balance_brightness: bool = False
    normal_convention: str = "opengl"
    workers: int | None = None
    chunk_size: int = DEFAULT_CHUNK_SIZE
    rcond: float = DEFAULT_RCOND

    def __post_init__(self):
        if self.iterations < 1:
            raise ValueError(f"iterations must be at least 1, got {self.iterations}")
        if self.dome_strength <= 0:
            raise ValueError(f"dome_strength must be positive, got {self.dome_strength}")
        if not 0 < self.corner_fraction <= 0.5:
            raise ValueError(
                f"corner_fraction must be in (0, 0.5], got {self.corner_fraction}"
            )
        if self.flatten_passes < 0:
            raise ValueError(f"flatten_passes cannot be negative, got {self.flatten_passes}")
        if self.rotation_blend not in BLEND_MODES:
            raise ValueError(f"Unknown rotation blend: {self.rotation_blend!r}")
        if self.light_magnitude not in LIGHT_MAGNITUDE_MODES:
            raise ValueError(f"Unknown light magnitude mode: {self.light_magnitude!r}")
        if self.input_colorspace not in INPUT_COLORSPACES:
            raise ValueError(f"Unknown input colorspace: {self.input_colorspace!r}")
        if self.normal_convention not in NORMAL_CONVENTIONS:
            raise ValueError(f"Unknown normal convention: {self.normal_convention!r}")
        if self.workers is not None and self.workers < 1:
            raise ValueError(f"workers must be at least 1, got {self.workers}")
        if self.chunk_size < 1:
            raise ValueError(f"chunk_size must be at least 1, got {self.chunk_size}")
        if not 0 < self.rcond < 1:
            raise ValueError(f"rcond must be in (0, 1), got {self.rcond}")

    @property
    def resolved_workers(self) -> int:
        return self.workers if self.workers is not None else default_workers()
