"""
Alternating light / normal estimation.

One iteration:
    1. Fit every image's light to the current normal field.
    2. Fit every pixel's normal to the new lights.
    3. Optionally rotate normals and lights together so the mean normal
       faces the camera.

The loop owns a single Snapshot (normals + lights). Each iteration reads
the current snapshot, which is never written to, builds new arrays, and
swaps in a new Snapshot at the end. The iteration count is fixed; there is
no residual-based early exit.
"""

from dataclasses import dataclass, field
from typing import Callable

import numpy as np

from shademap.core.orientation import normalize_orientation
from shademap.core.settings import ReconstructionSettings
from shademap.core.solvers import (
    SolveStats,
    lambertian_residual,
    solve_light_directions,
    solve_normal_field,
)


@dataclass(frozen=True)
class Snapshot:
    """Normals and lights of one iteration. The arrays are made read-only."""
    normals: np.ndarray
    lights: np.ndarray

    def __post_init__(self):
        for array in (self.normals, self.lights):
            array.setflags(write=False)


@dataclass
class ConvergenceResult:
    snapshot: Snapshot
    stats: SolveStats = field(default_factory=SolveStats)
    residuals: list[float] = field(default_factory=list)


def iterate_once(snapshot: Snapshot, intensities: np.ndarray,
                 settings: ReconstructionSettings, stats: SolveStats) -> Snapshot:
    """Run one light solve, one normal solve and the optional reorientation."""
    workers = settings.resolved_workers

    lights = solve_light_directions(
        snapshot.normals, intensities, snapshot.lights,
        light_magnitude=settings.light_magnitude,
        rcond=settings.rcond, workers=workers, stats=stats,
    )
    normals = solve_normal_field(
        lights, intensities, snapshot.normals,
        rcond=settings.rcond, workers=workers,
        chunk_size=settings.chunk_size, stats=stats,
    )
    if settings.reorient_each_iteration:
        normals, lights, _ = normalize_orientation(normals, lights)

    return Snapshot(normals=normals, lights=lights)


def converge(intensities: np.ndarray, initial: Snapshot,
             settings: ReconstructionSettings,
             on_progress: Callable[[str], None] | None = None) -> ConvergenceResult:
    """
    Alternate the two solvers for settings.iterations rounds.

    Args:
        intensities: (P, N) samples.
        initial:     Seed snapshot (dome normals and placeholder lights).
        settings:    Run settings.
        on_progress: Receives one status line per iteration.

    Returns:
        ConvergenceResult with the final snapshot, solve tallies and the
        RMS residual after every iteration.
    """
    result = ConvergenceResult(snapshot=initial)

    # Each pass swaps in a fresh snapshot; the previous one is only read.
    for iteration in range(1, settings.iterations + 1):
        result.snapshot = iterate_once(result.snapshot, intensities, settings, result.stats)

        residual = lambertian_residual(
            result.snapshot.normals, result.snapshot.lights, intensities
        )
        result.residuals.append(residual)
        if on_progress:
            on_progress(
                f"Iteration {iteration}/{settings.iterations}: "
                f"RMS residual {residual:.5f}"
            )

    return result
