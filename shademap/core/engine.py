"""
Photometric stereo engine.

The engine exposes one method per pipeline stage (see pipeline.py). Every
stage method receives the shared RunState and a progress callback it can
call with a status message string:

    ingest   image_paths  -> state.store
    seed     state.store  -> state.snapshot (dome normals, placeholder lights)
    converge              -> state.snapshot, state.stats, state.residuals
    orient                -> state.snapshot rotated so the mean normal is up
    flatten               -> state.snapshot with the corner bias removed
    encode                -> state.written_path

Contract:
    - Returning normally means the stage succeeded.
    - Raising a ShadeMapError subclass means the stage failed with a known
      cause; the runner reports it and stops.

reconstruct() chains seed..flatten on an already loaded store without any
file I/O, which is what library callers and tests use.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import numpy as np
from scipy.spatial.transform import Rotation

from shademap.core.convergence import Snapshot, converge as run_convergence
from shademap.core.encoder import write_normal_map
from shademap.core.orientation import (
    CORNER_NAMES,
    corner_patch_size,
    flatten_corners,
    normalize_orientation,
    tilt_degrees,
)
from shademap.core.samples import ImageSampleStore
from shademap.core.settings import ReconstructionSettings
from shademap.core.solvers import SolveStats, initial_light_set, initial_normal_field


ProgressCallback = Callable[[str], None]


def _ignore_progress(message: str) -> None:
    pass


@dataclass
class RunState:
    """
    Everything one run produces, handed from stage to stage.

    The engine replaces state.snapshot wholesale at each stage; snapshot
    arrays are read-only and never modified in place.
    """
    image_paths: list[str] = field(default_factory=list)
    output_path: Path | None = None
    store: ImageSampleStore | None = None
    snapshot: Snapshot | None = None
    stats: SolveStats = field(default_factory=SolveStats)
    residuals: list[float] = field(default_factory=list)
    orientation: Rotation | None = None
    corner_estimates: np.ndarray | None = None
    written_path: Path | None = None


@dataclass
class ReconstructionResult:
    """Final normal field and lights of a run."""
    normals: np.ndarray
    lights: np.ndarray
    width: int
    height: int
    stats: SolveStats
    residuals: list[float]
    corner_estimates: np.ndarray | None = None

    @property
    def light_directions(self) -> np.ndarray:
        """Lights rescaled to unit length."""
        return self.lights / np.linalg.norm(self.lights, axis=1, keepdims=True)


class PhotometricEngine:
    """Runs the photometric stereo stages with one set of settings."""

    def __init__(self, settings: ReconstructionSettings | None = None):
        self.settings = settings or ReconstructionSettings()

    # -- stages -------------------------------------------------------------

    def ingest(self, state: RunState, on_progress: ProgressCallback) -> None:
        """Decode and validate the input images."""
        on_progress(f"Reading {len(state.image_paths)} images...")
        store = ImageSampleStore.from_files(
            state.image_paths,
            colorspace=self.settings.input_colorspace,
            on_progress=on_progress,
        )
        if self.settings.balance_brightness:
            store = store.balanced()
            on_progress("Balanced mean brightness across images")
        state.store = store
        on_progress(
            f"Imported {store.image_count} images at {store.width}x{store.height}"
        )

    def seed(self, state: RunState, on_progress: ProgressCallback) -> None:
        """Build the dome seed normals and placeholder lights."""
        store = state.store
        normals = initial_normal_field(
            store.width, store.height, self.settings.dome_strength
        )
        state.snapshot = Snapshot(normals=normals,
                                  lights=initial_light_set(store.image_count))
        on_progress(f"Seeded {store.pixel_count:,} normals "
                    f"(dome strength {self.settings.dome_strength:g})")

    def converge(self, state: RunState, on_progress: ProgressCallback) -> None:
        """Alternate light and normal solves for the configured iteration count."""
        result = run_convergence(state.store.intensities, state.snapshot,
                                 self.settings, on_progress)
        state.snapshot = result.snapshot
        state.stats = result.stats
        state.residuals = result.residuals

        # Report each recovered light against the image it came from.
        lights = result.snapshot.lights
        tilts = tilt_degrees(lights)
        for name, light, tilt in zip(state.store.names, lights, tilts):
            on_progress(
                f"Estimated light for {name}: "
                f"({light[0]:+.3f}, {light[1]:+.3f}, {light[2]:+.3f}), tilt {tilt:.1f} deg"
            )
        if result.stats.total_fallbacks or result.stats.rank_deficient_light_solves \
                or result.stats.rank_deficient_normal_solves:
            on_progress(f"Degenerate solves: {result.stats.summary()}")

    def orient(self, state: RunState, on_progress: ProgressCallback) -> None:
        """Rotate the whole solution so the mean normal faces the camera."""
        normals, lights, rotation = normalize_orientation(
            state.snapshot.normals, state.snapshot.lights
        )
        state.snapshot = Snapshot(normals=normals, lights=lights)
        state.orientation = rotation
        on_progress(f"Rotated solution by {np.degrees(rotation.magnitude()):.3f} deg")

    def flatten(self, state: RunState, on_progress: ProgressCallback) -> None:
        """Remove the convex bias using the flat-corner assumption."""
        passes = self.settings.flatten_passes
        if passes == 0:
            on_progress("Corner flattening disabled")
            return

        store = state.store
        patch = corner_patch_size(store.width, store.height, self.settings.corner_fraction)
        on_progress(f"Sampling {patch}x{patch} pixel corner patches")

        normals = state.snapshot.normals
        lights = state.snapshot.lights
        # Each extra pass starts from a re-centred solution, so later passes
        # only see whatever corner tilt the previous one left behind.
        for pass_index in range(passes):
            if pass_index > 0:
                normals, lights, _ = normalize_orientation(normals, lights)
            normals, estimates = flatten_corners(
                normals, store.width, store.height,
                corner_fraction=self.settings.corner_fraction,
                blend=self.settings.rotation_blend,
                workers=self.settings.resolved_workers,
                chunk_size=self.settings.chunk_size,
            )
            # Keep the first measurement: it is the bias that was removed.
            if pass_index == 0:
                state.corner_estimates = estimates
            tilts = ", ".join(
                f"{name} {tilt:.2f}" for name, tilt in zip(CORNER_NAMES, tilt_degrees(estimates))
            )
            on_progress(f"Pass {pass_index + 1}/{passes} corner tilts (deg): {tilts}")

        state.snapshot = Snapshot(normals=normals, lights=lights)

    def encode(self, state: RunState, on_progress: ProgressCallback) -> None:
        """Write the normal map to state.output_path."""
        store = state.store
        grid = state.snapshot.normals.reshape(store.height, store.width, 3)
        state.written_path = write_normal_map(
            grid, state.output_path, self.settings.normal_convention
        )
        on_progress(f"Saved {state.written_path} ({self.settings.normal_convention})")

    # -- library entry point ------------------------------------------------

    def reconstruct(self, store: ImageSampleStore,
                    on_progress: ProgressCallback | None = None) -> ReconstructionResult:
        """
        Run every in-memory stage (seed through flatten) on a loaded store.

        Brightness balancing from the settings is applied here as well, so
        the result matches a file-based run on the same data.
        """
        on_progress = on_progress or _ignore_progress
        if self.settings.balance_brightness:
            store = store.balanced()

        state = RunState(store=store)
        for stage in (self.seed, self.converge, self.orient, self.flatten):
            stage(state, on_progress)
        return self._result(state)

    @staticmethod
    def _result(state: RunState) -> ReconstructionResult:
        store = state.store
        return ReconstructionResult(
            normals=state.snapshot.normals.reshape(store.height, store.width, 3),
            lights=np.array(state.snapshot.lights),
            width=store.width,
            height=store.height,
            stats=state.stats,
            residuals=list(state.residuals),
            corner_estimates=state.corner_estimates,
        )
