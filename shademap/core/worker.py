"""
Pipeline runner for ShadeMap.

This module drives a PhotometricEngine through every stage in STAGE_ORDER
for one set of input images, reporting progress through plain callbacks so
the CLI (or any other front end) decides how to present it:

    on_stage_started(stage)          before a stage runs
    on_stage_completed(stage)        after it returns normally
    on_progress(stage, message)      status lines from inside a stage
    on_error(stage, message)         when a stage raises ShadeMapError

On error the runner stops at the failing stage, calls on_error, and
re-raises so the caller can map the error kind to an exit status. Stages
after the failing one never run, so a failed ingest never writes output.
"""

from pathlib import Path
from typing import Callable

from shademap.core.engine import PhotometricEngine, RunState
from shademap.core.errors import ShadeMapError
from shademap.core.pipeline import STAGE_ORDER, PipelineStage


def _noop(*args) -> None:
    pass


class PipelineRunner:
    """
    Runs the full reconstruction pipeline for one set of images.

    The engine is injected rather than created here, so callers choose
    the settings and tests can pass a configured engine directly.
    """

    def __init__(self, engine: PhotometricEngine, image_paths: list[str],
                 output_path,
                 on_stage_started: Callable[[str], None] = _noop,
                 on_stage_completed: Callable[[str], None] = _noop,
                 on_progress: Callable[[str, str], None] = _noop,
                 on_error: Callable[[str, str], None] = _noop):
        self._engine = engine
        self._state = RunState(image_paths=list(image_paths), output_path=Path(output_path))
        self._on_stage_started = on_stage_started
        self._on_stage_completed = on_stage_completed
        self._on_progress = on_progress
        self._on_error = on_error

    @property
    def state(self) -> RunState:
        return self._state

    def run(self) -> RunState:
        """
        Execute each pipeline stage in sequence.

        Returns:
            The final RunState (written_path holds the output file).

        Raises:
            ShadeMapError: The first stage failure, after on_error was called.
        """
        stage_methods = {
            PipelineStage.INGEST: self._engine.ingest,
            PipelineStage.SEED: self._engine.seed,
            PipelineStage.CONVERGE: self._engine.converge,
            PipelineStage.ORIENT: self._engine.orient,
            PipelineStage.FLATTEN: self._engine.flatten,
            PipelineStage.ENCODE: self._engine.encode,
        }

        for stage in STAGE_ORDER:
            self._on_stage_started(stage)
            try:
                stage_methods[stage](self._state, self._make_progress_callback(stage))
            except ShadeMapError as e:
                self._on_error(stage, str(e))
                raise
            self._on_stage_completed(stage)

        return self._state

    def _make_progress_callback(self, stage: str):
        """Bind the stage name so engine methods report without knowing it."""
        def callback(message: str):
            self._on_progress(stage, message)
        return callback
