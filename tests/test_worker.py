import numpy as np
import pytest

from shademap.core.engine import PhotometricEngine
from shademap.core.errors import ResolutionMismatchError, WriteFailureError
from shademap.core.pipeline import STAGE_ORDER, PipelineStage
from shademap.core.settings import ReconstructionSettings
from shademap.core.worker import PipelineRunner


@pytest.fixture
def engine():
    return PhotometricEngine(ReconstructionSettings(iterations=2, workers=1))


@pytest.fixture
def images(write_gray):
    return [write_gray(f"{i}.png", np.full((6, 8), value))
            for i, value in enumerate((0.9, 0.7, 0.5))]


class Recorder:
    """Collects every runner callback as (event, stage[, message]) tuples."""

    def __init__(self):
        self.events = []

    def callbacks(self):
        return {
            "on_stage_started": lambda stage: self.events.append(("started", stage)),
            "on_stage_completed": lambda stage: self.events.append(("completed", stage)),
            "on_progress": lambda stage, msg: self.events.append(("progress", stage, msg)),
            "on_error": lambda stage, msg: self.events.append(("error", stage, msg)),
        }

    def of(self, kind):
        return [event[1] for event in self.events if event[0] == kind]


def test_runner_reports_every_stage_in_order(engine, images, tmp_path):
    recorder = Recorder()
    output = tmp_path / "normals.png"
    runner = PipelineRunner(engine, images, output, **recorder.callbacks())

    state = runner.run()

    assert recorder.of("started") == STAGE_ORDER
    assert recorder.of("completed") == STAGE_ORDER
    assert recorder.of("error") == []
    assert state is runner.state
    assert state.written_path == output
    assert output.exists()


def test_progress_is_tagged_with_its_stage(engine, images, tmp_path):
    recorder = Recorder()
    PipelineRunner(engine, images, tmp_path / "n.png", **recorder.callbacks()).run()

    progress = [e for e in recorder.events if e[0] == "progress"]
    assert {stage for _, stage, _ in progress} == set(STAGE_ORDER)
    assert any(msg.startswith("Iteration 2/2")
               for _, stage, msg in progress if stage == PipelineStage.CONVERGE)


def test_failed_stage_stops_the_run(engine, write_gray, tmp_path):
    recorder = Recorder()
    images = [
        write_gray("a.png", np.zeros((4, 4))),
        write_gray("b.png", np.zeros((4, 4))),
        write_gray("c.png", np.zeros((4, 6))),
    ]
    runner = PipelineRunner(engine, images, tmp_path / "n.png", **recorder.callbacks())

    with pytest.raises(ResolutionMismatchError):
        runner.run()

    assert recorder.of("started") == [PipelineStage.INGEST]
    assert recorder.of("completed") == []
    assert recorder.of("error") == [PipelineStage.INGEST]
    assert runner.state.store is None


def test_state_keeps_results_of_completed_stages(engine, images, tmp_path):
    output = tmp_path / "missing" / "n.png"
    runner = PipelineRunner(engine, images, output)

    with pytest.raises(WriteFailureError):
        runner.run()

    assert runner.state.store.image_count == 3
    assert runner.state.snapshot.normals.shape == (6 * 8, 3)
    assert len(runner.state.residuals) == 2
    assert runner.state.written_path is None
    assert not output.exists()
