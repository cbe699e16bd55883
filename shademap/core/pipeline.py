"""
Normal map reconstruction pipeline: stage definitions.

This module defines the discrete stages of a reconstruction run. Each stage
is a distinct, reported step that the CLI shows while the run progresses.

The pipeline follows the photometric stereo sequence:
    1. Ingest: decode the input images into per-pixel intensity samples and
       check the image count and resolutions.
    2. Seed Normals: build the dome-shaped starting normal field.
    3. Convergence: alternate light and normal least squares solves for a
       fixed number of iterations.
    4. Orientation: rotate normals and lights together so the mean normal
       faces the camera.
    5. Corner Flattening: remove the convex bias of the directional light
       model using the flat-corner assumption.
    6. Encode: quantise the normals and write the output image.

The stage constants defined here are used by the engine and the runner to
dispatch, report progress and label errors consistently.
"""


class PipelineStage:
    """
    String constants identifying each pipeline stage.

    A plain class of constants compares directly against strings without
    .value access.
    """
    INGEST = "ingest"
    SEED = "seed_normals"
    CONVERGE = "convergence"
    ORIENT = "orientation"
    FLATTEN = "corner_flattening"
    ENCODE = "encode"


# Ordered list of stages, the sequence the runner executes.
STAGE_ORDER = [
    PipelineStage.INGEST,
    PipelineStage.SEED,
    PipelineStage.CONVERGE,
    PipelineStage.ORIENT,
    PipelineStage.FLATTEN,
    PipelineStage.ENCODE,
]

# Human-readable names printed in front of progress lines.
STAGE_DISPLAY_NAMES = {
    PipelineStage.INGEST: "Importing Images",
    PipelineStage.SEED: "Seeding Normals",
    PipelineStage.CONVERGE: "Estimating Lights and Normals",
    PipelineStage.ORIENT: "Normalizing Orientation",
    PipelineStage.FLATTEN: "Flattening Corners",
    PipelineStage.ENCODE: "Writing Normal Map",
}

# Iteration presets for the convergence stage. Each alternation tightens
# the estimate by a roughly constant factor, so the presets trade run time
# against how far the estimate settles:
#   draft     4 iterations: quick previews.
#   standard  8 iterations: the default.
#   thorough 16 iterations: strongly curved subjects, large images.
ITERATION_PRESETS = {
    "draft": 4,
    "standard": 8,
    "thorough": 16,
}

DEFAULT_PRESET = "standard"

# Output formats the encoder writes without loss.
OUTPUT_FORMATS = {
    "PNG (.png)": ".png",
    "TIFF (.tif)": ".tif",
    "BMP (.bmp)": ".bmp",
}

DEFAULT_OUTPUT_NAME = "normal_map.png"
