"""
Command-line front end for ShadeMap.

This is the orchestration hub for a run:
    1. Parse the image list and options into ReconstructionSettings
    2. Create the engine and a PipelineRunner for the images
    3. Print stage progress as the runner reports it
    4. Map a failed stage to its exit status

Usage:
    shademap front.png left.png right.png top.png -o normal_map.png

Progress goes to stdout as "[Stage Name] message" lines; errors go to
stderr. A run that fails at any stage exits nonzero without writing the
output file.
"""

import argparse
import sys
import time
from pathlib import Path

from shademap import __version__
from shademap.core.engine import PhotometricEngine
from shademap.core.errors import ShadeMapError
from shademap.core.pipeline import (
    DEFAULT_OUTPUT_NAME,
    DEFAULT_PRESET,
    ITERATION_PRESETS,
    OUTPUT_FORMATS,
    STAGE_DISPLAY_NAMES,
)
from shademap.core.settings import (
    BLEND_MODES,
    DEFAULT_CORNER_FRACTION,
    DEFAULT_DOME_STRENGTH,
    INPUT_COLORSPACES,
    LIGHT_MAGNITUDE_MODES,
    NORMAL_CONVENTIONS,
    ReconstructionSettings,
)
from shademap.core.worker import PipelineRunner


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shademap",
        description="Reconstruct a normal map from three or more photos of the "
                    "same object lit from different directions.",
    )
    parser.add_argument("images", nargs="+", metavar="IMAGE",
                        help="aligned input images of identical resolution (3 or more)")
    parser.add_argument("-o", "--output", default=DEFAULT_OUTPUT_NAME,
                        help=f"output image path (default: {DEFAULT_OUTPUT_NAME})")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    # Estimation
    parser.add_argument("--preset", choices=sorted(ITERATION_PRESETS), default=DEFAULT_PRESET,
                        help="iteration preset (default: %(default)s)")
    parser.add_argument("-k", "--iterations", type=int,
                        help="alternating solve iterations, overrides --preset")
    parser.add_argument("--dome-strength", type=float, default=DEFAULT_DOME_STRENGTH,
                        help="slope of the seed dome (default: %(default)s)")
    parser.add_argument("--light-magnitude", choices=LIGHT_MAGNITUDE_MODES, default="retain",
                        help="keep or renormalise light lengths between iterations")
    parser.add_argument("--no-reorient-each-iteration", dest="reorient_each_iteration",
                        action="store_false",
                        help="only normalise orientation once, after convergence")

    # Flattening
    parser.add_argument("--corner-fraction", type=float, default=DEFAULT_CORNER_FRACTION,
                        help="corner patch size as a fraction of the shorter side "
                             "(default: %(default)s)")
    parser.add_argument("--blend", choices=BLEND_MODES, default="slerp",
                        help="corner rotation blending (default: %(default)s)")
    parser.add_argument("--flatten-passes", type=int, default=1,
                        help="corner flattening passes, 0 disables (default: %(default)s)")

    # Input and output
    parser.add_argument("--input-colorspace", choices=INPUT_COLORSPACES, default="linear",
                        help="transfer curve of the input pixel values (default: %(default)s)")
    parser.add_argument("--balance-brightness", action="store_true",
                        help="equalise mean brightness across the input images")
    parser.add_argument("--convention", choices=NORMAL_CONVENTIONS, default="opengl",
                        help="green channel orientation (default: %(default)s)")

    parser.add_argument("--workers", type=int,
                        help="threads for per-pixel work (default: CPU count)")
    parser.add_argument("-q", "--quiet", action="store_true", help="only print errors")
    return parser


def settings_from_args(args: argparse.Namespace) -> ReconstructionSettings:
    """Translate parsed arguments into validated settings (ValueError if invalid)."""
    iterations = args.iterations if args.iterations is not None else ITERATION_PRESETS[args.preset]
    return ReconstructionSettings(
        iterations=iterations,
        dome_strength=args.dome_strength,
        corner_fraction=args.corner_fraction,
        rotation_blend=args.blend,
        flatten_passes=args.flatten_passes,
        light_magnitude=args.light_magnitude,
        reorient_each_iteration=args.reorient_each_iteration,
        input_colorspace=args.input_colorspace,
        balance_brightness=args.balance_brightness,
        normal_convention=args.convention,
        workers=args.workers,
    )


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = settings_from_args(args)
    except ValueError as e:
        parser.error(str(e))

    output = Path(args.output)
    # No extension is written as PNG by the encoder, so only warn about
    # explicit extensions outside the lossless set.
    if output.suffix and output.suffix.lower() not in OUTPUT_FORMATS.values():
        print(f"Warning: {output.suffix} is not a lossless normal map "
              f"format, expected one of {', '.join(OUTPUT_FORMATS.values())}",
              file=sys.stderr)

    # Stage start times, keyed by stage, for the per-stage timing line.
    started_at = {}

    def on_stage_started(stage: str):
        started_at[stage] = time.perf_counter()

    def on_stage_completed(stage: str):
        if not args.quiet:
            elapsed = time.perf_counter() - started_at[stage]
            print(f"[{STAGE_DISPLAY_NAMES[stage]}] Done in {elapsed:.2f}s")

    def on_progress(stage: str, message: str):
        if not args.quiet:
            print(f"[{STAGE_DISPLAY_NAMES[stage]}] {message}")

    def on_error(stage: str, message: str):
        print(f"Error during {STAGE_DISPLAY_NAMES[stage]}: {message}", file=sys.stderr)

    runner = PipelineRunner(
        PhotometricEngine(settings), args.images, output,
        on_stage_started=on_stage_started,
        on_stage_completed=on_stage_completed,
        on_progress=on_progress,
        on_error=on_error,
    )

    try:
        state = runner.run()
    except ShadeMapError as e:
        return e.exit_code

    if not args.quiet:
        print(f"Normal map written to {state.written_path}")
    return 0
