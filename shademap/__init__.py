"""
ShadeMap: normal maps from photos lit from different directions.

This is the top-level package. ShadeMap takes three or more aligned photos
of a static object, each lit from a different unknown direction, and
reconstructs a per-pixel surface normal map (photometric stereo) for use
in game and asset pipelines.

The version string below is shown by the CLI's --version flag and is kept
in step with the version in pyproject.toml.
"""

__version__ = "0.1.0"
