"""
Error kinds raised by the ShadeMap pipeline.

Every error the pipeline knows about derives from ShadeMapError so the CLI
can catch one type and turn it into a process exit status. Each subclass
carries its own exit_code, which lets scripts that wrap the CLI tell a bad
input set apart from a failed write without parsing stderr.

Boundary errors (InsufficientImages, ResolutionMismatch, DecodeFailure,
WriteFailure) abort the run. SingularSystemError is raised by the least
squares helpers and caught inside the solvers, which keep the previous
value for the affected image or pixel and keep going.
"""


class ShadeMapError(Exception):
    """
    Base class for all pipeline failures with a known cause.

    The runner catches this and forwards the message to the CLI, which
    prints it and exits with exit_code.
    """
    exit_code = 1


class InsufficientImagesError(ShadeMapError):
    """Fewer than three input images were supplied."""
    exit_code = 3


class ResolutionMismatchError(ShadeMapError):
    """An input image does not match the first image's width and height."""
    exit_code = 4


class DecodeFailureError(ShadeMapError):
    """An input image is missing or could not be decoded."""
    exit_code = 5


class SingularSystemError(ShadeMapError):
    """A least squares system carries no usable information (rank 0)."""
    exit_code = 1


class WriteFailureError(ShadeMapError):
    """The output normal map could not be written."""
    exit_code = 6
