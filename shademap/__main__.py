"""
Entry point for running ShadeMap as a module:
    python -m shademap IMAGE IMAGE IMAGE [...]

sys.exit hands the CLI's status to the OS so wrapping scripts can tell
the error kinds apart.
"""

import sys

from shademap.cli import main


if __name__ == "__main__":
    sys.exit(main())
