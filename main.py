"""Entry point for the canvass command-line interface."""

import sys

from canvass.presentation.cli import main

if __name__ == "__main__":
    sys.exit(main())
