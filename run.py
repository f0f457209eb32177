"""Run the program manager service."""

import sys

from program_manager.__main__ import main

if __name__ == "__main__":
    sys.exit(main())
