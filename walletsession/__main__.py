"""Run the walletsession CLI with ``python -m walletsession``."""

import sys

from .cli import main


if __name__ == "__main__":
    sys.exit(main())
