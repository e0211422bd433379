"""Module entrypoint: ``python -m consoleboot``."""

import sys

from consoleboot import cli

if __name__ == "__main__":
    sys.exit(cli.main())
