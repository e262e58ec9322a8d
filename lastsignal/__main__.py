"""Allow `python -m lastsignal`."""

import sys

from lastsignal.orchestrator.cli import main


if __name__ == "__main__":
    sys.exit(main())
