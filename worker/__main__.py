"""Worker process entrypoint: ``python -m worker < input.json``."""

import sys

from worker.runner import main

if __name__ == "__main__":
    sys.exit(main())
