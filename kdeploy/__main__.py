"""Allow ``python -m kdeploy``."""

import sys

from kdeploy.cli import main

if __name__ == "__main__":
    sys.exit(main())
