"""Allow ``python -m winvm``."""

import sys

from winvm import cli

if __name__ == "__main__":
    sys.exit(cli.main())
