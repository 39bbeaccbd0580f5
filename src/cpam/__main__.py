"""Entry point for ``python -m cpam``."""

import sys

from cpam.cli import main

sys.exit(main())
