"""Allow ``python -m modnss``."""

import sys

from modnss.cli import main

sys.exit(main())
