"""Allow ``python -m vmtemplate``."""

import sys

from vmtemplate import cli

sys.exit(cli.main())
