"""``python -m luogu_painter`` runs the paint CLI."""

import sys

from luogu_painter.scripts.paint import main

sys.exit(main())
