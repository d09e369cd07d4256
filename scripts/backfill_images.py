"""
Backfill legacy weapon/perk image URLs into storage.

Equivalent to the ``backfill-images`` console script, runnable from a
checkout without installing the package.
"""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tibiavote.backfill import main


if __name__ == "__main__":
    sys.exit(main())
