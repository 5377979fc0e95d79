"""Tests package"""

# Let ``python tests/test_*.py`` import the project modules even when the
# repository root is not on ``sys.path`` (pytest adds it when run from the root).
from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
