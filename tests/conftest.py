from __future__ import annotations

import sys
from pathlib import Path

import pytest
from loguru import logger

# Import the local src tree, not an older installed wheel.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))


@pytest.fixture(autouse=True)
def _quiet_logs():
    """Drop loguru's default stderr sink so test output stays readable."""
    logger.remove()
    yield
    logger.remove()
