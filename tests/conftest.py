import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from genloop.config import load_settings  # noqa: E402


@pytest.fixture
def settings():
    return load_settings({})
