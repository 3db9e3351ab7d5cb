from __future__ import annotations

import sys
import textwrap
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
for entry in (ROOT, ROOT / "src"):
    if str(entry) not in sys.path:
        sys.path.insert(0, str(entry))


import pytest

from clem.indentation import IndentConfig


@pytest.fixture
def indent() -> IndentConfig:
    return IndentConfig()


@pytest.fixture
def source():
    def _source(text: str) -> str:
        return textwrap.dedent(text).lstrip("\n")

    return _source
