from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:  # pragma: no cover - path setup
    sys.path.insert(0, str(PROJECT_ROOT))

from tgrelay.tests.fakes import FakeConnectionFactory


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def fake_factory() -> FakeConnectionFactory:
    return FakeConnectionFactory()
