from __future__ import annotations

import pytest

from support import ManualClock, ScriptedAI


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def ai() -> ScriptedAI:
    return ScriptedAI()
