from __future__ import annotations

from collections.abc import Callable

import pytest

from helpers import FIXTURES


@pytest.fixture
def fixture_bytes() -> Callable[[str], bytes]:
    def load(name: str) -> bytes:
        return (FIXTURES / name).read_bytes()

    return load
