import sys
from pathlib import Path

import numpy as np
import pytest


def pytest_configure() -> None:
    """Make `src/` importable in tests without requiring installation."""
    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"
    sys.path.insert(0, str(src_dir))


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(42)


@pytest.fixture
def cpu_backend():
    from tensorplan.backend import CPUBackend

    return CPUBackend()


@pytest.fixture
def threaded_backend():
    from tensorplan.backend import ThreadedBackend

    with ThreadedBackend(max_workers=4) as backend:
        yield backend
