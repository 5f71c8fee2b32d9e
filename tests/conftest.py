import sys
from copy import deepcopy
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dvo_catalog import compile_catalog, load_catalog, load_raw_datasets

_RAW = load_raw_datasets()


@pytest.fixture(scope="session")
def catalog():
    """Catalog compiled from the shipped data/ directory."""
    return load_catalog()


@pytest.fixture
def raw_datasets():
    """Mutable copy of the shipped raw datasets; pass through compile_catalog(**raw)."""
    return deepcopy(_RAW)


@pytest.fixture
def build_catalog():
    return lambda raw: compile_catalog(**raw)
