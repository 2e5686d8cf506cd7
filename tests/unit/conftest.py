"""Conftest for unit tests - every test collected under tests/unit gets the unit marker."""

from pathlib import Path

import pytest


UNIT_DIR = Path(__file__).parent


def pytest_collection_modifyitems(config, items):
    for item in items:
        if UNIT_DIR in Path(str(item.fspath)).parents:
            item.add_marker(pytest.mark.unit)
