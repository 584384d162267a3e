"""Shared fixtures for the test suite."""

import pytest

from helpers import make_plan


@pytest.fixture
def plan():
    return make_plan()
