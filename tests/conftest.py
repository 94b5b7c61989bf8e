"""
conftest.py
~~~~~~~~~~~

Shared fixtures for the digitnet test suite.
"""

import os
import sys

import numpy as np
import pytest

# Make the package importable without installing it
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))


@pytest.fixture
def rng():
    """Seeded generator so weight initialization is repeatable."""
    return np.random.default_rng(1234)


@pytest.fixture
def temp_db_dir(tmp_path):
    """Create a temporary directory for database storage."""
    db_dir = tmp_path / "test_models"
    db_dir.mkdir()
    return str(db_dir)
