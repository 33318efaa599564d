"""Pytest configuration to isolate tests from any real SOP engine database.

Sets SOP_ENGINE_DB environment variable BEFORE importing the application module so
all web test connections use a separate SQLite file.
"""

import os
import tempfile
from pathlib import Path

import pytest

# Use a per-session database file outside the workspace
TEST_DB_PATH = Path(tempfile.mkdtemp(prefix="sop_engine_tests_")) / "sop_engine_tests.db"
# Only set if not already overridden externally
os.environ.setdefault("SOP_ENGINE_DB", str(TEST_DB_PATH))

# (App module will be imported by test modules afterwards and will pick this path.)


@pytest.fixture
def store(tmp_path):
    from sop_engine.store import SQLiteStore

    return SQLiteStore(str(tmp_path / "store.db"))


@pytest.fixture
def engine(store):
    from sop_engine.engine import SOPEngine

    return SOPEngine(store)
