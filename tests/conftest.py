import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
os.environ.setdefault('LOG_TO_FILE', 'False')

import pytest

from arena.config import Config

Config.LOG_TO_FILE = False


@pytest.fixture
def database_url(tmp_path):
    """Throwaway SQLite file database (a file, so every connection sees the same data)"""
    return f"sqlite:///{tmp_path / 'arena_test.db'}"
