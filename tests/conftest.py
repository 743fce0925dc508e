import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict

import pytest


@contextmanager
def env_vars(env: Dict[str, str]):
    """
    Temporarily set environment variables for a test.

    Restores previous values afterwards, even if the test fails.
    """
    old_values: Dict[str, Any] = {}
    for key, value in env.items():
        old_values[key] = os.environ.get(key)
        os.environ[key] = value
    try:
        yield
    finally:
        for key, old in old_values.items():
            if old is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = old


@pytest.fixture
def case_db():
    """Temporary SQLite database for the case and conversation stores. Isolated per test."""
    with tempfile.TemporaryDirectory(prefix="case_agent_") as tmp:
        db_path = str(Path(tmp) / "case_agent.db")
        with env_vars({"DB_PATH": db_path, "DATABASE_URL": "", "SUPABASE_DATABASE_URL": ""}):
            yield db_path


@pytest.fixture
def demo_case(case_db):
    """A case with intake, master data, documents, tasks and a WSC letter."""
    from case_agent.cli import _seed_demo

    return _seed_demo()
