"""Shared pytest fixtures for doing-log tests."""

import tempfile
from datetime import datetime
from pathlib import Path

import pytest

from doing_log.config import DoingConfig
from doing_log.engine import DoingEngine

# Tuesday
FIXED_NOW = datetime(2024, 1, 16, 10, 0)

ID_A = "a" * 32
ID_B = "b" * 32
ID_C = "c" * 32
ID_D = "d" * 32

SAMPLE_TEXT = f"""Currently:
 - 2024-01-16 09:00 | Writing docs @docs <{ID_A}>
 - 2024-01-15 14:00 | Fix login bug @bug @priority(3) @done(2024-01-15 16:00) <{ID_B}>
  stack trace in the ticket

Later:
 - 2024-01-14 11:00 | Plan sprint @planning <{ID_C}>

Archive:
 - 2024-01-10 08:00 | Old bug @bug @done(2024-01-10 09:30) <{ID_D}>
"""


@pytest.fixture
def temp_project():
    """Create a temporary project directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def config(temp_project):
    """Create a test configuration pointing at a doing file in the temp dir."""
    return DoingConfig(
        project_root=temp_project,
        doing_file="doing.taskpaper",
    )


@pytest.fixture
def engine(config):
    """Create a test engine with a frozen clock."""
    return DoingEngine(config, clock=lambda: FIXED_NOW)


@pytest.fixture
def sample_text():
    return SAMPLE_TEXT


@pytest.fixture
def sample_engine(engine, sample_text):
    """Engine whose doing file already holds the sample log."""
    engine.path.write_text(sample_text, encoding="utf-8")
    return engine
