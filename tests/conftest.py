"""
Pytest Configuration for storyvault Tests.

Provides fixtures for isolated settings, in-memory backends and fully
wired story contexts.
"""

from pathlib import Path

import pytest

from storyvault.context import create_context
from storyvault.core.config import Settings, reset_settings
from storyvault.core.diff import JsonPatchDiff
from storyvault.core.history import MomentHistory
from storyvault.storage.legacy import MemoryKeyValueStore
from storyvault.storage.object_store import MemoryObjectStore
from storyvault.storage.session_store import MemorySessionStore


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "slow: mark test as slow (deselect with '-m \"not slow\"')"
    )


@pytest.fixture(autouse=True, scope="function")
def isolated_settings(monkeypatch, tmp_path):
    """
    Keep every test away from the user's configuration and data.

    Clears STORYVAULT_* variables, points HOME and the working directory at
    a temporary directory and empties the settings cache.
    """
    import os

    for key in list(os.environ):
        if key.startswith("STORYVAULT_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.chdir(tmp_path)

    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings using the in-memory backend."""
    return Settings(backend="memory", data_directory=tmp_path / "data")


@pytest.fixture
def diff():
    return JsonPatchDiff()


@pytest.fixture
def history(diff) -> MomentHistory:
    return MomentHistory(max_states=100, max_expired=100, diff=diff)


@pytest.fixture
def reported():
    """Collects ``(description, data)`` pairs sent to the error sink."""
    return []


@pytest.fixture
def backend():
    return MemoryObjectStore()


@pytest.fixture
def legacy():
    return MemoryKeyValueStore()


@pytest.fixture
def session_store():
    return MemorySessionStore()


@pytest.fixture
def context(settings, backend, legacy, session_store, diff, reported):
    """Story context over in-memory stores."""
    ctx = create_context(
        settings,
        backend=backend,
        legacy=legacy,
        session=session_store,
        diff=diff,
        story_id="test-story",
        error_sink=lambda description, data: reported.append((description, data)),
    )
    yield ctx
    ctx.close()


@pytest.fixture
async def saves(context):
    """Opened save store of the test context."""
    await context.saves.open()
    return context.saves


@pytest.fixture
def data_dir(tmp_path) -> Path:
    path = tmp_path / "data"
    path.mkdir(parents=True, exist_ok=True)
    return path
