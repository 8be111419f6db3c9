"""Shared test fixtures for the nebi test suite."""

import os

import pytest

from nebi.paths import LocalServerPaths

from helpers import RecordingSpawner


@pytest.fixture(autouse=True)
def data_dir(tmp_path, monkeypatch):
    """Point every test at its own data directory.

    Clears inherited NEBI_* variables so the developer's environment
    cannot leak into config resolution.
    """
    import nebi

    for var in list(os.environ):
        if var.startswith("NEBI_"):
            monkeypatch.delenv(var)
    directory = tmp_path / "nebi-data"
    monkeypatch.setenv("NEBI_DATA_DIR", str(directory))
    monkeypatch.setattr(nebi, "_supervisor", None)
    return directory


@pytest.fixture
def paths(data_dir):
    return LocalServerPaths.from_data_dir(data_dir)


@pytest.fixture
def spawner(paths):
    """Spawner for real server processes, all terminated at teardown."""
    recorder = RecordingSpawner(paths)
    yield recorder
    recorder.terminate_all()
