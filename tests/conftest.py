"""Common test fixtures for Notekeeper."""

import tempfile
from pathlib import Path

import pytest
from sqlalchemy import create_engine

from notekeeper import observability
from notekeeper.config import config
from notekeeper.models.db_models import Base
from notekeeper.services.note_service import NoteService
from notekeeper.storage.entity_store import EntityStore


@pytest.fixture
def temp_dirs():
    """Create temporary directories for the database and logs."""
    with tempfile.TemporaryDirectory() as db_dir:
        with tempfile.TemporaryDirectory() as log_dir:
            yield Path(db_dir), Path(log_dir)


@pytest.fixture
def test_config(temp_dirs, monkeypatch):
    """Configure with test paths (auto-restored even on crash)."""
    db_dir, log_dir = temp_dirs
    monkeypatch.setattr(config, "database_path", db_dir / "test_notekeeper.db")
    monkeypatch.setattr(config, "log_dir", log_dir)
    monkeypatch.setattr(config, "storage_mode", "local")
    monkeypatch.setattr(config, "webdav_url", None)
    monkeypatch.setattr(config, "api_base_url", None)
    monkeypatch.setattr(config, "api_token", None)
    monkeypatch.setattr(config, "api_user_id", None)
    monkeypatch.setattr(config, "sync_on_start", False)
    yield config


@pytest.fixture(autouse=True)
def _isolated_metrics(tmp_path, monkeypatch):
    """Keep the global metrics collector away from the real home directory."""
    monkeypatch.setattr(
        observability.metrics, "_metrics_file", tmp_path / "metrics.json"
    )
    observability.metrics.reset()


@pytest.fixture
def engine(test_config):
    """Create a file-backed SQLite engine with all tables."""
    database_path = test_config.get_absolute_path(test_config.database_path)
    engine = create_engine(f"sqlite:///{database_path}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    """Create a test entity store."""
    return EntityStore(engine=engine)


@pytest.fixture
def note_service(store):
    """Create a test NoteService."""
    return NoteService(store=store)
