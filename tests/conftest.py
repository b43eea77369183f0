"""Common test fixtures for the Northstar sync engine."""

import tempfile
from pathlib import Path

import pytest

from northstar_sync.config import config
from northstar_sync.models.schema import EntityTable
from northstar_sync.observability import metrics
from northstar_sync.services.notebook_service import NotebookService
from northstar_sync.storage.local_store import LocalStore
from northstar_sync.sync.engine import SyncEngine
from tests.fakes import FakeRemote


@pytest.fixture(autouse=True)
def _isolate_metrics(tmp_path, monkeypatch):
    """Keep metrics auto-saves out of the real home directory."""
    monkeypatch.setattr(metrics, "_metrics_file", tmp_path / "metrics.json")
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def temp_db_dir():
    """Create a temporary directory for databases."""
    with tempfile.TemporaryDirectory() as db_dir:
        yield Path(db_dir)


@pytest.fixture
def test_config(temp_db_dir, monkeypatch):
    """Configure with test paths (auto-restored even on crash)."""
    monkeypatch.setattr(config, "database_path", temp_db_dir / "test_northstar.db")
    monkeypatch.setattr(config, "sync_enabled", False)
    monkeypatch.setattr(config, "backoff_base", 1.0)
    monkeypatch.setattr(config, "backoff_max", 300.0)
    monkeypatch.setattr(config, "sync_interval", 0.0)
    monkeypatch.setattr(config, "seed_default_groups", False)
    yield config


@pytest.fixture
def store(test_config):
    """Create a local store on a fresh database file."""
    local_store = LocalStore(db_url=test_config.get_db_url())
    yield local_store
    local_store.close()


@pytest.fixture
def service(store):
    """Create a notebook service over the test store."""
    notebook = NotebookService(store=store)
    yield notebook
    notebook.stop_sync()


@pytest.fixture
def fake_remote():
    """Create an in-memory remote backend."""
    return FakeRemote()


def _build_engine(notebook: NotebookService, remote, **kwargs) -> SyncEngine:
    return SyncEngine(
        notebook.store,
        notebook.queue,
        notebook.history,
        {EntityTable.GROUPS: notebook.groups, EntityTable.NOTES: notebook.notes},
        remote,
        status=notebook.status,
        **kwargs,
    )


@pytest.fixture
def make_engine():
    """Factory building a sync engine that shares a notebook's store, queue and status."""
    return _build_engine


@pytest.fixture
def engine(service, fake_remote):
    """Sync engine for the primary device."""
    return _build_engine(service, fake_remote)


@pytest.fixture
def second_device(temp_db_dir):
    """A second device of the same owner, with its own local database."""
    other_store = LocalStore(db_url=f"sqlite:///{temp_db_dir / 'second_device.db'}")
    notebook = NotebookService(store=other_store)
    yield notebook
    notebook.stop_sync()
    other_store.close()
