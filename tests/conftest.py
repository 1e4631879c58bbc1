import pytest
from loguru import logger

import project_sync
from project_sync import Settings


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """No array index from the outer shell and no user config file."""
    monkeypatch.delenv("SLURM_ARRAY_TASK_ID", raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    yield
    logger.remove()


@pytest.fixture
def log_records():
    """(level, message) pairs emitted through loguru during the test."""
    records = []
    handler_id = logger.add(lambda m: records.append((m.record["level"].name, m.record["message"])),
                            level="DEBUG")
    yield records
    try:
        logger.remove(handler_id)
    except ValueError:
        pass


@pytest.fixture
def settings(tmp_path):
    return Settings(destination_root=tmp_path / "root")


@pytest.fixture
def write_tasks(tmp_path):
    def _write(name, text):
        path = tmp_path / name
        path.write_text(text, encoding="utf-8")
        return path
    return _write


@pytest.fixture
def sync_calls(monkeypatch):
    """Replace rsync with a recorder returning success."""
    calls = []

    def fake_sync(source, destination, flags, settings):
        calls.append((source, destination, flags))
        return 0

    monkeypatch.setattr(project_sync, "run_sync_tool", fake_sync)
    return calls
