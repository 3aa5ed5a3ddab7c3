"""Common test fixtures."""

import os
from pathlib import Path
from typing import List

import pytest

from treesync.config import SyncConfig
from treesync.sync import SyncOrchestrator
from treesync.sync.checks import check_not_empty
from treesync.sync.status import ProgressReporter, StatusRecord


class RecordingReporter(ProgressReporter):
    """ProgressReporter that also keeps every record it wrote."""

    def __init__(self, status_path=None):
        super().__init__(status_path)
        self.history: List[StatusRecord] = []

    def write(self, record: StatusRecord) -> None:
        self.history.append(record)
        super().write(record)

    @property
    def phases(self):
        phases = []
        for record in self.history:
            if not phases or phases[-1] != record.phase:
                phases.append(record.phase)
        return phases


@pytest.fixture
def config_home(tmp_path, monkeypatch) -> Path:
    # Patch HOME environment variable for the duration of the test
    monkeypatch.setenv("HOME", str(tmp_path))
    # On Windows, also set USERPROFILE
    if os.name == "nt":
        monkeypatch.setenv("USERPROFILE", str(tmp_path))
    for key in list(os.environ):
        if key.startswith("TREESYNC_"):
            monkeypatch.delenv(key)
    return tmp_path


@pytest.fixture
def candidate_root(tmp_path) -> Path:
    path = tmp_path / "candidate"
    path.mkdir()
    return path


@pytest.fixture
def live_root(tmp_path) -> Path:
    path = tmp_path / "live"
    path.mkdir()
    return path


@pytest.fixture
def sync_config(config_home, candidate_root, live_root, tmp_path) -> SyncConfig:
    return SyncConfig(
        candidate_root=candidate_root,
        live_root=live_root,
        backup_root=tmp_path / "state" / "backup",
        status_path=tmp_path / "state" / "status.json",
        log_file=None,
    )


@pytest.fixture
def reporter(sync_config) -> RecordingReporter:
    return RecordingReporter(sync_config.status_path)


@pytest.fixture
def orchestrator(sync_config, reporter) -> SyncOrchestrator:
    return SyncOrchestrator(sync_config, check=check_not_empty, reporter=reporter)
