import os as _os
import pathlib as _pathlib

import pytest


@pytest.fixture
def scratch_dir(tmp_path: _pathlib.Path) -> _pathlib.Path:
    return tmp_path / "scratch"


@pytest.fixture
def artifact(scratch_dir):
    import datetime

    from pgcloudbackup import BackupArtifact

    return BackupArtifact.create(
        scratch_dir,
        prefix="test-",
        timestamp=datetime.datetime(2024, 1, 2, 3, 4, 5, tzinfo=datetime.timezone.utc),
    )


@pytest.fixture
def storage():
    from pytest_pgcloudbackup import RecordingStorage

    return RecordingStorage()


@pytest.fixture
def incompressible_payload() -> bytes:
    # random bytes stay above the size gate after gzip
    return _os.urandom(50_000)


@pytest.fixture(autouse=True)
def _clean_backup_env(monkeypatch: pytest.MonkeyPatch):
    for name in [
        "PGCLOUDBACKUP_CONFIG",
        "PGCLOUDBACKUP_START_TIME",
        "PGPASSWORD",
    ]:
        monkeypatch.delenv(name, raising=False)
