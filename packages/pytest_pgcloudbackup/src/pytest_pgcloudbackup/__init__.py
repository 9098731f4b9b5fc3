from __future__ import annotations

import logging as _logging
import os as _os
import pathlib as _pathlib
import shlex as _shlex
import subprocess as _subprocess
import sys as _sys
import typing as _typing

import pgcloudbackup


_LOGGER = _logging.getLogger(__name__)
_SELFDIR = _pathlib.Path(__file__).parent.resolve()
_ROOT_DIR = (_SELFDIR / ".." / ".." / ".." / "..").resolve()


def run_script(script, *args, env=None, env_update=None, check=True, **kwargs):
    """Run a script from ``tools/`` with the current interpreter."""
    if not _os.path.isabs(script):
        script = _os.path.join(_ROOT_DIR, script)
    env = (_os.environ if env is None else env).copy()
    if env_update is not None:
        env.update(env_update)
    cmd = [_sys.executable, str(script), *(str(a) for a in args)]
    _LOGGER.info("Run %s", " ".join(_shlex.quote(a) for a in cmd))
    return _subprocess.run(
        cmd, **kwargs, stderr=_subprocess.STDOUT, env=env, check=check
    )


def read_artifact(path: str | _pathlib.Path) -> bytes:
    """Return the uncompressed contents of a staged or uploaded artifact."""
    import gzip

    path = _pathlib.Path(path)
    data = path.read_bytes()
    if path.name.endswith(".gz"):
        data = gzip.decompress(data)
    return data


class FakeDumpSource(pgcloudbackup.DumpSource):
    """Dump source writing a fixed payload, without any database."""

    def __init__(
        self,
        payload: bytes = b"",
        *,
        tables: list[pgcloudbackup.TableRef] | None = None,
        chunk_size: int = 8192,
        fail_with: Exception | None = None,
        on_table_error: _typing.Literal["abort", "skip"] = "abort",
    ) -> None:
        super().__init__(None, on_table_error=on_table_error)  # type: ignore[arg-type]
        self.payload = payload
        self.tables = (
            [pgcloudbackup.TableRef("public", "orders")] if tables is None else tables
        )
        self.chunk_size = chunk_size
        self.fail_with = fail_with
        self.write_dump_calls = 0

    def list_tables(self) -> list[pgcloudbackup.TableRef]:
        return list(self.tables)

    def write_dump(self, sink, selection) -> pgcloudbackup.DumpStats:
        self.write_dump_calls += 1
        for start in range(0, len(self.payload), self.chunk_size):
            sink.write(self.payload[start : start + self.chunk_size])
        if self.fail_with is not None:
            raise self.fail_with
        return pgcloudbackup.DumpStats(
            tables_dumped=[str(t) for t in selection.included],
            tables_skipped=[str(t) for t in selection.skipped],
        )


class RecordingStorage(pgcloudbackup.ObjectStorage):
    """Object storage keeping uploaded objects in memory."""

    def __init__(self, fail_with: Exception | None = None) -> None:
        self.objects: dict[str, bytes] = {}
        self.fail_with = fail_with
        self.upload_calls = 0

    def upload(self, local_path, object_name) -> None:
        self.upload_calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        self.objects[object_name] = _pathlib.Path(local_path).read_bytes()
