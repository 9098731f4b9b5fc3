from __future__ import annotations

import dataclasses as _dataclasses
import pathlib as _pathlib
import typing as _typing


if _typing.TYPE_CHECKING:
    import datetime as _datetime


__all__ = [
    "BackupArtifact",
    "artifact_extension",
    "format_backup_timestamp",
    "make_backup_filename",
]


_EXTENSIONS = {
    ("plain", True): ".gz",
    ("plain", False): ".sql",
    ("tar", True): ".tar.gz",
    ("tar", False): ".tar",
}


def artifact_extension(dump_format: str, *, compress: bool = True) -> str:
    """Return the file extension of an artifact.

    >>> artifact_extension("plain")
    '.gz'
    >>> artifact_extension("plain", compress=False)
    '.sql'
    >>> artifact_extension("tar")
    '.tar.gz'
    """
    try:
        return _EXTENSIONS[(dump_format, bool(compress))]
    except KeyError:
        raise ValueError(f"Unsupported dump format: {dump_format!r}") from None


def format_backup_timestamp(timestamp: _datetime.datetime | None = None) -> str:
    """Return *timestamp* as ISO-8601 in UTC with milliseconds and ``Z``.

    >>> import datetime as dt
    >>> format_backup_timestamp(dt.datetime(2024, 1, 2, 4, 4, 5, 999,
    ...                                     tzinfo=dt.timezone(dt.timedelta(hours=1))))
    '2024-01-02T03:04:05.000Z'

    Without a timestamp the current time is used:

    ..
       >>> _tm = getfixture("time_machine")
       >>> _tm.move_to(dt.datetime(2025, 8, 15, 10, 30, 27, 123000, tzinfo=dt.timezone.utc), tick=False)

    >>> format_backup_timestamp()
    '2025-08-15T10:30:27.123Z'
    """
    import datetime

    if timestamp is None:
        timestamp = datetime.datetime.now(tz=datetime.timezone.utc)
    elif timestamp.tzinfo is None:
        timestamp = timestamp.astimezone()
    utc = timestamp.astimezone(datetime.timezone.utc)
    return utc.replace(tzinfo=None).isoformat(timespec="milliseconds") + "Z"


def make_backup_filename(
    prefix: str, timestamp: _datetime.datetime | None = None, ext: str = ".gz"
) -> str:
    """Return ``{prefix}backup-{timestamp}{ext}``.

    ``:`` and ``.`` in everything before the extension are replaced by
    ``-`` so the name is safe in file systems and URLs:

    >>> import datetime as dt
    >>> make_backup_filename("nightly-", dt.datetime(2024, 1, 2, 3, 4, 5, tzinfo=dt.timezone.utc))
    'nightly-backup-2024-01-02T03-04-05-000Z.gz'
    >>> make_backup_filename("db.v2:", dt.datetime(2024, 1, 2, 3, 4, 5, tzinfo=dt.timezone.utc), ".tar.gz")
    'db-v2-backup-2024-01-02T03-04-05-000Z.tar.gz'
    """
    stem = f"{prefix}backup-{format_backup_timestamp(timestamp)}"
    return stem.replace(":", "-").replace(".", "-") + ext


@_dataclasses.dataclass(slots=True, kw_only=True)
class BackupArtifact:
    """The staged dump file of one backup run."""

    filename: str
    local_path: _pathlib.Path
    size_bytes: int | None = None

    @classmethod
    def create(
        cls,
        scratch_dir: str | _pathlib.Path,
        *,
        prefix: str = "",
        timestamp: _datetime.datetime | None = None,
        ext: str = ".gz",
    ) -> _typing.Self:
        """Name the artifact and make sure its scratch directory exists.

        >>> tmp_path = getfixture("tmp_path")
        >>> import datetime as dt
        >>> a = BackupArtifact.create(tmp_path / "scratch", prefix="shop-",
        ...                           timestamp=dt.datetime(2024, 1, 2, tzinfo=dt.timezone.utc))
        >>> a.filename
        'shop-backup-2024-01-02T00-00-00-000Z.gz'
        >>> a.local_path == tmp_path / "scratch" / a.filename, a.local_path.parent.is_dir()
        (True, True)
        """
        filename = make_backup_filename(prefix, timestamp, ext)
        # a prefix may contain "/" and name a subdirectory
        local_path = _pathlib.Path(scratch_dir) / filename
        local_path.parent.mkdir(parents=True, exist_ok=True)
        return cls(filename=filename, local_path=local_path)

    @property
    def exists(self) -> bool:
        return self.local_path.exists()

    def read_size(self) -> int:
        """Read the size of the staged file and remember it."""
        self.size_bytes = self.local_path.stat().st_size
        return self.size_bytes
