from __future__ import annotations

import dataclasses as _dataclasses
import logging as _logging
import typing as _typing

from . import _errors, _sink, _util


if _typing.TYPE_CHECKING:
    from . import _artifact, _dump_source, _storage


__all__ = [
    "BackupResult",
    "run_backup",
]


_LOGGER = _logging.getLogger(__name__)


@_dataclasses.dataclass(frozen=True, slots=True, kw_only=True)
class BackupResult:
    artifact: _artifact.BackupArtifact
    stats: _dump_source.DumpStats
    uploaded: bool

    @property
    def object_name(self) -> str:
        return self.artifact.filename


def run_backup(
    *,
    source: _dump_source.DumpSource,
    storage: _storage.ObjectStorage,
    artifact: _artifact.BackupArtifact,
    min_size_bytes: int = 1000,
    compress: bool = True,
    compress_level: int = 6,
    dry_run: bool = False,
) -> BackupResult:
    """Run one backup: dump, compress, stage, validate, upload, clean up.

    The staged file at ``artifact.local_path`` is deleted before this
    function returns or raises, whatever the outcome. A failure to delete
    it is logged and does not change the outcome.

    Raises:
      NoAccessibleTables: The user cannot read any table (nothing staged).
      DumpError: Producing or staging the dump failed.
      ArtifactTooSmall: The staged artifact is below *min_size_bytes*;
        nothing is uploaded.
      TransferError: The upload failed.
    """
    import humanfriendly as _humanfriendly

    logger = _util.PrefixLoggerAdapter(_LOGGER, prefix="[backup]")
    logger.info("Start backup %s", artifact.filename)
    try:
        try:
            selection = source.resolve_tables()
            with _sink.open_sink(
                artifact.local_path, compress=compress, compress_level=compress_level
            ) as sink:
                stats = source.write_dump(sink, selection)
            stats.uncompressed_bytes = sink.bytes_in
        except _errors.BackupError:
            raise
        except OSError as exc:
            raise _errors.DumpError(
                f"Failed to write {artifact.local_path}: {exc}"
            ) from exc

        size = artifact.read_size()
        logger.info(
            "Staged %s (%s / %s bytes, %s uncompressed)",
            artifact.filename,
            _humanfriendly.format_size(size, binary=True),
            size,
            _humanfriendly.format_size(stats.uncompressed_bytes, binary=True),
        )
        if size < min_size_bytes:
            raise _errors.ArtifactTooSmall(size_bytes=size, min_size_bytes=min_size_bytes)

        if dry_run:
            logger.info("Dry run: skip upload of %s", artifact.filename)
            uploaded = False
        else:
            storage.upload(artifact.local_path, artifact.filename)
            uploaded = True
    except _errors.BackupError as exc:
        logger.error("Backup failed: %s: %s", type(exc).__name__, exc)
        raise
    finally:
        _remove_staged_file(artifact, logger)

    logger.info("Backup %s finished", artifact.filename)
    return BackupResult(artifact=artifact, stats=stats, uploaded=uploaded)


def _remove_staged_file(
    artifact: _artifact.BackupArtifact,
    logger: _logging.Logger | _logging.LoggerAdapter,
) -> None:
    try:
        artifact.local_path.unlink(missing_ok=True)
    except OSError as exc:
        err = _errors.CleanupError(f"Failed to delete {artifact.local_path}: {exc}")
        logger.warning("%s", err)
    else:
        logger.debug("Deleted %s", artifact.local_path)
