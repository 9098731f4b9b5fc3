from __future__ import annotations


__all__ = [
    "ArtifactTooSmall",
    "BackupError",
    "CleanupError",
    "DatabaseConnectionError",
    "DumpError",
    "NoAccessibleTables",
    "TransferError",
]


class BackupError(Exception):
    """Base class of all errors raised by a backup run."""


class DatabaseConnectionError(BackupError):
    """The database (or the SSH tunnel in front of it) is not reachable."""


class NoAccessibleTables(BackupError):
    """The current database user cannot SELECT from any user table."""


class DumpError(BackupError):
    """Producing schema or data of the dump failed."""

    def __init__(self, message: str, *, table: str | None = None) -> None:
        super().__init__(message)
        self.table = table


class ArtifactTooSmall(BackupError):
    """The staged artifact is smaller than the plausibility threshold."""

    def __init__(self, *, size_bytes: int, min_size_bytes: int) -> None:
        super().__init__(
            f"Backup artifact has {size_bytes} bytes, expected at least "
            f"{min_size_bytes} bytes"
        )
        self.size_bytes = size_bytes
        self.min_size_bytes = min_size_bytes


class TransferError(BackupError):
    """Uploading the artifact to object storage failed."""


class CleanupError(BackupError):
    """Deleting the staged artifact failed. Only ever logged."""
