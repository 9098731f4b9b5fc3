from __future__ import annotations

from ._artifact import (
    BackupArtifact as BackupArtifact,
    artifact_extension as artifact_extension,
    format_backup_timestamp as format_backup_timestamp,
    make_backup_filename as make_backup_filename,
)
from ._config import (
    BackupConfig as BackupConfig,
)
from ._connection import (
    ConnectionContext as ConnectionContext,
)
from ._context import (
    BackupContext as BackupContext,
)
from ._copy_source import (
    CopyDumpSource as CopyDumpSource,
)
from ._dump_source import (
    DumpSource as DumpSource,
    DumpStats as DumpStats,
    TableRef as TableRef,
    TableSelection as TableSelection,
)
from ._errors import (
    ArtifactTooSmall as ArtifactTooSmall,
    BackupError as BackupError,
    CleanupError as CleanupError,
    DatabaseConnectionError as DatabaseConnectionError,
    DumpError as DumpError,
    NoAccessibleTables as NoAccessibleTables,
    TransferError as TransferError,
)
from ._pg_dump_source import (
    PgDumpSource as PgDumpSource,
)
from ._pipeline import (
    BackupResult as BackupResult,
    run_backup as run_backup,
)
from ._sink import (
    CompressedSink as CompressedSink,
    open_sink as open_sink,
)
from ._storage import (
    ObjectStorage as ObjectStorage,
    S3Storage as S3Storage,
)
from ._util import (
    render_template as render_template,
    to_datetime as to_datetime,
)


__all__ = [
    "ArtifactTooSmall",
    "BackupArtifact",
    "BackupConfig",
    "BackupContext",
    "BackupError",
    "BackupResult",
    "CleanupError",
    "CompressedSink",
    "ConnectionContext",
    "CopyDumpSource",
    "DatabaseConnectionError",
    "DumpError",
    "DumpSource",
    "DumpStats",
    "NoAccessibleTables",
    "ObjectStorage",
    "PgDumpSource",
    "S3Storage",
    "TableRef",
    "TableSelection",
    "TransferError",
    "artifact_extension",
    "format_backup_timestamp",
    "make_backup_filename",
    "open_sink",
    "render_template",
    "run_backup",
    "to_datetime",
]
