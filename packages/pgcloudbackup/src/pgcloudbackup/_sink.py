from __future__ import annotations

import contextlib as _contextlib
import logging as _logging
import os as _os
import pathlib as _pathlib
import typing as _typing

from . import _util


if _typing.TYPE_CHECKING:
    import collections.abc as _collections_abc
    import gzip as _gzip


__all__ = [
    "CompressedSink",
    "open_sink",
]


_LOGGER = _logging.getLogger(__name__)


class CompressedSink:
    """Write-only byte sink in front of the staging file.

    With *compress* the bytes pass through a streaming gzip filter. Only
    zlib's internal buffers are held in memory, independent of how many
    bytes are written.
    """

    _path: _pathlib.Path
    _file: _typing.BinaryIO
    _gzip: _gzip.GzipFile | None = None
    _bytes_in: int = 0
    _closed: bool = False

    def __init__(
        self,
        path: str | _pathlib.Path,
        *,
        compress: bool = True,
        compress_level: int = 6,
    ) -> None:
        import gzip

        self._path = _pathlib.Path(path)
        self._logger = _util.PrefixLoggerAdapter(_LOGGER, prefix="[sink]")
        self._file = open(self._path, "wb")
        if compress:
            # The file name must not end up in the gzip header: the object
            # name in storage is the only name of the artifact.
            self._gzip = gzip.GzipFile(
                filename="",
                mode="wb",
                compresslevel=compress_level,
                fileobj=self._file,
                mtime=0,
            )
        self._bytes_in = 0

    @property
    def path(self) -> _pathlib.Path:
        return self._path

    @property
    def bytes_in(self) -> int:
        """Number of uncompressed bytes written so far."""
        return self._bytes_in

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, data: bytes | bytearray | memoryview) -> int:
        if self._closed:
            raise ValueError(f"write to closed sink {self._path}")
        target = self._gzip if self._gzip is not None else self._file
        n = target.write(data)
        self._bytes_in += len(data)
        return n

    def write_text(self, text: str) -> int:
        return self.write(text.encode("utf-8"))

    def close(self) -> None:
        """Finalize the gzip stream, flush and fsync the file, close it."""
        if self._closed:
            return
        self._closed = True
        try:
            if self._gzip is not None:
                self._gzip.close()
            self._file.flush()
            _os.fsync(self._file.fileno())
        finally:
            self._file.close()
        self._logger.debug(
            "Closed %s (%s bytes uncompressed)", self._path, self._bytes_in
        )

    def abort(self) -> None:
        """Close without caring about a consistent file (it gets deleted)."""
        if self._closed:
            return
        self._closed = True
        try:
            if self._gzip is not None:
                self._gzip.close()
        except OSError as exc:
            self._logger.warning("Failed to finalize %s: %s", self._path, exc)
        finally:
            self._file.close()

    def __enter__(self) -> _typing.Self:
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        if exc_type is None:
            self.close()
        else:
            self.abort()


@_contextlib.contextmanager
def open_sink(
    path: str | _pathlib.Path,
    *,
    compress: bool = True,
    compress_level: int = 6,
) -> _collections_abc.Iterator[CompressedSink]:
    """Open the staging file *path* for writing.

    When the ``with`` block is left normally the data is on disk and the
    file size is final:

    >>> tmp_path = getfixture("tmp_path")
    >>> with open_sink(tmp_path / "dump.gz") as sink:
    ...     _ = sink.write(b"CREATE TABLE t ();\\n")
    >>> import gzip
    >>> gzip.decompress((tmp_path / "dump.gz").read_bytes())
    b'CREATE TABLE t ();\\n'
    """
    sink = CompressedSink(path, compress=compress, compress_level=compress_level)
    with sink:
        yield sink
