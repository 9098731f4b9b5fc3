from __future__ import annotations

import collections.abc as _collections_abc
import logging as _logging
import typing as _typing

from . import _config, _dump_source, _errors, _util


if _typing.TYPE_CHECKING:
    from . import _connection, _sink


__all__ = [
    "PgDumpSource",
    "build_pg_dump_command",
]


_LOGGER = _logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024
_MAX_STDERR_IN_MESSAGE = 4000


def build_pg_dump_command(
    *,
    conninfo: str,
    dump_format: _config.DumpFormat = "plain",
    exclude_tables: _collections_abc.Iterable[str] = (),
    exclude_schemas: _collections_abc.Iterable[str] = (),
    pg_dump_bin: str = "pg_dump",
) -> list[str]:
    """Return the ``pg_dump`` command line writing the dump to stdout.

    >>> build_pg_dump_command(conninfo="host=db port=5432 dbname=shop",
    ...                       exclude_tables=['"public"."secrets"'])
    ['pg_dump', '--dbname=host=db port=5432 dbname=shop', '--format=plain', '--no-password', '--exclude-table="public"."secrets"']
    >>> build_pg_dump_command(conninfo="dbname=shop", dump_format="tar",
    ...                       exclude_schemas=["audit"], pg_dump_bin="/usr/lib/postgresql/17/bin/pg_dump")
    ['/usr/lib/postgresql/17/bin/pg_dump', '--dbname=dbname=shop', '--format=tar', '--no-password', '--exclude-schema=audit']
    """
    cmd = [
        pg_dump_bin,
        f"--dbname={conninfo}",
        f"--format={dump_format}",
        "--no-password",
    ]
    cmd.extend(f"--exclude-schema={schema}" for schema in exclude_schemas)
    cmd.extend(f"--exclude-table={table}" for table in exclude_tables)
    return cmd


class PgDumpSource(_dump_source.DumpSource):
    """Dump produced by the external ``pg_dump`` program.

    ``pg_dump`` writes to its stdout, which is copied into the sink in
    fixed-size chunks. The password reaches the child process through
    ``PGPASSWORD`` in an environment built for this call only.
    """

    _pg_dump_bin: str

    def __init__(
        self,
        connection: _connection.ConnectionContext,
        *,
        dump_format: _config.DumpFormat = "plain",
        pg_dump_bin: str = "pg_dump",
        exclude_schemas: _collections_abc.Iterable[str] = _config.DEFAULT_EXCLUDE_SCHEMAS,
        on_table_error: _config.TableErrorPolicy = "abort",
        include_sequences: bool = True,
    ) -> None:
        super().__init__(
            connection,
            exclude_schemas=exclude_schemas,
            on_table_error=on_table_error,
            include_sequences=include_sequences,
        )
        self.dump_format = dump_format
        self._pg_dump_bin = pg_dump_bin
        self._logger = _util.PrefixLoggerAdapter(_LOGGER, prefix="[pg_dump]")

    @property
    def pg_dump_bin(self) -> str:
        return self._pg_dump_bin

    def write_dump(
        self, sink: _sink.CompressedSink, selection: _dump_source.TableSelection
    ) -> _dump_source.DumpStats:
        import subprocess
        import tempfile

        import humanfriendly as _humanfriendly

        if not self._include_sequences:
            self._logger.warning(
                "include_sequences=false is not supported by pg_dump, "
                "sequences are dumped anyway"
            )

        bytes_before = sink.bytes_in
        with self._connection.tunnel() as (db_host, db_port):
            cmd = build_pg_dump_command(
                conninfo=self._connection.libpq_conninfo(host=db_host, port=db_port),
                dump_format=self.dump_format,
                exclude_tables=[str(t) for t in selection.skipped],
                exclude_schemas=[
                    s
                    for s in self._exclude_schemas
                    if s not in _config.DEFAULT_EXCLUDE_SCHEMAS
                ],
                pg_dump_bin=self._pg_dump_bin,
            )
            self._logger.info(
                "Run %s (passing db_password in env PGPASSWORD)", _util.shlex_join(cmd)
            )
            with tempfile.TemporaryFile() as stderr_file:
                try:
                    proc = subprocess.Popen(
                        cmd,
                        stdout=subprocess.PIPE,
                        stderr=stderr_file,
                        env=self._connection.subprocess_env(),
                    )
                except OSError as exc:
                    raise _errors.DumpError(
                        f"Failed to start {self._pg_dump_bin}: {exc}"
                    ) from exc
                with proc:
                    try:
                        assert proc.stdout is not None
                        while chunk := proc.stdout.read(_CHUNK_SIZE):
                            sink.write(chunk)
                    except BaseException:
                        proc.kill()
                        raise
                    returncode = proc.wait()
                stderr_file.seek(0)
                stderr = stderr_file.read().decode("utf-8", errors="replace").strip()

        for line in stderr.splitlines():
            self._logger.info("stderr: %s", line)
        if returncode != 0:
            self._logger.error("%s exited with status %s", self._pg_dump_bin, returncode)
            raise _errors.DumpError(
                f"pg_dump exited with status {returncode}: "
                f"{stderr[-_MAX_STDERR_IN_MESSAGE:] or '(no output on stderr)'}"
            )

        size = sink.bytes_in - bytes_before
        self._logger.info(
            "Received %s (%s bytes) from pg_dump",
            _humanfriendly.format_size(size, binary=True),
            size,
        )
        return _dump_source.DumpStats(
            tables_dumped=[str(t) for t in selection.included],
            tables_skipped=[str(t) for t in selection.skipped],
        )
