from __future__ import annotations

import abc as _abc
import collections.abc as _collections_abc
import dataclasses as _dataclasses
import logging as _logging
import typing as _typing

from . import _config, _errors, _sql, _util


if _typing.TYPE_CHECKING:
    import psycopg as _psycopg

    from . import _connection, _sink


__all__ = [
    "DumpSource",
    "DumpStats",
    "TableRef",
    "TableSelection",
    "list_tables",
]


_LOGGER = _logging.getLogger(__name__)


@_dataclasses.dataclass(frozen=True, slots=True)
class TableRef:
    schema: str
    name: str
    selectable: bool = True

    @property
    def qualified_name(self) -> str:
        return _sql.qualified_name(self.schema, self.name)

    def __str__(self) -> str:
        return self.qualified_name


@_dataclasses.dataclass(frozen=True, slots=True)
class TableSelection:
    included: tuple[TableRef, ...]
    skipped: tuple[TableRef, ...] = ()


@_dataclasses.dataclass(slots=True)
class DumpStats:
    tables_dumped: list[str] = _dataclasses.field(default_factory=list)
    tables_skipped: list[str] = _dataclasses.field(default_factory=list)
    rows: int = 0
    sequences: int = 0
    uncompressed_bytes: int = 0


_LIST_TABLES_QUERY = """\
SELECT n.nspname AS schema_name,
       c.relname AS table_name,
       pg_catalog.has_table_privilege(c.oid, 'SELECT') AS selectable
FROM pg_catalog.pg_class c
JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace
WHERE c.relkind = 'r'
  AND n.nspname <> ALL(%(exclude_schemas)s)
  AND n.nspname !~ '^pg_(toast|temp)'
ORDER BY n.nspname, c.relname"""


def list_tables(
    conn: _psycopg.Connection, *, exclude_schemas: _collections_abc.Iterable[str]
) -> list[TableRef]:
    """Return all ordinary tables outside the system schemas."""
    with conn.cursor() as cursor:
        cursor.execute(
            _LIST_TABLES_QUERY, {"exclude_schemas": list(exclude_schemas)}
        )
        rows = cursor.fetchall()
    return [TableRef(schema, name, bool(selectable)) for schema, name, selectable in rows]


class DumpSource(_abc.ABC):
    """Producer of the logical contents of a database.

    Subclasses implement :meth:`write_dump`. Enumeration of tables and the
    per-table error policy are shared.
    """

    dump_format: _config.DumpFormat = "plain"

    _connection: _connection.ConnectionContext
    _exclude_schemas: tuple[str, ...]
    _on_table_error: _config.TableErrorPolicy
    _include_sequences: bool
    _logger: _logging.Logger | _logging.LoggerAdapter

    def __init__(
        self,
        connection: _connection.ConnectionContext,
        *,
        exclude_schemas: _collections_abc.Iterable[str] = _config.DEFAULT_EXCLUDE_SCHEMAS,
        on_table_error: _config.TableErrorPolicy = "abort",
        include_sequences: bool = True,
    ) -> None:
        self._connection = connection
        self._exclude_schemas = tuple(exclude_schemas)
        self._on_table_error = on_table_error
        self._include_sequences = include_sequences
        self._logger = _util.PrefixLoggerAdapter(_LOGGER, prefix="[dump]")

    @property
    def on_table_error(self) -> _config.TableErrorPolicy:
        return self._on_table_error

    @property
    def include_sequences(self) -> bool:
        return self._include_sequences

    def list_tables(self) -> list[TableRef]:
        import psycopg

        with self._connection.psycopg_connect() as conn:
            try:
                self._log_permissions(conn)
                tables = list_tables(conn, exclude_schemas=self._exclude_schemas)
            except psycopg.Error as exc:
                raise _errors.DumpError(f"Failed to list tables: {exc}") from exc
        self._logger.info(
            "Found %s table(s), %s selectable",
            len(tables),
            sum(1 for t in tables if t.selectable),
        )
        return tables

    def _log_permissions(self, conn: _psycopg.Connection) -> None:
        with conn.cursor() as cursor:
            cursor.execute(
                "SELECT current_user, current_database(), "
                "has_database_privilege(current_user, current_database(), 'CONNECT'), "
                "has_schema_privilege(current_user, 'public', 'USAGE')"
            )
            row = cursor.fetchone()
        if row is not None:
            user, database, can_connect, can_use_public = row
            self._logger.info(
                "Connected as %s to %s (CONNECT=%s, USAGE on public=%s)",
                user,
                database,
                can_connect,
                can_use_public,
            )

    def resolve_tables(
        self, tables: _collections_abc.Sequence[TableRef] | None = None
    ) -> TableSelection:
        """Apply the ``on_table_error`` policy to the enumerated tables.

        Raises :obj:`NoAccessibleTables` if no table is selectable and
        :obj:`DumpError` for a non-selectable table with policy ``abort``.
        """
        if tables is None:
            tables = self.list_tables()
        included = tuple(t for t in tables if t.selectable)
        denied = tuple(t for t in tables if not t.selectable)
        if not included:
            raise _errors.NoAccessibleTables(
                "No accessible tables found. Check database permissions."
            )
        for table in denied:
            if self._on_table_error == "abort":
                raise _errors.DumpError(
                    f"Permission denied for table {table}", table=str(table)
                )
            self._logger.warning("Skip table %s: no SELECT privilege", table)
        return TableSelection(included=included, skipped=denied)

    @_abc.abstractmethod
    def write_dump(
        self, sink: _sink.CompressedSink, selection: TableSelection
    ) -> DumpStats:
        """Write the dump of the tables in *selection* into *sink*."""
        raise NotImplementedError
