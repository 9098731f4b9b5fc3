from __future__ import annotations

import collections.abc as _collections_abc
import contextlib as _contextlib
import logging as _logging
import typing as _typing

from . import _dump_source, _errors, _sql


if _typing.TYPE_CHECKING:
    import psycopg as _psycopg

    from . import _sink


__all__ = [
    "CopyDumpSource",
]


_LOGGER = _logging.getLogger(__name__)

_DUMP_HEADER = """\
--
-- PostgreSQL database dump (pgcloudbackup, COPY)
--

SET statement_timeout = 0;
SET client_encoding = 'UTF8';
SET standard_conforming_strings = on;
SELECT pg_catalog.set_config('search_path', '', false);

"""

_COLUMNS_QUERY = """\
SELECT a.attname,
       pg_catalog.format_type(a.atttypid, a.atttypmod),
       a.attnotnull,
       pg_catalog.pg_get_expr(d.adbin, d.adrelid),
       a.attidentity,
       a.attgenerated
FROM pg_catalog.pg_attribute a
LEFT JOIN pg_catalog.pg_attrdef d ON d.adrelid = a.attrelid AND d.adnum = a.attnum
WHERE a.attrelid = %(table)s::regclass
  AND a.attnum > 0
  AND NOT a.attisdropped
ORDER BY a.attnum"""

_CONSTRAINTS_QUERY = """\
SELECT con.conname,
       con.contype,
       pg_catalog.pg_get_constraintdef(con.oid, true),
       rn.nspname,
       rt.relname
FROM pg_catalog.pg_constraint con
LEFT JOIN pg_catalog.pg_class rt ON rt.oid = con.confrelid
LEFT JOIN pg_catalog.pg_namespace rn ON rn.oid = rt.relnamespace
WHERE con.conrelid = %(table)s::regclass
  AND con.contype IN ('p', 'u', 'c', 'f', 'x')
  AND con.conislocal
ORDER BY con.contype = 'f', con.conname"""

_SEQUENCES_QUERY = """\
SELECT n.nspname,
       c.relname,
       pg_catalog.format_type(s.seqtypid, NULL),
       s.seqstart,
       s.seqincrement,
       s.seqmin,
       s.seqmax,
       s.seqcache,
       s.seqcycle,
       ot.nspname,
       ot.relname
FROM pg_catalog.pg_class c
JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace
JOIN pg_catalog.pg_sequence s ON s.seqrelid = c.oid
LEFT JOIN LATERAL (
    SELECT tn.nspname, t.relname
    FROM pg_catalog.pg_depend dep
    JOIN pg_catalog.pg_class t ON t.oid = dep.refobjid
    JOIN pg_catalog.pg_namespace tn ON tn.oid = t.relnamespace
    WHERE dep.classid = 'pg_catalog.pg_class'::regclass
      AND dep.objid = c.oid
      AND dep.deptype = 'i'
    LIMIT 1
) ot ON true
WHERE c.relkind = 'S'
  AND n.nspname <> ALL(%(exclude_schemas)s)
  AND n.nspname !~ '^pg_(toast|temp)'
  AND pg_catalog.has_sequence_privilege(c.oid, 'SELECT')
ORDER BY n.nspname, c.relname"""


class CopyDumpSource(_dump_source.DumpSource):
    """Plain SQL dump produced through the client library.

    Schema statements are generated from the system catalogs, table data
    is streamed with ``COPY ... TO STDOUT``. All tables are read in one
    ``REPEATABLE READ`` read-only transaction, so the dump is a consistent
    snapshot; every table gets its own savepoint.
    """

    dump_format = "plain"

    def write_dump(
        self, sink: _sink.CompressedSink, selection: _dump_source.TableSelection
    ) -> _dump_source.DumpStats:
        import psycopg

        stats = _dump_source.DumpStats(
            tables_skipped=[str(t) for t in selection.skipped]
        )
        try:
            self._write_snapshot(sink, selection, stats)
        except psycopg.Error as exc:
            raise _errors.DumpError(f"Failed to dump database: {exc}") from exc

        self._logger.info(
            "Dumped %s table(s) with %s row(s), %s sequence(s), skipped %s table(s)",
            len(stats.tables_dumped),
            stats.rows,
            stats.sequences,
            len(stats.tables_skipped),
        )
        return stats

    def _write_snapshot(
        self,
        sink: _sink.CompressedSink,
        selection: _dump_source.TableSelection,
        stats: _dump_source.DumpStats,
    ) -> None:
        import psycopg

        foreign_keys: list[tuple[_dump_source.TableRef, _sql.Constraint]] = []

        with self._snapshot() as conn:
            sequences = self._fetch_sequences(conn) if self._include_sequences else []

            sink.write_text(_DUMP_HEADER)
            schemas = {t.schema for t in selection.included}
            schemas.update(seq.schema for seq in sequences)
            for schema in sorted(schemas - {"public"}):
                sink.write_text(_sql.format_create_schema(schema))
            for seq in sequences:
                if not seq.is_identity:
                    sink.write_text(_sql.format_create_sequence(seq))

            for table in selection.included:
                try:
                    with self._table_savepoint(conn):
                        table_fks = self._dump_table(conn, sink, table, stats)
                except psycopg.Error as exc:
                    self._handle_table_error(sink, table, exc, stats)
                    continue
                foreign_keys.extend((table, fk) for fk in table_fks)

            dumped = set(stats.tables_dumped)
            restorable_fks = []
            for table, fk in foreign_keys:
                if fk.references and fk.references not in dumped:
                    self._logger.warning(
                        "Drop foreign key %s of %s: referenced table %s was not dumped",
                        fk.name,
                        table,
                        fk.references,
                    )
                    continue
                restorable_fks.append((table, fk))
            if restorable_fks:
                sink.write_text("\n--\n-- Foreign keys\n--\n\n")
            for table, fk in restorable_fks:
                sink.write_text(_sql.format_add_constraint(table.schema, table.name, fk))

            # identity sequences only exist if their table was dumped
            sequences = [
                seq
                for seq in sequences
                if not seq.is_identity or seq.owned_by in dumped
            ]
            if sequences:
                sink.write_text("\n--\n-- Sequence state\n--\n\n")
            for seq in sequences:
                sink.write_text(
                    _sql.format_sequence_state(self._fetch_sequence_state(conn, seq))
                )
                stats.sequences += 1

    def _dump_table(
        self,
        conn: _psycopg.Connection,
        sink: _sink.CompressedSink,
        table: _dump_source.TableRef,
        stats: _dump_source.DumpStats,
    ) -> list[_sql.Constraint]:
        columns = self._fetch_columns(conn, table)
        constraints = self._fetch_constraints(conn, table)

        self._logger.info("Dump table %s", table)
        sink.write_text(f"\n--\n-- Table {table}\n--\n\n")
        sink.write_text(_sql.format_create_table(table.schema, table.name, columns))

        rows = 0
        copy_columns = [c.name for c in columns if not c.generated]
        if copy_columns:
            sink.write_text("\n")
            sink.write_text(_sql.format_copy_header(table.schema, table.name, copy_columns))
            try:
                with _contextlib.closing(
                    self._iter_copy_rows(conn, table, copy_columns)
                ) as chunks:
                    for chunk in chunks:
                        sink.write(chunk)
                        rows += chunk.count(b"\n")
            finally:
                # Keep the COPY block well-formed even if the stream broke off.
                sink.write_text(_sql.COPY_TERMINATOR)

        for constraint in constraints:
            if not constraint.is_foreign_key:
                sink.write_text(
                    _sql.format_add_constraint(table.schema, table.name, constraint)
                )

        self._logger.info("Backed up %s row(s) from %s", rows, table)
        stats.tables_dumped.append(str(table))
        stats.rows += rows
        return [c for c in constraints if c.is_foreign_key]

    def _handle_table_error(
        self,
        sink: _sink.CompressedSink,
        table: _dump_source.TableRef,
        exc: Exception,
        stats: _dump_source.DumpStats,
    ) -> None:
        first_line = (str(exc).splitlines() or [type(exc).__name__])[0]
        if self._on_table_error == "abort":
            self._logger.error("Failed to dump table %s: %s", table, first_line)
            raise _errors.DumpError(
                f"Failed to dump table {table}: {first_line}", table=str(table)
            ) from exc
        self._logger.error("Skip table %s after error: %s", table, first_line)
        sink.write_text(f"-- table {table} skipped: {first_line}\n")
        stats.tables_skipped.append(str(table))

    @_contextlib.contextmanager
    def _snapshot(self) -> _collections_abc.Iterator[_psycopg.Connection]:
        import psycopg

        with self._connection.psycopg_connect() as conn:
            conn.isolation_level = psycopg.IsolationLevel.REPEATABLE_READ
            conn.read_only = True
            with conn.transaction():
                conn.execute("SET LOCAL client_encoding TO 'UTF8'")
                conn.execute("SELECT pg_catalog.set_config('search_path', '', true)")
                yield conn

    def _table_savepoint(
        self, conn: _psycopg.Connection
    ) -> _contextlib.AbstractContextManager:
        return conn.transaction()

    def _fetch_columns(
        self, conn: _psycopg.Connection, table: _dump_source.TableRef
    ) -> list[_sql.Column]:
        with conn.cursor() as cursor:
            cursor.execute(_COLUMNS_QUERY, {"table": table.qualified_name})
            rows = cursor.fetchall()
        return [
            _sql.Column(
                name=name,
                data_type=data_type,
                not_null=bool(not_null),
                default=default,
                identity=identity if identity in ("a", "d") else "",
                generated=generated if generated in ("s", "v") else "",
            )
            for name, data_type, not_null, default, identity, generated in rows
        ]

    def _fetch_constraints(
        self, conn: _psycopg.Connection, table: _dump_source.TableRef
    ) -> list[_sql.Constraint]:
        with conn.cursor() as cursor:
            cursor.execute(_CONSTRAINTS_QUERY, {"table": table.qualified_name})
            rows = cursor.fetchall()
        return [
            _sql.Constraint(
                name,
                kind,
                definition,
                references=_sql.qualified_name(ref_schema, ref_name) if ref_name else "",
            )
            for name, kind, definition, ref_schema, ref_name in rows
        ]

    def _fetch_sequences(self, conn: _psycopg.Connection) -> list[_sql.Sequence]:
        with conn.cursor() as cursor:
            cursor.execute(
                _SEQUENCES_QUERY, {"exclude_schemas": list(self._exclude_schemas)}
            )
            rows = cursor.fetchall()
        return [
            _sql.Sequence(
                schema=schema,
                name=name,
                data_type=data_type,
                start=start,
                increment=increment,
                min_value=min_value,
                max_value=max_value,
                cache=cache,
                cycle=bool(cycle),
                owned_by=_sql.qualified_name(owner_schema, owner_name) if owner_name else "",
            )
            for (
                schema,
                name,
                data_type,
                start,
                increment,
                min_value,
                max_value,
                cache,
                cycle,
                owner_schema,
                owner_name,
            ) in rows
        ]

    def _fetch_sequence_state(
        self, conn: _psycopg.Connection, seq: _sql.Sequence
    ) -> _sql.Sequence:
        import dataclasses

        from psycopg import sql

        query = sql.SQL("SELECT last_value, is_called FROM {seq}").format(
            seq=sql.Identifier(seq.schema, seq.name)
        )
        with conn.cursor() as cursor:
            cursor.execute(query)
            row = cursor.fetchone()
        if row is None:
            raise _errors.DumpError(f"Cannot read state of sequence {seq.qualified_name}")
        last_value, is_called = row
        return dataclasses.replace(seq, last_value=int(last_value), is_called=bool(is_called))

    def _iter_copy_rows(
        self,
        conn: _psycopg.Connection,
        table: _dump_source.TableRef,
        column_names: _collections_abc.Sequence[str],
    ) -> _collections_abc.Generator[bytes, None, None]:
        """Lazily yield the COPY text of *table*, one chunk at a time.

        The generator is forward-only; closing it ends the COPY.
        """
        from psycopg import sql

        query = sql.SQL("COPY {table} ({columns}) TO STDOUT").format(
            table=sql.Identifier(table.schema, table.name),
            columns=sql.SQL(", ").join(sql.Identifier(c) for c in column_names),
        )
        with conn.cursor() as cursor:
            with cursor.copy(query) as copy:
                for data in copy:
                    yield bytes(data)

