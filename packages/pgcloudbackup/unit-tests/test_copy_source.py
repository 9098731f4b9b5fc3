import contextlib
import dataclasses
import gzip

import psycopg.errors
import pytest
from pgcloudbackup import (
    BackupConfig,
    ConnectionContext,
    CopyDumpSource,
    DumpError,
    TableRef,
    TableSelection,
    open_sink,
)
from pgcloudbackup._sql import Column, Constraint, Sequence


_ORDERS = TableRef("public", "orders")
_CUSTOMERS = TableRef("public", "customers")
_AUDIT_LOG = TableRef("audit", "log")


class _CatalogCopyDumpSource(CopyDumpSource):
    """CopyDumpSource reading from in-memory catalog data."""

    def __init__(self, *, rows, failing_tables=(), **kwargs):
        super().__init__(ConnectionContext(BackupConfig(storage_bucket="b")), **kwargs)
        self.rows = rows
        self.failing_tables = set(failing_tables)
        self.fetch_sequences_calls = 0

    @contextlib.contextmanager
    def _snapshot(self):
        yield object()

    def _table_savepoint(self, conn):
        return contextlib.nullcontext()

    def _fetch_columns(self, conn, table):
        if table == _ORDERS:
            return [
                Column("id", "integer", not_null=True, default="nextval('public.orders_id_seq'::regclass)"),
                Column("customer_id", "integer"),
                Column("total", "numeric(10,2)", default="0"),
                Column("total_gross", "numeric", default="(total * 1.19)", generated="s"),
            ]
        elif table == _CUSTOMERS:
            return [
                Column("id", "bigint", not_null=True, identity="a"),
                Column("name", "text", not_null=True),
            ]
        else:
            return [Column("message", "text")]

    def _fetch_constraints(self, conn, table):
        if table == _ORDERS:
            return [
                Constraint("orders_pkey", "p", "PRIMARY KEY (id)"),
                Constraint("orders_total_check", "c", "CHECK (total >= 0)"),
                Constraint(
                    "orders_customer_id_fkey",
                    "f",
                    "FOREIGN KEY (customer_id) REFERENCES public.customers(id)",
                    references='"public"."customers"',
                ),
            ]
        elif table == _CUSTOMERS:
            return [Constraint("customers_pkey", "p", "PRIMARY KEY (id)")]
        else:
            return []

    def _fetch_sequences(self, conn):
        self.fetch_sequences_calls += 1
        return [
            Sequence("public", "customers_id_seq", owned_by='"public"."customers"'),
            Sequence("public", "orders_id_seq", data_type="integer", max_value=2147483647),
        ]

    def _fetch_sequence_state(self, conn, seq):
        return dataclasses.replace(seq, last_value=42, is_called=True)

    def _iter_copy_rows(self, conn, table, column_names):
        rows = self.rows.get(table, [])
        for i, row in enumerate(rows):
            if table in self.failing_tables and i == 1:
                raise psycopg.errors.InsufficientPrivilege(
                    f"permission denied for table {table.name}"
                )
            yield row


def _dump(tmp_path, source, selection):
    path = tmp_path / "dump.gz"
    with open_sink(path) as sink:
        stats = source.write_dump(sink, selection)
    return gzip.decompress(path.read_bytes()).decode(), stats


_ROWS = {
    _ORDERS: [b"1\t1\t9.99\n", b"2\t1\t19.99\n", b"3\t2\t5.00\n"],
    _CUSTOMERS: [b"1\tAda\n2\tGrace\n"],
    _AUDIT_LOG: [b"started\n"],
}


class Test_CopyDumpSource:
    def test_schema_before_data(self, tmp_path):
        source = _CatalogCopyDumpSource(rows=_ROWS)
        text, stats = _dump(
            tmp_path, source, TableSelection(included=(_AUDIT_LOG, _CUSTOMERS, _ORDERS))
        )

        create = text.index('CREATE TABLE "public"."orders"')
        copy = text.index('COPY "public"."orders" ("id", "customer_id", "total") FROM stdin;')
        first_row = text.index("1\t1\t9.99\n")
        terminator = text.index("\\.\n", first_row)
        pkey = text.index('ADD CONSTRAINT "orders_pkey" PRIMARY KEY (id);')
        fkey = text.index('ADD CONSTRAINT "orders_customer_id_fkey"')
        setval = text.index("pg_catalog.setval('\"public\".\"orders_id_seq\"', 42, true);")
        assert create < copy < first_row < terminator < pkey < fkey < setval

        assert text.index('CREATE SCHEMA IF NOT EXISTS "audit";') < text.index(
            'CREATE TABLE "audit"."log"'
        )
        assert text.index('CREATE SEQUENCE IF NOT EXISTS "public"."orders_id_seq"') < create
        # foreign keys come after the data of every table
        assert text.rindex("\\.\n") < fkey

        assert stats.tables_dumped == ['"audit"."log"', '"public"."customers"', '"public"."orders"']
        assert stats.rows == 1 + 2 + 3
        assert stats.sequences == 2

    def test_identity_and_generated_columns(self, tmp_path):
        source = _CatalogCopyDumpSource(rows=_ROWS)
        text, _ = _dump(tmp_path, source, TableSelection(included=(_CUSTOMERS, _ORDERS)))
        assert '"id" bigint GENERATED ALWAYS AS IDENTITY NOT NULL' in text
        assert '"total_gross" numeric GENERATED ALWAYS AS ((total * 1.19)) STORED' in text
        # identity sequences are created with their table
        assert 'CREATE SEQUENCE IF NOT EXISTS "public"."customers_id_seq"' not in text
        assert "setval('\"public\".\"customers_id_seq\"', 42, true)" in text

    def test_without_sequences(self, tmp_path):
        source = _CatalogCopyDumpSource(rows=_ROWS, include_sequences=False)
        text, stats = _dump(tmp_path, source, TableSelection(included=(_ORDERS,)))
        assert "SEQUENCE" not in text
        assert "setval" not in text
        assert source.fetch_sequences_calls == 0
        assert stats.sequences == 0

    def test_table_error__abort(self, tmp_path):
        source = _CatalogCopyDumpSource(rows=_ROWS, failing_tables=[_ORDERS])
        with pytest.raises(DumpError, match="permission denied") as exc_info:
            _dump(tmp_path, source, TableSelection(included=(_CUSTOMERS, _ORDERS)))
        assert exc_info.value.table == '"public"."orders"'
        assert isinstance(exc_info.value.__cause__, psycopg.errors.InsufficientPrivilege)

    def test_table_error__skip(self, tmp_path):
        source = _CatalogCopyDumpSource(
            rows=_ROWS, failing_tables=[_ORDERS], on_table_error="skip"
        )
        text, stats = _dump(
            tmp_path, source, TableSelection(included=(_ORDERS, _CUSTOMERS))
        )
        assert stats.tables_dumped == ['"public"."customers"']
        assert stats.tables_skipped == ['"public"."orders"']
        assert stats.rows == 2

        copy = text.index('COPY "public"."orders"')
        terminator = text.index("\\.\n", copy)
        comment = text.index('-- table "public"."orders" skipped: permission denied')
        assert copy < terminator < comment < text.index('CREATE TABLE "public"."customers"')
        # constraints of the skipped table are not emitted
        assert "orders_pkey" not in text
        assert "orders_customer_id_fkey" not in text

    def test_previously_skipped_tables_in_stats(self, tmp_path):
        source = _CatalogCopyDumpSource(rows=_ROWS, on_table_error="skip")
        secrets = TableRef("public", "secrets", selectable=False)
        _, stats = _dump(
            tmp_path, source, TableSelection(included=(_CUSTOMERS,), skipped=(secrets,))
        )
        assert stats.tables_skipped == ['"public"."secrets"']

    def test_skipped_table_leaves_no_dangling_statements(self, tmp_path, caplog):
        source = _CatalogCopyDumpSource(rows=_ROWS, on_table_error="skip")
        customers = TableRef("public", "customers", selectable=False)
        text, stats = _dump(
            tmp_path, source, TableSelection(included=(_ORDERS,), skipped=(customers,))
        )
        # the identity sequence of customers is never created
        assert "customers_id_seq" not in text
        assert "setval('\"public\".\"orders_id_seq\"', 42, true)" in text
        assert stats.sequences == 1
        # orders still references customers
        assert "orders_customer_id_fkey" not in text
        assert 'ADD CONSTRAINT "orders_pkey"' in text
        assert "Drop foreign key orders_customer_id_fkey" in caplog.text

    def test_failed_table_leaves_no_dangling_statements(self, tmp_path):
        rows = {**_ROWS, _CUSTOMERS: [b"1\tAda\n", b"2\tGrace\n"]}
        source = _CatalogCopyDumpSource(
            rows=rows, failing_tables=[_CUSTOMERS], on_table_error="skip"
        )
        text, stats = _dump(
            tmp_path, source, TableSelection(included=(_CUSTOMERS, _ORDERS))
        )
        assert stats.tables_skipped == ['"public"."customers"']
        assert "customers_id_seq" not in text
        assert "orders_customer_id_fkey" not in text

    def test_catalog_error_becomes_dump_error(self, tmp_path):
        class _Broken(_CatalogCopyDumpSource):
            def _fetch_sequences(self, conn):
                raise psycopg.OperationalError("server closed the connection")

        with pytest.raises(DumpError, match="server closed the connection"):
            _dump(tmp_path, _Broken(rows=_ROWS), TableSelection(included=(_ORDERS,)))
