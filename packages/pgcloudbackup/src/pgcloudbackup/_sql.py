"""SQL text emitted into plain dumps."""

from __future__ import annotations

import collections.abc as _collections_abc
import dataclasses as _dataclasses
import typing as _typing


__all__ = [
    "Column",
    "Constraint",
    "Sequence",
    "format_add_constraint",
    "format_copy_header",
    "format_create_schema",
    "format_create_sequence",
    "format_create_table",
    "format_sequence_state",
    "quote_ident",
    "quote_literal",
]


COPY_TERMINATOR = "\\.\n"


@_dataclasses.dataclass(frozen=True, slots=True)
class Column:
    name: str
    data_type: str
    not_null: bool = False
    default: str | None = None
    identity: _typing.Literal["", "a", "d"] = ""
    generated: _typing.Literal["", "s", "v"] = ""


@_dataclasses.dataclass(frozen=True, slots=True)
class Constraint:
    name: str
    kind: str
    definition: str
    # qualified name of the table a foreign key points to
    references: str = ""

    @property
    def is_foreign_key(self) -> bool:
        return self.kind == "f"


@_dataclasses.dataclass(frozen=True, slots=True)
class Sequence:
    schema: str
    name: str
    data_type: str = "bigint"
    start: int = 1
    increment: int = 1
    min_value: int = 1
    max_value: int = 9223372036854775807
    cache: int = 1
    cycle: bool = False
    last_value: int | None = None
    is_called: bool = False
    # qualified name of the table owning an identity sequence
    owned_by: str = ""

    @property
    def is_identity(self) -> bool:
        return bool(self.owned_by)

    @property
    def qualified_name(self) -> str:
        return qualified_name(self.schema, self.name)


def quote_ident(name: str) -> str:
    """Quote an SQL identifier.

    >>> quote_ident('orders')
    '"orders"'
    >>> quote_ident('we"ird')
    '"we""ird"'
    """
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    """Quote an SQL string literal.

    >>> quote_literal("O'Brien")
    "'O''Brien'"
    """
    return "'" + value.replace("'", "''") + "'"


def qualified_name(schema: str, name: str) -> str:
    """
    >>> qualified_name("public", "orders")
    '"public"."orders"'
    """
    return f"{quote_ident(schema)}.{quote_ident(name)}"


def format_create_schema(schema: str) -> str:
    """
    >>> format_create_schema("audit")
    'CREATE SCHEMA IF NOT EXISTS "audit";\\n'
    """
    return f"CREATE SCHEMA IF NOT EXISTS {quote_ident(schema)};\n"


def format_column(column: Column) -> str:
    """Format one column definition of a ``CREATE TABLE`` statement.

    >>> format_column(Column("id", "bigint", not_null=True, identity="a"))
    '"id" bigint GENERATED ALWAYS AS IDENTITY NOT NULL'
    >>> format_column(Column("total", "numeric(10,2)", default="0"))
    '"total" numeric(10,2) DEFAULT 0'
    >>> format_column(Column("gross", "numeric", default="total * 1.19", generated="s"))
    '"gross" numeric GENERATED ALWAYS AS (total * 1.19) STORED'
    """
    parts = [quote_ident(column.name), column.data_type]
    if column.identity:
        kind = "ALWAYS" if column.identity == "a" else "BY DEFAULT"
        parts.append(f"GENERATED {kind} AS IDENTITY")
    elif column.generated:
        kind = "VIRTUAL" if column.generated == "v" else "STORED"
        parts.append(f"GENERATED ALWAYS AS ({column.default}) {kind}")
    elif column.default is not None:
        parts.append(f"DEFAULT {column.default}")
    if column.not_null:
        parts.append("NOT NULL")
    return " ".join(parts)


def format_create_table(
    schema: str, name: str, columns: _collections_abc.Sequence[Column]
) -> str:
    """Format a ``CREATE TABLE`` statement without constraints.

    >>> print(format_create_table("public", "orders", [
    ...     Column("id", "integer", not_null=True, default="nextval('orders_id_seq'::regclass)"),
    ...     Column("note", "text"),
    ... ]), end="")
    CREATE TABLE "public"."orders" (
        "id" integer DEFAULT nextval('orders_id_seq'::regclass) NOT NULL,
        "note" text
    );
    """
    body = ",\n".join(f"    {format_column(c)}" for c in columns)
    return f"CREATE TABLE {qualified_name(schema, name)} (\n{body}\n);\n"


def format_copy_header(
    schema: str, name: str, column_names: _collections_abc.Sequence[str]
) -> str:
    """
    >>> format_copy_header("public", "orders", ["id", "note"])
    'COPY "public"."orders" ("id", "note") FROM stdin;\\n'
    """
    cols = ", ".join(quote_ident(c) for c in column_names)
    return f"COPY {qualified_name(schema, name)} ({cols}) FROM stdin;\n"


def format_add_constraint(schema: str, name: str, constraint: Constraint) -> str:
    """
    >>> format_add_constraint("public", "orders", Constraint("orders_pkey", "p", "PRIMARY KEY (id)"))
    'ALTER TABLE ONLY "public"."orders" ADD CONSTRAINT "orders_pkey" PRIMARY KEY (id);\\n'
    """
    return (
        f"ALTER TABLE ONLY {qualified_name(schema, name)} "
        f"ADD CONSTRAINT {quote_ident(constraint.name)} {constraint.definition};\n"
    )


def format_create_sequence(seq: Sequence) -> str:
    """Format the definition of a stand-alone sequence.

    >>> print(format_create_sequence(Sequence("public", "orders_id_seq", cycle=True)), end="")
    CREATE SEQUENCE IF NOT EXISTS "public"."orders_id_seq" AS bigint
        START WITH 1
        INCREMENT BY 1
        MINVALUE 1
        MAXVALUE 9223372036854775807
        CACHE 1
        CYCLE;
    """
    return (
        f"CREATE SEQUENCE IF NOT EXISTS {seq.qualified_name} AS {seq.data_type}\n"
        f"    START WITH {seq.start}\n"
        f"    INCREMENT BY {seq.increment}\n"
        f"    MINVALUE {seq.min_value}\n"
        f"    MAXVALUE {seq.max_value}\n"
        f"    CACHE {seq.cache}\n"
        f"    {'CYCLE' if seq.cycle else 'NO CYCLE'};\n"
    )


def format_sequence_state(seq: Sequence) -> str:
    """Format statements restoring increment, bounds, cycling and position.

    >>> seq = Sequence("public", "orders_id_seq", increment=2, last_value=41, is_called=True)
    >>> print(format_sequence_state(seq), end="")
    ALTER SEQUENCE "public"."orders_id_seq" INCREMENT BY 2 MINVALUE 1 MAXVALUE 9223372036854775807 NO CYCLE;
    SELECT pg_catalog.setval('"public"."orders_id_seq"', 41, true);
    """
    cycle = "CYCLE" if seq.cycle else "NO CYCLE"
    out = (
        f"ALTER SEQUENCE {seq.qualified_name} INCREMENT BY {seq.increment} "
        f"MINVALUE {seq.min_value} MAXVALUE {seq.max_value} {cycle};\n"
    )
    if seq.last_value is not None:
        is_called = "true" if seq.is_called else "false"
        out += (
            f"SELECT pg_catalog.setval({quote_literal(seq.qualified_name)}, "
            f"{seq.last_value}, {is_called});\n"
        )
    return out
