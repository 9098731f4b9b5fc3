"""Command line entry point: run exactly one backup."""

from __future__ import annotations

import sys as _sys
import typing as _typing


if _typing.TYPE_CHECKING:
    import argparse as _argparse


def create_argument_parser() -> _argparse.ArgumentParser:
    import argparse

    p = argparse.ArgumentParser(
        prog="pgcloudbackup",
        description="Dump a PostgreSQL database, compress it and upload it "
        "to S3 compatible object storage.",
    )
    p.add_argument(
        "--dump-method",
        choices=["copy", "pg_dump"],
        default=None,
        help="Override the configured dump method",
    )
    p.add_argument(
        "--skip-unreadable-tables",
        dest="on_table_error",
        action="store_const",
        const="skip",
        default=None,
        help="Leave out tables that cannot be read instead of aborting",
    )
    p.add_argument(
        "--no-compress",
        dest="compress",
        action="store_false",
        default=None,
        help="Stage and upload the dump without gzip compression",
    )
    return p


def main(argv: list[str] | None = None) -> int:
    from . import _context

    parser = create_argument_parser()
    ctx = _context.BackupContext(argument_parser=parser, argv=argv)
    args = ctx.parsed_args
    try:
        ctx.config = ctx.config.replace(
            dump_method=args.dump_method,
            on_table_error=args.on_table_error,
            compress=args.compress,
        )
    except ValueError as exc:
        parser.error(str(exc))
    ctx.run_backup()
    return 0


if __name__ == "__main__":
    _sys.exit(main())
