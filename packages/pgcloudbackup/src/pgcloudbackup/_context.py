from __future__ import annotations

import logging as _logging
import logging.handlers as _logging_handlers
import os as _os
import typing as _typing

from . import _config


if _typing.TYPE_CHECKING:
    import argparse as _argparse
    import datetime as _datetime
    import pathlib as _pathlib

    from . import _artifact, _connection, _dump_source, _pipeline, _storage


__all__ = [
    "BackupContext",
]


_LOGGER = _logging.getLogger(__name__)

START_TIME_ENV_NAME = "PGCLOUDBACKUP_START_TIME"


class BackupContext:
    """Context (config, start time, logging, ...) of one backup run."""

    _config: _config.BackupConfig
    _logger: _logging.Logger | _logging.LoggerAdapter
    _buffering_handler: _UnlimitedBufferingHandler | None = None
    _stream_handler: _logging.Handler | None = None
    _start_time: _datetime.datetime
    _dry_run: bool = False
    _parsed_args: _argparse.Namespace | None = None

    def __init__(
        self,
        config: _config.BackupConfig | _pathlib.Path | str | None = None,
        *,
        setup_logging: bool = True,
        log_level: int | str | None = None,
        start_time: _datetime.datetime | str | None = None,
        dry_run: bool | None = None,
        parse_arguments: bool = True,
        argument_parser: _argparse.ArgumentParser | None = None,
        argv: list[str] | None = None,
        logger: _logging.Logger | _logging.LoggerAdapter | None = None,
    ) -> None:
        """Initialize this context.

        Args:
          config: The config as a config object or filename. Without
            one, ``--config`` or :obj:`BackupConfig.load` is used.
          setup_logging: Do some initial console logging config if
            `True` (default `True`)
          log_level: Console logging level (default INFO)
          start_time: Start time of the backup (default now)
          dry_run: Run in dry-run mode (no upload) if `True`.
          parse_arguments: Parse command line arguments if `True`.
          argument_parser: Custom argument parser to use as a starting
            point before adding the default arguments.
          argv: The argument vector to parse if *parse_arguments* is
            `True`.

        ..
           >>> import datetime
           >>> from pgcloudbackup import BackupConfig

        The start time ends up in the artifact name:

        >>> config = BackupConfig(storage_bucket="backups", db_name="shop",
        ...                       filename_prefix="{{ db_name }}-")
        >>> ctx = BackupContext(config, setup_logging=False, parse_arguments=False,
        ...                     start_time="2024-01-02T03:04:05Z")
        >>> ctx.artifact_filename()
        'shop-backup-2024-01-02T03-04-05-000Z.gz'
        """
        from . import _util

        # Default basic logging config
        if setup_logging:
            log_level = _util.to_log_level(log_level, default=_logging.INFO)
            self._buffering_handler = _UnlimitedBufferingHandler()
            self._buffering_handler.setLevel(_logging.DEBUG)
            self._stream_handler = _logging.StreamHandler()
            self._stream_handler.setLevel(log_level)
            _logging.basicConfig(
                level=_logging.DEBUG,
                format="%(asctime)s %(levelname)-1s %(message)s",
                handlers=[self._stream_handler, self._buffering_handler],
            )
        if logger is None:
            self._logger = _util.PrefixLoggerAdapter(_LOGGER, prefix="[ctx]")
        else:
            self._logger = logger

        if parse_arguments:
            self.parse_arguments(argument_parser=argument_parser, argv=argv)

        if config is None and self._parsed_args and self._parsed_args.config:
            config = self._parsed_args.config
        if config is None:
            config = _config.BackupConfig.load()
        elif not isinstance(config, _config.BackupConfig):
            config = _config.BackupConfig.from_file(config)
        self._config = config
        self._logger.debug("config=%r", self._config)

        self._start_time = self._determine_start_time(start_time=start_time)
        if dry_run is not None:
            self._dry_run = dry_run

        if self._parsed_args and self._parsed_args.log_file:
            self.configure_log_file(self._parsed_args.log_file)

    def _determine_start_time(
        self, start_time: _datetime.datetime | str | None = None, *, env=None
    ) -> _datetime.datetime:
        import datetime as _datetime

        from . import _util

        if env is None:
            env = _os.environ
        env_val = env.get(START_TIME_ENV_NAME)
        self._logger.debug(
            "found %s%s",
            START_TIME_ENV_NAME,
            (" not set" if env_val is None else f"={env_val}"),
        )

        if start_time is not None:
            result = _util.to_datetime(start_time)
            self._logger.info("start_time=%s (explicitly given)", result.isoformat())
        elif self._parsed_args and self._parsed_args.start_time:
            result = _util.to_datetime(self._parsed_args.start_time)
            self._logger.info("start_time=%s (from command line)", result.isoformat())
        elif env_val:
            result = _util.to_datetime(env_val)
            self._logger.info(
                "start_time=%s (from %s)", result.isoformat(), START_TIME_ENV_NAME
            )
        else:
            result = _datetime.datetime.now().astimezone()
            self._logger.info("start_time=%s (current time)", result.isoformat())
        return result

    def add_common_argument_parser_arguments(
        self, p: _argparse.ArgumentParser, /
    ) -> None:
        p.add_argument(
            "--config",
            metavar="<path>",
            help=f"YAML config file (default: env {_config.CONFIG_ENV_NAME}, "
            "then environment variables)",
        )
        p.add_argument(
            "--dry-run",
            "-n",
            action="store_true",
            default=None,
            help="""Create and validate the backup, but do not upload it.""",
        )
        p.add_argument(
            "--start-time",
            metavar="<datetime>",
            help="Simulate that the backup was started at <datetime>",
        )
        p.add_argument(
            "--log-level",
            metavar="<level>",
            help="Console log level (default INFO)",
        )
        p.add_argument(
            "--log-file",
            metavar="<path>",
            help="Also write the full (DEBUG) log to <path>",
        )

    def parse_arguments(
        self,
        *,
        argument_parser: _argparse.ArgumentParser | None = None,
        argv: list[str] | None = None,
    ) -> _argparse.Namespace:
        import argparse as _argparse
        import copy as _copy
        import sys as _sys

        from . import _util

        if argv is None:
            argv = _sys.argv
        if argument_parser:
            p = _copy.deepcopy(argument_parser)
        else:
            p = _argparse.ArgumentParser()

        self.add_common_argument_parser_arguments(p)

        args = p.parse_args(argv[1:])
        if args.dry_run is not None:
            self._dry_run = args.dry_run
        if args.log_level and self._stream_handler is not None:
            self._stream_handler.setLevel(_util.to_log_level(args.log_level))
        args.start_time = _util.to_datetime_or_none(args.start_time or None)

        self._parsed_args = args
        return self._parsed_args

    @property
    def parsed_args(self) -> _argparse.Namespace:
        if self._parsed_args is None:
            err_msg = "Command line have not been parsed"
            self._logger.error(err_msg)
            raise RuntimeError(err_msg)
        else:
            return self._parsed_args

    @property
    def config(self) -> _config.BackupConfig:
        return self._config

    @config.setter
    def config(self, value: _config.BackupConfig) -> None:
        self._config = value
        self._logger.debug("config=%r", self._config)

    @property
    def dry_run(self) -> bool:
        """`True` if in dry run mode, `False` otherwise."""
        return self._dry_run

    @dry_run.setter
    def dry_run(self, value: bool) -> None:
        self._dry_run = bool(value)

    @property
    def start_time(self) -> _datetime.datetime:
        return self._start_time

    def configure_log_file(
        self, filename: str | _pathlib.Path, level: int | str | None = None
    ) -> _logging.Handler:
        from . import _util

        _LOGGER.info("[ctx] Writing log file %s", filename)
        file_handler = _util.configure_file_logging(filename, level=level)
        if self._buffering_handler is not None:
            buffering_handler, self._buffering_handler = self._buffering_handler, None
            buffering_handler.setTarget(file_handler)
            buffering_handler.flush()
            _logging.getLogger().removeHandler(buffering_handler)
        return file_handler

    def render_template(
        self,
        template: str,
        *,
        extra_context: dict | None = None,
        extra_filters: dict[str, _typing.Callable] | None = None,
    ) -> str:
        """Render *template* with ``db_name``, ``start_time`` and ``dry_run``.

        >>> from pgcloudbackup import BackupConfig
        >>> ctx = BackupContext(BackupConfig(storage_bucket="b", db_name="shop"),
        ...                     setup_logging=False, parse_arguments=False,
        ...                     start_time="2025-08-15T10:30:27+02:00")
        >>> ctx.render_template("{{ db_name }}/{{ start_time | strftime('%Y/%m') }}/")
        'shop/2025/08/'
        """
        from . import _util

        context = {
            "db_name": self.create_connection().connection_params().get("dbname", ""),
            "start_time": self.start_time,
            "dry_run": self.dry_run,
        }
        return _util.render_template(
            template, context, extra_context=extra_context, extra_filters=extra_filters
        )

    def create_connection(self) -> _connection.ConnectionContext:
        from . import _connection

        return _connection.ConnectionContext(self._config)

    def create_dump_source(self) -> _dump_source.DumpSource:
        from . import _copy_source, _pg_dump_source

        connection = self.create_connection()
        common = dict(
            exclude_schemas=self._config.exclude_schemas,
            on_table_error=self._config.on_table_error,
            include_sequences=self._config.include_sequences,
        )
        if self._config.dump_method == "copy":
            return _copy_source.CopyDumpSource(connection, **common)
        else:
            return _pg_dump_source.PgDumpSource(
                connection,
                dump_format=self._config.dump_format,
                pg_dump_bin=self._config.pg_dump_bin,
                **common,
            )

    def create_storage(self) -> _storage.ObjectStorage:
        from . import _storage

        return _storage.S3Storage(
            self._config.storage_bucket,
            region=self._config.storage_region,
            endpoint_url=self._config.storage_endpoint_url,
            access_key_id=self._config.storage_access_key_id,
            secret_access_key=self._config.storage_secret_access_key,
        )

    def artifact_filename(self) -> str:
        from . import _artifact

        return _artifact.make_backup_filename(
            self.render_template(self._config.filename_prefix),
            self.start_time,
            self.__artifact_extension(),
        )

    def create_artifact(self) -> _artifact.BackupArtifact:
        from . import _artifact

        return _artifact.BackupArtifact.create(
            self._config.scratch_dir,
            prefix=self.render_template(self._config.filename_prefix),
            timestamp=self.start_time,
            ext=self.__artifact_extension(),
        )

    def __artifact_extension(self) -> str:
        from . import _artifact

        dump_format = "plain" if self._config.dump_method == "copy" else self._config.dump_format
        return _artifact.artifact_extension(dump_format, compress=self._config.compress)

    def run_backup(
        self,
        *,
        source: _dump_source.DumpSource | None = None,
        storage: _storage.ObjectStorage | None = None,
    ) -> _pipeline.BackupResult:
        from . import _pipeline

        if source is None:
            source = self.create_dump_source()
        if storage is None:
            storage = self.create_storage()
        self._logger.info(
            "Backup %s to %r%s",
            self.create_connection().describe(),
            storage,
            " (dry run)" if self.dry_run else "",
        )
        return _pipeline.run_backup(
            source=source,
            storage=storage,
            artifact=self.create_artifact(),
            min_size_bytes=self._config.min_size_bytes,
            compress=self._config.compress,
            compress_level=self._config.compress_level,
            dry_run=self.dry_run,
        )


class _UnlimitedBufferingHandler(_logging_handlers.MemoryHandler):
    def __init__(self, target=None, flushOnClose: bool = True) -> None:
        super().__init__(
            10_000_000_000_000,
            flushLevel=_logging.CRITICAL + 10,
            target=target,
            flushOnClose=flushOnClose,
        )

    def shouldFlush(self, record) -> bool:
        return False
