from __future__ import annotations

import collections.abc as _collections_abc
import dataclasses as _dataclasses
import logging as _logging
import os as _os
import pathlib as _pathlib
import typing as _typing

from . import _util


__all__ = [
    "BackupConfig",
    "DumpFormat",
    "DumpMethod",
    "TableErrorPolicy",
]


_LOGGER = _logging.getLogger(__name__)

DumpMethod = _typing.Literal["copy", "pg_dump"]
DumpFormat = _typing.Literal["plain", "tar"]
TableErrorPolicy = _typing.Literal["abort", "skip"]

_DUMP_METHODS = ("copy", "pg_dump")
_DUMP_FORMATS = ("plain", "tar")
_TABLE_ERROR_POLICIES = ("abort", "skip")

DEFAULT_EXCLUDE_SCHEMAS = ("pg_catalog", "information_schema")

CONFIG_ENV_NAME = "PGCLOUDBACKUP_CONFIG"

# (option, env names); the first env name that is set wins
_ENV_NAMES: list[tuple[str, tuple[str, ...]]] = [
    ("db_url", ("BACKUP_DATABASE_URL", "DATABASE_URL")),
    ("db_host", ("PGHOST",)),
    ("db_port", ("PGPORT",)),
    ("db_username", ("PGUSER",)),
    ("db_password", ("PGPASSWORD",)),
    ("db_name", ("PGDATABASE",)),
    ("use_ssh_tunnel", ("BACKUP_SSH_TUNNEL",)),
    ("ssh_host", ("BACKUP_SSH_HOST",)),
    ("ssh_port", ("BACKUP_SSH_PORT",)),
    ("ssh_username", ("BACKUP_SSH_USERNAME",)),
    ("ssh_private_key", ("BACKUP_SSH_PRIVATE_KEY",)),
    ("storage_bucket", ("BACKUP_S3_BUCKET",)),
    ("storage_region", ("AWS_REGION", "AWS_DEFAULT_REGION")),
    ("storage_endpoint_url", ("AWS_ENDPOINT_URL",)),
    ("storage_access_key_id", ("AWS_ACCESS_KEY_ID",)),
    ("storage_secret_access_key", ("AWS_SECRET_ACCESS_KEY",)),
    ("filename_prefix", ("BACKUP_FILENAME_PREFIX",)),
    ("dump_method", ("BACKUP_DUMP_METHOD",)),
    ("dump_format", ("BACKUP_DUMP_FORMAT",)),
    ("on_table_error", ("BACKUP_ON_TABLE_ERROR",)),
    ("include_sequences", ("BACKUP_INCLUDE_SEQUENCES",)),
    ("exclude_schemas", ("BACKUP_EXCLUDE_SCHEMAS",)),
    ("compress", ("BACKUP_COMPRESS",)),
    ("compress_level", ("BACKUP_COMPRESS_LEVEL",)),
    ("min_size_bytes", ("BACKUP_MIN_SIZE_BYTES",)),
    ("scratch_dir", ("BACKUP_SCRATCH_DIR",)),
    ("pg_dump_bin", ("BACKUP_PG_DUMP_BIN",)),
]

_SECRET_OPTIONS = frozenset(
    ["db_password", "storage_secret_access_key", "db_url", "ssh_private_key"]
)


def _default_scratch_dir() -> str:
    import tempfile

    return str(_pathlib.Path(tempfile.gettempdir()) / "pgcloudbackup")


@_dataclasses.dataclass(frozen=True, slots=True, kw_only=True)
class BackupConfig:
    """Options of one backup run.

    >>> config = BackupConfig(storage_bucket="backups", db_password="s3cr3t")
    >>> config.dump_method, config.on_table_error, config.min_size_bytes
    ('pg_dump', 'abort', 1000)
    >>> "s3cr3t" in repr(config)
    False
    """

    db_url: str = _dataclasses.field(default="", repr=False)
    db_host: str = ""
    db_port: int = 0
    db_username: str = ""
    db_password: str = _dataclasses.field(default="", repr=False)
    db_name: str = ""

    use_ssh_tunnel: bool = False
    ssh_host: str = ""
    ssh_port: int = 22
    ssh_username: str = ""
    ssh_private_key: str = _dataclasses.field(default="", repr=False)

    storage_bucket: str = ""
    storage_region: str = ""
    storage_endpoint_url: str = ""
    storage_access_key_id: str = ""
    storage_secret_access_key: str = _dataclasses.field(default="", repr=False)

    filename_prefix: str = ""
    dump_method: DumpMethod = "pg_dump"
    dump_format: DumpFormat = "plain"
    on_table_error: TableErrorPolicy = "abort"
    include_sequences: bool = True
    exclude_schemas: tuple[str, ...] = DEFAULT_EXCLUDE_SCHEMAS
    compress: bool = True
    compress_level: int = 6
    min_size_bytes: int = 1000
    scratch_dir: str = _dataclasses.field(default_factory=_default_scratch_dir)
    pg_dump_bin: str = "pg_dump"

    def __post_init__(self) -> None:
        if self.dump_method not in _DUMP_METHODS:
            raise ValueError(
                f"Invalid config dump_method! Expected one of {_DUMP_METHODS}, "
                f"got {self.dump_method!r}"
            )
        if self.dump_format not in _DUMP_FORMATS:
            raise ValueError(
                f"Invalid config dump_format! Expected one of {_DUMP_FORMATS}, "
                f"got {self.dump_format!r}"
            )
        if self.on_table_error not in _TABLE_ERROR_POLICIES:
            raise ValueError(
                f"Invalid config on_table_error! Expected one of "
                f"{_TABLE_ERROR_POLICIES}, got {self.on_table_error!r}"
            )
        if self.dump_method == "copy" and self.dump_format != "plain":
            raise ValueError("Invalid config: dump_method 'copy' only supports 'plain'")
        if not 0 <= self.compress_level <= 9:
            raise ValueError(
                f"Invalid config compress_level! Expected 0..9, got {self.compress_level}"
            )
        if self.min_size_bytes < 0:
            raise ValueError(
                f"Invalid config min_size_bytes! Expected >= 0, got {self.min_size_bytes}"
            )

    def replace(self, **kwargs: _typing.Any) -> _typing.Self:
        """Return a copy with the options in *kwargs* that are not `None` changed.

        >>> BackupConfig(storage_bucket="b").replace(dump_method="copy", compress=None).dump_method
        'copy'
        """
        changes = {k: v for k, v in kwargs.items() if v is not None}
        return _dataclasses.replace(self, **changes)

    @classmethod
    def from_dict(
        cls, config: _collections_abc.Mapping[str, _typing.Any], /
    ) -> _typing.Self:
        """Create a config from a mapping of option names to raw values.

        Values coming from YAML or the environment are coerced:

        >>> c = BackupConfig.from_dict({
        ...     "storage_bucket": "backups",
        ...     "db_port": "6432",
        ...     "include_sequences": "no",
        ...     "exclude_schemas": "pg_catalog,information_schema,audit",
        ... })
        >>> c.db_port, c.include_sequences, c.exclude_schemas
        (6432, False, ('pg_catalog', 'information_schema', 'audit'))

        >>> BackupConfig.from_dict({"storage_bucket": "b", "colour": "blue"})
        Traceback (most recent call last):
        ...
        ValueError: Unknown config option(s): colour
        """
        fields = {f.name: f for f in _dataclasses.fields(cls)}
        if unknown := sorted(set(config) - set(fields)):
            raise ValueError(f"Unknown config option(s): {', '.join(unknown)}")

        kwargs: dict[str, _typing.Any] = {}
        for name, raw_value in config.items():
            if raw_value is None:
                continue
            kwargs[name] = _coerce(name, fields[name].type, raw_value)

        if not kwargs.get("storage_bucket"):
            raise ValueError("Invalid config: storage_bucket is required")
        return cls(**kwargs)

    @classmethod
    def from_file(cls, path: str | _pathlib.Path | None = None) -> _typing.Self:
        import yaml as _yaml

        if path is None:
            _LOGGER.debug("[config] Check if env %s is set", CONFIG_ENV_NAME)
            if (path_from_env := _os.environ.get(CONFIG_ENV_NAME)) is not None:
                _LOGGER.info("[config] Use env %s=%s", CONFIG_ENV_NAME, path_from_env)
                path = path_from_env
            else:
                path = "pgcloudbackup.yml"
        _LOGGER.info("[config] Read config file %s", path)
        path = _pathlib.Path(path)
        with open(path, "r", encoding="utf-8") as f:
            config = _yaml.load(f, Loader=_yaml.FullLoader)
        if not isinstance(config, dict):
            raise ValueError(f"Invalid config file {path}: expected a mapping")
        return cls.from_dict(config)

    @classmethod
    def from_env(
        cls, env: _collections_abc.Mapping[str, str] | None = None
    ) -> _typing.Self:
        """Create a config from environment variables.

        >>> c = BackupConfig.from_env({
        ...     "BACKUP_S3_BUCKET": "backups",
        ...     "DATABASE_URL": "postgresql://backup@db/shop",
        ...     "BACKUP_ON_TABLE_ERROR": "skip",
        ... })
        >>> c.storage_bucket, c.on_table_error
        ('backups', 'skip')
        """
        if env is None:
            env = _os.environ
        config: dict[str, str] = {}
        for name, env_names in _ENV_NAMES:
            for env_name in env_names:
                if (env_val := env.get(env_name)) is not None and env_val != "":
                    if name in _SECRET_OPTIONS:
                        _LOGGER.debug("[config] %s from env %s (hidden)", name, env_name)
                    else:
                        _LOGGER.debug("[config] %s=%s from env %s", name, env_val, env_name)
                    config[name] = env_val
                    break
        return cls.from_dict(config)

    @classmethod
    def load(cls, path: str | _pathlib.Path | None = None) -> _typing.Self:
        """Read the config file if one is given or configured, else the env."""
        if path is not None or _os.environ.get(CONFIG_ENV_NAME):
            return cls.from_file(path)
        _LOGGER.info("[config] No config file given, reading environment")
        return cls.from_env()


def _coerce(name: str, field_type: _typing.Any, raw_value: _typing.Any) -> _typing.Any:
    # dataclass field types are strings because of `from __future__ import annotations`
    type_str = str(field_type)
    if type_str == "bool":
        return _util.to_bool(name, raw_value)
    elif type_str == "int":
        try:
            return int(raw_value)
        except (TypeError, ValueError):
            raise ValueError(
                f"Invalid config {name}! Expected int, got {raw_value!r}"
            ) from None
    elif type_str.startswith("tuple"):
        return tuple(_util.to_str_list(raw_value) or ())
    else:
        return str(raw_value)
