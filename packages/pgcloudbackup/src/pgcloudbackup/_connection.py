from __future__ import annotations

import contextlib as _contextlib
import logging as _logging
import typing as _typing

from . import _config, _errors, _util


if _typing.TYPE_CHECKING:
    import collections.abc as _collections_abc

    import psycopg as _psycopg
    import sshtunnel as _sshtunnel


__all__ = [
    "ConnectionContext",
]


_LOGGER = _logging.getLogger(__name__)

_DEFAULT_PG_PORT = 5432
_PARAM_ORDER = ("host", "port", "user", "password", "dbname")


class ConnectionContext:
    """Connection parameters of the database to back up.

    Credentials stay in this object and are handed explicitly to
    :obj:`psycopg.connect` or to the environment of a child process.
    """

    _config: _config.BackupConfig
    _logger: _logging.Logger | _logging.LoggerAdapter

    def __init__(self, config: _config.BackupConfig) -> None:
        self._config = config
        self._logger = _util.PrefixLoggerAdapter(_LOGGER, prefix="[db]")

    @property
    def config(self) -> _config.BackupConfig:
        return self._config

    def connection_params(self) -> dict[str, _typing.Any]:
        """Return libpq keyword parameters (``host``, ``port``, ``user``, ...).

        Discrete config fields override values from ``db_url``:

        >>> from pgcloudbackup import BackupConfig
        >>> config = BackupConfig(
        ...     db_url="postgresql://backup:pw@db.internal:6432/shop?sslmode=require",
        ...     db_name="shop_replica",
        ... )
        >>> params = ConnectionContext(config).connection_params()
        >>> sorted(params.items())  # doctest: +NORMALIZE_WHITESPACE
        [('dbname', 'shop_replica'), ('host', 'db.internal'), ('password', 'pw'),
         ('port', 6432), ('sslmode', 'require'), ('user', 'backup')]
        """
        import psycopg
        from psycopg.conninfo import conninfo_to_dict

        params: dict[str, _typing.Any] = {}
        if self._config.db_url:
            try:
                params.update(conninfo_to_dict(self._config.db_url))
            except psycopg.Error as exc:
                # the url may hold the password; keep it out of the message
                raise _errors.DatabaseConnectionError(
                    "Invalid db_url: not a valid connection string"
                ) from exc
        for key, value in [
            ("host", self._config.db_host),
            ("port", self._config.db_port),
            ("user", self._config.db_username),
            ("password", self._config.db_password),
            ("dbname", self._config.db_name),
        ]:
            if value:
                params[key] = value
        params["port"] = int(params.get("port") or _DEFAULT_PG_PORT)
        params.setdefault("host", "localhost")
        ordered = {k: params.pop(k) for k in _PARAM_ORDER if k in params}
        ordered.update(params)
        return ordered

    def describe(self) -> str:
        """Database description for log messages, without password."""
        params = self.connection_params()
        return (
            f"{params.get('user', '')}@{params['host']}:{params['port']}"
            f"/{params.get('dbname', '')}"
        )

    def __create_ssh_forwarder(
        self, *, remote_bind_address: tuple[str, int]
    ) -> _sshtunnel.SSHTunnelForwarder:
        import sshtunnel

        return sshtunnel.SSHTunnelForwarder(
            (self._config.ssh_host, self._config.ssh_port),
            ssh_username=self._config.ssh_username,
            ssh_pkey=self._config.ssh_private_key,
            remote_bind_address=remote_bind_address,
        )

    def __ssh_forwarder_to_str(self, forwarder: _sshtunnel.SSHTunnelForwarder) -> str:
        return f"""
\thost: {forwarder.ssh_host}
\tport: {forwarder.ssh_port}
\tusername: {forwarder.ssh_username}
\tlocal_binds: {forwarder._local_binds}
\tremote_binds: {forwarder._remote_binds}
""".strip("\n ")

    @_contextlib.contextmanager
    def tunnel(self) -> _collections_abc.Iterator[tuple[str, int]]:
        """Yield the ``(host, port)`` to connect to.

        Starts an SSH tunnel for the lifetime of the ``with`` block if
        ``use_ssh_tunnel`` is configured.
        """
        params = self.connection_params()
        if not self._config.use_ssh_tunnel:
            yield params["host"], params["port"]
            return

        import sshtunnel

        forwarder = self.__create_ssh_forwarder(
            remote_bind_address=(params["host"], params["port"])
        )
        self._logger.info(
            "Start SSH tunnel:\n%s", self.__ssh_forwarder_to_str(forwarder)
        )
        try:
            forwarder.start()
        except sshtunnel.BaseSSHTunnelForwarderError as exc:
            raise _errors.DatabaseConnectionError(
                f"Failed to open SSH tunnel to {self._config.ssh_host}: {exc}"
            ) from exc
        try:
            yield forwarder.local_bind_host, forwarder.local_bind_port
        finally:
            self._logger.debug("Stop SSH tunnel")
            forwarder.stop()

    @_contextlib.contextmanager
    def psycopg_connect(self) -> _collections_abc.Iterator[_psycopg.Connection]:
        import psycopg

        with _contextlib.ExitStack() as exit_stack:
            db_host, db_port = exit_stack.enter_context(self.tunnel())
            params = {**self.connection_params(), "host": db_host, "port": db_port}
            self._logger.info("Connect to %s", self.describe())
            try:
                conn = psycopg.connect(**params)
            except psycopg.Error as exc:
                raise _errors.DatabaseConnectionError(
                    f"Failed to connect to {self.describe()}: {exc}"
                ) from exc
            exit_stack.enter_context(conn)
            yield conn

    def libpq_conninfo(self, *, host: str, port: int) -> str:
        """Connection string for client programs, without the password.

        >>> from pgcloudbackup import BackupConfig
        >>> config = BackupConfig(db_host="db", db_username="backup",
        ...                       db_password="pw", db_name="shop")
        >>> ConnectionContext(config).libpq_conninfo(host="127.0.0.1", port=40001)
        'host=127.0.0.1 port=40001 user=backup dbname=shop'
        """
        from psycopg.conninfo import make_conninfo

        params = self.connection_params()
        params.pop("password", None)
        params.update(host=host, port=port)
        return make_conninfo("", **params)

    def subprocess_env(
        self, base_env: _collections_abc.Mapping[str, str] | None = None
    ) -> dict[str, str]:
        """Environment for a libpq client process (``pg_dump``, ``psql``).

        The password is placed in a copy of the environment; the
        interpreter's own :obj:`os.environ` is left untouched.
        """
        import os

        env = dict(os.environ if base_env is None else base_env)
        if password := self.connection_params().get("password"):
            env["PGPASSWORD"] = str(password)
        return env
