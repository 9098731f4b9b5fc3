from __future__ import annotations

import collections.abc as _collections_abc
import logging as _logging
import typing as _typing


if _typing.TYPE_CHECKING:
    import datetime as _datetime
    import pathlib as _pathlib


_LOGGER = _logging.getLogger(__name__)


__all__ = [
    "PrefixLoggerAdapter",
    "configure_file_logging",
    "render_template",
    "shlex_join",
    "to_bool",
    "to_datetime",
    "to_datetime_or_none",
    "to_log_level",
    "to_str_list",
]


class PrefixLoggerAdapter(_logging.LoggerAdapter):
    def __init__(
        self,
        logger: _logging.Logger | _logging.LoggerAdapter,
        *,
        prefix: str,
    ) -> None:
        self._prefix = prefix
        super().__init__(logger)

    def process(self, msg, kwargs):
        return (f"{self._prefix} {msg}", kwargs)


def to_log_level(level: int | str | None, default: int | None = None) -> int:
    """Return the numeric logging level for *level*.

    >>> to_log_level("WARNING")
    30
    >>> to_log_level(None, default=20)
    20
    """
    import logging

    if default is None:
        default = logging.DEBUG
    if level is None:
        return default
    elif isinstance(level, str):
        return logging.getLevelNamesMapping()[level.upper()]
    else:
        return level


def configure_file_logging(
    filename: str | _pathlib.Path,
    *,
    level: int | str | None,
    logger: _logging.Logger | str | None = None,
) -> _logging.Handler:
    import logging

    if logger is None:
        logger = logging.getLogger()
    elif isinstance(logger, str):
        logger = logging.getLogger(logger)
    level = to_log_level(level, default=logging.NOTSET)

    formatter = logging.Formatter("%(asctime)s %(levelname)-1s %(message)s")
    handler = logging.FileHandler(filename, encoding="utf-8")
    handler.setFormatter(formatter)
    handler.setLevel(level)
    logger.addHandler(handler)
    return handler


def to_bool(name: str, value: bool | str | int) -> bool:
    """Interpret a config value as boolean.

    >>> to_bool("compress", "yes")
    True
    >>> to_bool("compress", "F")
    False
    >>> to_bool("compress", "maybe")
    Traceback (most recent call last):
    ...
    ValueError: Invalid config compress! Expected bool, got 'maybe'
    """
    if isinstance(value, bool):
        return value
    s_low = str(value).strip().lower()
    if s_low in {"true", "t", "1", "yes"}:
        return True
    elif s_low in {"false", "f", "0", "no"}:
        return False
    else:
        raise ValueError(f"Invalid config {name}! Expected bool, got {value!r}")


@_typing.overload
def to_str_list(str_or_list: None) -> None: ...


@_typing.overload
def to_str_list(str_or_list: str | _collections_abc.Iterable[str]) -> list[str]: ...


def to_str_list(str_or_list) -> list[str] | None:
    """Return a list of non-empty strings.

    Strings are split at commas:

    >>> to_str_list("pg_catalog, information_schema")
    ['pg_catalog', 'information_schema']
    >>> to_str_list(["audit", ""])
    ['audit']
    """
    if str_or_list is None:
        return None
    if isinstance(str_or_list, str):
        str_or_list = str_or_list.split(",")
    return [str(x).strip() for x in str_or_list if x and str(x).strip()]


@_typing.overload
def to_datetime_or_none(
    dt: _datetime.datetime | str | float | int, /
) -> _datetime.datetime: ...


@_typing.overload
def to_datetime_or_none(dt: None, /) -> None: ...


def to_datetime_or_none(
    dt: _datetime.datetime | str | float | int | None, /
) -> _datetime.datetime | None:
    """Return a datetime.

    >>> import datetime
    >>> to_datetime_or_none(None) is None
    True
    >>> to_datetime_or_none("0")
    datetime.datetime(1970, 1, 1, 0, 0, tzinfo=datetime.timezone.utc)
    """
    return None if dt is None else to_datetime(dt)


def to_datetime(
    dt: _datetime.datetime | str | float | int | None, /
) -> _datetime.datetime:
    """Return an aware datetime.

    >>> import datetime
    >>> to_datetime(0)
    datetime.datetime(1970, 1, 1, 0, 0, tzinfo=datetime.timezone.utc)
    >>> to_datetime("2024-01-02T03:04:05.000Z")
    datetime.datetime(2024, 1, 2, 3, 4, 5, tzinfo=datetime.timezone.utc)
    >>> to_datetime("2024-01-02 04:04:05+01:00").astimezone(datetime.timezone.utc)
    datetime.datetime(2024, 1, 2, 3, 4, 5, tzinfo=datetime.timezone.utc)

    ..
       >>> import datetime as _dt
       >>> _tm = getfixture("time_machine")
       >>> _tm.move_to(_dt.datetime(2024, 1, 2, 3, 4, 5, tzinfo=_dt.timezone.utc), tick=False)

    >>> to_datetime("NOW").astimezone(datetime.timezone.utc)
    datetime.datetime(2024, 1, 2, 3, 4, 5, tzinfo=datetime.timezone.utc)
    >>> to_datetime("yesterday")
    Traceback (most recent call last):
    ...
    ValueError: Unsupported datetime format: 'yesterday'
    """
    import datetime
    import re

    def normalize_tz(dt: datetime.datetime) -> datetime.datetime:
        if not dt.tzinfo:
            return dt.astimezone()
        else:
            return dt

    if dt is None:
        return datetime.datetime.now().astimezone()
    elif isinstance(dt, datetime.datetime):
        return normalize_tz(dt)
    elif isinstance(dt, (float, int)):
        return datetime.datetime.fromtimestamp(dt, tz=datetime.timezone.utc)
    elif isinstance(dt, str):
        if dt.upper() == "NOW":
            return datetime.datetime.now().astimezone()
        elif re.fullmatch("[0-9]+", dt):
            return datetime.datetime.fromtimestamp(int(dt), tz=datetime.timezone.utc)
        else:
            try:
                iso_dt = datetime.datetime.fromisoformat(dt)
                return normalize_tz(iso_dt)
            except ValueError:
                raise ValueError(f"Unsupported datetime format: {dt!r}") from None
    else:
        raise ValueError(
            f"Cannot convert {type(dt).__qualname__!r} value {dt!r} to datetime"
        )


def render_template(
    template: str,
    context: dict | None,
    *,
    extra_context: dict | None = None,
    extra_filters: dict[str, _typing.Callable] | None = None,
) -> str:
    """Render the Jinja2 *template* using *context*.

    >>> render_template("{{ db_name }}-", dict(db_name="shop"))
    'shop-'

    >>> import datetime as dt
    >>> now = dt.datetime(2025, 8, 15, 10, 30, 27, 1234, tzinfo=dt.timezone.utc)
    >>> render_template("{{ start_time | strftime('%Y%m') }}/", {'start_time': now})
    '202508/'

    Available filters:

    * ``strftime`` - calls :obj:`datetime.datetime.strftime`
    * ``isoformat`` - calls :obj:`datetime.datetime.isoformat`
    """
    import jinja2 as _jinja2

    def _strftime(dt: _datetime.datetime, format="%Y-%m-%d %H:%M:%S") -> str:
        return dt.strftime(format)

    def _isoformat(dt: _datetime.datetime, sep=" ", timespec="seconds") -> str:
        return dt.isoformat(sep=sep, timespec=timespec)

    jinja_env = _jinja2.Environment(undefined=_jinja2.StrictUndefined)
    jinja_env.filters["strftime"] = _strftime
    jinja_env.filters["isoformat"] = _isoformat
    jinja_env.filters.update(extra_filters or {})
    jinja_template = jinja_env.from_string(template)
    context = (context or {}).copy()
    context.update(extra_context or {})
    return jinja_template.render(context)


def shlex_join(args: _collections_abc.Iterable[object]) -> str:
    """Shell-quote *args* for logging.

    >>> shlex_join(["pg_dump", "--dbname=host=db user=backup"])
    "pg_dump '--dbname=host=db user=backup'"
    """
    import shlex

    return " ".join(shlex.quote(str(a)) for a in args)
