import logging as _logging
import os as _os

import pytest


_DB_URL_ENV_NAME = "PGCLOUDBACKUP_TEST_DATABASE_URL"
_SCHEMA = "pgcloudbackup_it"

_SETUP_SQL = f"""
DROP SCHEMA IF EXISTS {_SCHEMA} CASCADE;
CREATE SCHEMA {_SCHEMA};
CREATE TABLE {_SCHEMA}.customers (
    id bigint GENERATED ALWAYS AS IDENTITY PRIMARY KEY,
    name text NOT NULL UNIQUE
);
CREATE TABLE {_SCHEMA}.orders (
    id serial PRIMARY KEY,
    customer_id bigint REFERENCES {_SCHEMA}.customers(id),
    total numeric(10,2) NOT NULL DEFAULT 0 CHECK (total >= 0),
    total_gross numeric GENERATED ALWAYS AS (total * 1.19) STORED,
    note text
);
CREATE SEQUENCE {_SCHEMA}.invoice_no START 1000 INCREMENT 5;
INSERT INTO {_SCHEMA}.customers (name) VALUES ('Ada'), ('Grace'), ('Tab\tand
newline');
INSERT INTO {_SCHEMA}.orders (customer_id, total, note)
SELECT 1 + (i % 3), i * 1.5, 'order ' || i FROM generate_series(1, 500) AS i;
SELECT nextval('{_SCHEMA}.invoice_no');
SELECT nextval('{_SCHEMA}.invoice_no');
"""


@pytest.fixture(scope="session")
def database_url() -> str:
    url = _os.environ.get(_DB_URL_ENV_NAME)
    if not url:
        pytest.skip(f"{_DB_URL_ENV_NAME} not set")
    return url


@pytest.fixture
def backup_schema(database_url) -> str:
    import psycopg

    _logging.debug("Create test schema %s", _SCHEMA)
    with psycopg.connect(database_url, autocommit=True) as conn:
        conn.execute(_SETUP_SQL)
    yield _SCHEMA
    with psycopg.connect(database_url, autocommit=True) as conn:
        conn.execute(f"DROP SCHEMA IF EXISTS {_SCHEMA} CASCADE")


@pytest.fixture
def backup_config(database_url, backup_schema, tmp_path):
    from pgcloudbackup import BackupConfig

    return BackupConfig(
        db_url=database_url,
        storage_bucket="integration-tests",
        scratch_dir=str(tmp_path / "scratch"),
        min_size_bytes=100,
    )


@pytest.fixture
def restore_database_url(database_url):
    """URL of a freshly created, empty database."""
    import psycopg
    from psycopg.conninfo import conninfo_to_dict, make_conninfo

    dbname = "pgcloudbackup_it_restore"
    with psycopg.connect(database_url, autocommit=True) as conn:
        try:
            conn.execute(f"DROP DATABASE IF EXISTS {dbname}")
            conn.execute(f"CREATE DATABASE {dbname}")
        except psycopg.errors.InsufficientPrivilege:
            pytest.skip("test user may not create databases")
    params = conninfo_to_dict(database_url)
    params["dbname"] = dbname
    yield make_conninfo("", **params)
    with psycopg.connect(database_url, autocommit=True) as conn:
        conn.execute(f"DROP DATABASE IF EXISTS {dbname}")
