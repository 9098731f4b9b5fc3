from __future__ import annotations

import shutil
import subprocess

import pgcloudbackup
import psycopg
import pytest
from pytest_pgcloudbackup import RecordingStorage, read_artifact


def _backup(config: pgcloudbackup.BackupConfig, tmp_path):
    ctx = pgcloudbackup.BackupContext(
        config,
        setup_logging=False,
        parse_arguments=False,
        start_time="2027-08-01T08:00:00Z",
    )
    storage = RecordingStorage()
    result = ctx.run_backup(storage=storage)
    downloaded = tmp_path / result.object_name
    downloaded.write_bytes(storage.objects[result.object_name])
    return result, downloaded


def _restore(dump_path, restore_database_url):
    psql = shutil.which("psql")
    if psql is None:
        pytest.skip("psql not installed")
    sql_path = dump_path.with_suffix(".sql")
    sql_path.write_bytes(read_artifact(dump_path))
    subprocess.run(
        [
            psql,
            "--no-psqlrc",
            "--quiet",
            "--set=ON_ERROR_STOP=1",
            f"--dbname={restore_database_url}",
            f"--file={sql_path}",
        ],
        check=True,
    )


def _snapshot(url: str, schema: str) -> dict:
    with psycopg.connect(url) as conn:
        return {
            "customers": conn.execute(
                f"SELECT id, name FROM {schema}.customers ORDER BY id"
            ).fetchall(),
            "orders": conn.execute(
                f"SELECT id, customer_id, total, total_gross, note "
                f"FROM {schema}.orders ORDER BY id"
            ).fetchall(),
            "invoice_no": conn.execute(
                f"SELECT last_value, is_called FROM {schema}.invoice_no"
            ).fetchone(),
            "next_order_id": conn.execute(
                f"SELECT nextval(pg_get_serial_sequence('{schema}.orders', 'id'))"
            ).fetchone(),
        }


class Test_CopyDumpSource:
    def test_backup_and_restore(
        self, backup_config, backup_schema, restore_database_url, database_url, tmp_path
    ):
        config = backup_config.replace(dump_method="copy")
        result, downloaded = _backup(config, tmp_path)

        assert result.uploaded
        assert f'"{backup_schema}"."orders"' in result.stats.tables_dumped
        assert result.stats.rows >= 503
        assert downloaded.name == "backup-2027-08-01T08-00-00-000Z.gz"

        _restore(downloaded, restore_database_url)
        assert _snapshot(restore_database_url, backup_schema) == _snapshot(
            database_url, backup_schema
        )

    def test_foreign_key_restored(
        self, backup_config, backup_schema, restore_database_url, tmp_path
    ):
        _, downloaded = _backup(backup_config.replace(dump_method="copy"), tmp_path)
        _restore(downloaded, restore_database_url)
        with psycopg.connect(restore_database_url) as conn:
            with pytest.raises(psycopg.errors.ForeignKeyViolation):
                conn.execute(
                    f"INSERT INTO {backup_schema}.orders (customer_id) VALUES (999)"
                )


class Test_PgDumpSource:
    def test_backup_and_restore(
        self, backup_config, backup_schema, restore_database_url, database_url, tmp_path
    ):
        if shutil.which(backup_config.pg_dump_bin) is None:
            pytest.skip("pg_dump not installed")
        result, downloaded = _backup(backup_config, tmp_path)
        assert result.uploaded
        assert b"COPY " in read_artifact(downloaded)

        _restore(downloaded, restore_database_url)
        assert _snapshot(restore_database_url, backup_schema) == _snapshot(
            database_url, backup_schema
        )


class Test_tools_db_backup:
    def test_dry_run(self, backup_config, database_url, tmp_path):
        from pytest_pgcloudbackup import run_script

        out = run_script(
            "tools/db_backup.py",
            "--dry-run",
            "--dump-method=copy",
            "--log-file",
            tmp_path / "backup.log",
            env_update={
                "BACKUP_DATABASE_URL": database_url,
                "BACKUP_S3_BUCKET": "integration-tests",
                "BACKUP_SCRATCH_DIR": str(tmp_path / "scratch"),
                "BACKUP_MIN_SIZE_BYTES": "100",
                "PGCLOUDBACKUP_CONFIG": "",
            },
            stdout=subprocess.PIPE,
        )
        assert "Dry run: skip upload" in out.stdout.decode()
        assert list((tmp_path / "scratch").iterdir()) == []
        assert "Dry run: skip upload" in (tmp_path / "backup.log").read_text()
