import logging
import pathlib

import pytest
from pgcloudbackup import (
    ArtifactTooSmall,
    DumpError,
    NoAccessibleTables,
    TableRef,
    TransferError,
    run_backup,
)
from pytest_pgcloudbackup import FakeDumpSource, RecordingStorage, read_artifact


class Test_run_backup:
    def test_success(self, artifact, storage, incompressible_payload):
        source = FakeDumpSource(incompressible_payload)
        result = run_backup(source=source, storage=storage, artifact=artifact)

        assert result.uploaded
        assert result.object_name == "test-backup-2024-01-02T03-04-05-000Z.gz"
        assert list(storage.objects) == [artifact.filename]
        assert artifact.size_bytes == len(storage.objects[artifact.filename])
        assert result.stats.tables_dumped == ['"public"."orders"']
        assert result.stats.uncompressed_bytes == len(incompressible_payload)
        assert not artifact.local_path.exists()

    def test_uploaded_object_decompresses_to_dump(
        self, artifact, storage, incompressible_payload, tmp_path
    ):
        run_backup(
            source=FakeDumpSource(incompressible_payload),
            storage=storage,
            artifact=artifact,
        )
        downloaded = tmp_path / artifact.filename
        downloaded.write_bytes(storage.objects[artifact.filename])
        assert read_artifact(downloaded) == incompressible_payload

    def test_empty_database_is_too_small(self, artifact, storage):
        with pytest.raises(ArtifactTooSmall) as exc_info:
            run_backup(source=FakeDumpSource(b""), storage=storage, artifact=artifact)
        assert exc_info.value.min_size_bytes == 1000
        assert exc_info.value.size_bytes < 1000
        assert storage.upload_calls == 0
        assert not artifact.local_path.exists()

    @pytest.mark.parametrize(
        "payload_size,min_size_bytes,ok",
        [
            (999, 1000, False),
            (1000, 1000, True),
            (1001, 1000, True),
            (0, 0, True),
        ],
    )
    def test_size_gate(self, artifact, storage, payload_size, min_size_bytes, ok):
        source = FakeDumpSource(b"x" * payload_size)
        if ok:
            result = run_backup(
                source=source,
                storage=storage,
                artifact=artifact,
                min_size_bytes=min_size_bytes,
                compress=False,
            )
            assert result.artifact.size_bytes == payload_size
            assert storage.upload_calls == 1
        else:
            with pytest.raises(ArtifactTooSmall):
                run_backup(
                    source=source,
                    storage=storage,
                    artifact=artifact,
                    min_size_bytes=min_size_bytes,
                    compress=False,
                )
            assert storage.upload_calls == 0
        assert not artifact.local_path.exists()

    def test_no_accessible_tables(self, artifact, storage):
        source = FakeDumpSource(
            b"never written",
            tables=[TableRef("public", "secrets", selectable=False)],
        )
        with pytest.raises(NoAccessibleTables, match="No accessible tables found"):
            run_backup(source=source, storage=storage, artifact=artifact)
        assert source.write_dump_calls == 0
        assert storage.upload_calls == 0
        assert not artifact.local_path.exists()

    def test_no_tables_at_all(self, artifact, storage):
        source = FakeDumpSource(b"", tables=[])
        with pytest.raises(NoAccessibleTables):
            run_backup(source=source, storage=storage, artifact=artifact)

    def test_unreadable_table__abort(self, artifact, storage, incompressible_payload):
        source = FakeDumpSource(
            incompressible_payload,
            tables=[
                TableRef("public", "orders"),
                TableRef("public", "secrets", selectable=False),
            ],
        )
        with pytest.raises(DumpError, match="secrets") as exc_info:
            run_backup(source=source, storage=storage, artifact=artifact)
        assert exc_info.value.table == '"public"."secrets"'
        assert storage.upload_calls == 0

    def test_unreadable_table__skip(self, artifact, storage, incompressible_payload):
        source = FakeDumpSource(
            incompressible_payload,
            tables=[
                TableRef("public", "orders"),
                TableRef("public", "secrets", selectable=False),
            ],
            on_table_error="skip",
        )
        result = run_backup(source=source, storage=storage, artifact=artifact)
        assert result.stats.tables_dumped == ['"public"."orders"']
        assert result.stats.tables_skipped == ['"public"."secrets"']

    def test_transfer_failure(self, artifact, incompressible_payload):
        storage = RecordingStorage(fail_with=TransferError("network down"))
        with pytest.raises(TransferError, match="network down"):
            run_backup(
                source=FakeDumpSource(incompressible_payload),
                storage=storage,
                artifact=artifact,
            )
        assert storage.upload_calls == 1
        assert not artifact.local_path.exists()

    def test_dump_failure(self, artifact, storage):
        source = FakeDumpSource(b"partial", fail_with=DumpError("pg_dump exited"))
        with pytest.raises(DumpError, match="pg_dump exited"):
            run_backup(source=source, storage=storage, artifact=artifact)
        assert storage.upload_calls == 0
        assert not artifact.local_path.exists()

    def test_write_failure_becomes_dump_error(self, artifact, storage):
        source = FakeDumpSource(b"partial", fail_with=OSError(28, "No space left"))
        with pytest.raises(DumpError, match="No space left") as exc_info:
            run_backup(source=source, storage=storage, artifact=artifact)
        assert isinstance(exc_info.value.__cause__, OSError)
        assert not artifact.local_path.exists()

    def test_dry_run(self, artifact, storage, incompressible_payload):
        result = run_backup(
            source=FakeDumpSource(incompressible_payload),
            storage=storage,
            artifact=artifact,
            dry_run=True,
        )
        assert not result.uploaded
        assert result.artifact.size_bytes is not None
        assert storage.upload_calls == 0
        assert not artifact.local_path.exists()

    def test_cleanup_failure_is_only_logged(
        self, artifact, storage, incompressible_payload, monkeypatch, caplog
    ):
        staged = artifact.local_path
        real_unlink = pathlib.Path.unlink

        def failing_unlink(self, missing_ok=False):
            if self == staged:
                raise PermissionError(13, "Permission denied")
            return real_unlink(self, missing_ok=missing_ok)

        monkeypatch.setattr(pathlib.Path, "unlink", failing_unlink)
        with caplog.at_level(logging.WARNING):
            result = run_backup(
                source=FakeDumpSource(incompressible_payload),
                storage=storage,
                artifact=artifact,
            )
        assert result.uploaded
        assert "Failed to delete" in caplog.text
        monkeypatch.undo()
        staged.unlink()

    def test_fatal_errors_are_logged(self, artifact, storage, caplog):
        with caplog.at_level(logging.ERROR):
            with pytest.raises(ArtifactTooSmall):
                run_backup(
                    source=FakeDumpSource(b""), storage=storage, artifact=artifact
                )
        assert "ArtifactTooSmall" in caplog.text
