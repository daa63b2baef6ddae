"""Unit tests for the export writer."""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from fakes import FakeDatabase, primary_key_index
from porter.artifacts import ArtifactNamer
from porter.config import ExportConfig
from porter.exceptions import ExportCancelledError, ExportError
from porter.exporter import (
    MIB,
    POSTAMBLE,
    ExportBuffer,
    ExportState,
    ExportWriter,
    optimal_buffer_size,
)
from porter.policy import EntityPolicy, PolicyRegistry
from porter.upload import ChunkedUploadSession
from utils.cancellation import CancellationToken

NAMER = ArtifactNamer(b"test-secret")


def make_db() -> FakeDatabase:
    return FakeDatabase(
        {
            "users": {
                "create": "CREATE TABLE `users` (`id` int, `email` varchar(255))",
                "indexes": primary_key_index(),
                "rows": [
                    {"id": 1, "email": "alice@example.com"},
                    {"id": 2, "email": "bob@example.com"},
                ],
            },
            "audit_logs": {
                "create": "CREATE TABLE `audit_logs` (`id` int, `action` varchar(32))",
                "indexes": primary_key_index(),
                "rows": [{"id": 1, "action": "login"}],
            },
        }
    )


def make_registry() -> PolicyRegistry:
    registry = PolicyRegistry()
    registry.register_policy("audit_logs", EntityPolicy(ignore=True))
    registry.register_policy(
        "users", EntityPolicy(omitted_columns={"email"}, retained_row_keys={1})
    )
    return registry


def client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class TestExportBuffer:
    """Tests for ExportBuffer."""

    def test_full_at_threshold(self):
        buffer = ExportBuffer(threshold=10)
        buffer.write("12345")
        assert not buffer.full
        buffer.write("67890")
        assert buffer.full
        assert buffer.drain() == b"1234567890"
        assert buffer.size == 0
        assert buffer.peak == 10

    def test_counts_encoded_bytes(self):
        buffer = ExportBuffer(threshold=100)
        buffer.write("é")
        assert buffer.size == 2


class TestBufferThreshold:
    """Tests for flush threshold sizing."""

    def test_optimal_buffer_size_caps_at_ten_mib(self):
        with patch("porter.exporter.psutil.virtual_memory") as vm:
            vm.return_value.available = 16 * 1024 * MIB
            assert optimal_buffer_size() == 10 * MIB
            vm.return_value.available = 20 * MIB
            assert optimal_buffer_size() == 2 * MIB

    def test_remote_threshold_never_below_part_minimum(self, tmp_path):
        writer = ExportWriter(make_db(), ExportConfig(buffer_size_mb=1), PolicyRegistry(), namer=NAMER)
        assert writer.buffer_threshold(remote=False) == MIB
        assert writer.buffer_threshold(remote=True) == ChunkedUploadSession.MIN_PART_SIZE


class TestLocalExport:
    """Tests for exports to the local filesystem."""

    @pytest.mark.asyncio
    async def test_ignored_table_keeps_schema_but_no_data(self, tmp_path):
        config = ExportConfig(output_dir=str(tmp_path), faker_seed=3)
        writer = ExportWriter(make_db(), config, make_registry(), namer=NAMER)

        result = await writer.export("dump.sql", drop_if_exists=True)

        dump = Path(result.location).read_text(encoding="utf-8")
        assert result.location == str(tmp_path / "dump.sql")
        assert "DROP TABLE IF EXISTS `audit_logs`;" in dump
        assert "CREATE TABLE `audit_logs`" in dump
        assert "INSERT INTO `audit_logs`" not in dump
        assert result.tables == 2
        assert result.tables_ignored == 1
        assert result.ignored_tables == ["audit_logs"]
        assert writer.state == ExportState.DONE

    @pytest.mark.asyncio
    async def test_start_log_lists_registered_policies(self, tmp_path):
        logger = MagicMock()
        config = ExportConfig(output_dir=str(tmp_path))
        writer = ExportWriter(make_db(), config, make_registry(), namer=NAMER, logger=logger)

        await writer.export("dump.sql")

        start = next(c for c in logger.info.call_args_list if c.args == ("Starting export",))
        assert start.kwargs["policies"] == ["audit_logs", "users"]

    @pytest.mark.asyncio
    async def test_dump_is_bracketed_by_foreign_key_checks(self, tmp_path):
        config = ExportConfig(output_dir=str(tmp_path))
        writer = ExportWriter(make_db(), config, make_registry(), namer=NAMER)

        result = await writer.export("dump.sql")

        dump = Path(result.location).read_text(encoding="utf-8")
        assert dump.index("SET FOREIGN_KEY_CHECKS=0;") < dump.index("CREATE TABLE `users`")
        assert dump.endswith(POSTAMBLE)
        assert "DROP TABLE" not in dump

    @pytest.mark.asyncio
    async def test_retained_and_redacted_rows(self, tmp_path):
        config = ExportConfig(output_dir=str(tmp_path), faker_seed=11)
        writer = ExportWriter(make_db(), config, make_registry(), namer=NAMER)

        result = await writer.export("dump.sql")

        dump = Path(result.location).read_text(encoding="utf-8")
        assert "VALUES (1, 'alice@example.com');" in dump
        assert "bob@example.com" not in dump
        assert "INSERT INTO `users` (`id`, `email`) VALUES (2, '" in dump
        assert result.rows == 2

    @pytest.mark.asyncio
    async def test_result_checksum_and_size(self, tmp_path):
        import hashlib

        writer = ExportWriter(make_db(), ExportConfig(output_dir=str(tmp_path)), make_registry(), namer=NAMER)
        result = await writer.export("dump.sql")

        data = (tmp_path / "dump.sql").read_bytes()
        assert result.bytes_written == len(data)
        assert result.sha256 == hashlib.sha256(data).hexdigest()

    @pytest.mark.asyncio
    async def test_random_filename_when_not_given(self, tmp_path):
        writer = ExportWriter(make_db(), ExportConfig(output_dir=str(tmp_path)), PolicyRegistry(), namer=NAMER)
        result = await writer.export()
        assert result.filename.startswith("export_")
        assert result.filename.endswith(".sql")
        assert (tmp_path / result.filename).exists()

    @pytest.mark.asyncio
    async def test_public_base_url_exposes_token(self, tmp_path):
        config = ExportConfig(output_dir=str(tmp_path), public_base_url="https://files.example.com/dl/")
        writer = ExportWriter(make_db(), config, PolicyRegistry(), namer=NAMER)

        result = await writer.export("dump.sql")

        token = NAMER.token_for("dump.sql")
        assert result.location == f"https://files.example.com/dl/{token}"
        assert NAMER.resolve(result.name) == "dump.sql"
        assert (tmp_path / token).exists()

    @pytest.mark.asyncio
    async def test_buffer_never_exceeds_threshold_by_more_than_one_row(self, tmp_path):
        rows = [{"id": i, "payload": "x" * 100} for i in range(1, 501)]
        db = FakeDatabase(
            {"blobs": {"create": "CREATE TABLE `blobs` (`id` int)", "indexes": primary_key_index(), "rows": rows}}
        )
        writer = ExportWriter(db, ExportConfig(output_dir=str(tmp_path), page_size=50), PolicyRegistry(), namer=NAMER)
        threshold = 4096

        with patch.object(ExportWriter, "buffer_threshold", return_value=threshold):
            result = await writer.export("dump.sql")

        row_size = len("INSERT INTO `blobs` (`id`, `payload`) VALUES (500, '" + "x" * 100 + "');\n")
        assert result.peak_buffer < threshold + row_size
        assert result.parts > 1

    @pytest.mark.asyncio
    async def test_failure_flags_partial_file(self, tmp_path):
        db = make_db()
        db.tables["users"]["indexes"] = "broken"  # type: ignore[assignment]
        writer = ExportWriter(db, ExportConfig(output_dir=str(tmp_path)), PolicyRegistry(), namer=NAMER)

        with pytest.raises(ExportError) as exc_info:
            await writer.export("dump.sql")

        assert exc_info.value.context["table"] == "users"
        assert writer.state == ExportState.FAILED
        assert not (tmp_path / "dump.sql").exists()
        partial = (tmp_path / "dump.sql.partial").read_text(encoding="utf-8")
        assert partial.endswith(POSTAMBLE)

    @pytest.mark.asyncio
    async def test_failure_removes_file_when_not_keeping_partials(self, tmp_path):
        db = make_db()
        db.tables["users"]["indexes"] = "broken"  # type: ignore[assignment]
        config = ExportConfig(output_dir=str(tmp_path), keep_partial=False)
        writer = ExportWriter(db, config, PolicyRegistry(), namer=NAMER)

        with pytest.raises(ExportError):
            await writer.export("dump.sql")

        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_cancellation(self, tmp_path):
        token = CancellationToken()
        token.cancel("user abort")
        writer = ExportWriter(make_db(), ExportConfig(output_dir=str(tmp_path)), PolicyRegistry(), namer=NAMER)

        with pytest.raises(ExportCancelledError, match="user abort"):
            await writer.export("dump.sql", cancel_token=token)

        assert (tmp_path / "dump.sql.partial").exists()


class TestRemoteExport:
    """Tests for exports streamed to object storage."""

    @pytest.mark.asyncio
    async def test_remote_export_uploads_parts_and_signs_url(self, mock_store, metrics):
        config = ExportConfig(expiration_seconds=600)
        writer = ExportWriter(make_db(), config, make_registry(), store=mock_store, namer=NAMER, metrics=metrics)

        result = await writer.export("dump.sql", use_remote_storage=True)

        client = mock_store.client
        token = NAMER.token_for("dump.sql")
        assert result.key == token
        assert result.location == "https://signed.example/dump"
        assert result.parts == 1
        client.create_multipart_upload.assert_called_once()
        assert client.create_multipart_upload.call_args.kwargs["Key"] == token
        parts = client.complete_multipart_upload.call_args.kwargs["MultipartUpload"]["Parts"]
        assert [p["PartNumber"] for p in parts] == [1]
        client.generate_presigned_url.assert_called_once_with(
            "get_object", Params={"Bucket": "dumps", "Key": token}, ExpiresIn=600
        )
        body = client.upload_part.call_args.kwargs["Body"]
        assert body.startswith(b"-- Porter SQL dump")
        assert body.endswith(POSTAMBLE.encode())

    @pytest.mark.asyncio
    async def test_remote_export_public_url_without_expiration(self, mock_store):
        config = ExportConfig(expiration_seconds=None, obfuscate_filenames=False)
        writer = ExportWriter(make_db(), config, PolicyRegistry(), store=mock_store, namer=NAMER)

        result = await writer.export("dump.sql", use_remote_storage=True)

        assert result.location == "https://dumps.s3.eu-west-1.amazonaws.com/dump.sql"

    @pytest.mark.asyncio
    async def test_part_failure_aborts_upload(self, mock_store):
        mock_store.client.upload_part.side_effect = client_error("InternalError", "UploadPart")
        writer = ExportWriter(make_db(), ExportConfig(), PolicyRegistry(), store=mock_store, namer=NAMER)

        with patch("utils.retry.time.sleep"):
            with pytest.raises(ExportError, match="Export failed"):
                await writer.export("dump.sql", use_remote_storage=True)

        mock_store.client.abort_multipart_upload.assert_called_once()
        mock_store.client.complete_multipart_upload.assert_not_called()

    @pytest.mark.asyncio
    async def test_database_failure_aborts_upload(self, mock_store):
        db = make_db()
        db.tables["users"]["indexes"] = "broken"  # type: ignore[assignment]
        writer = ExportWriter(db, ExportConfig(), PolicyRegistry(), store=mock_store, namer=NAMER)

        with pytest.raises(ExportError):
            await writer.export("dump.sql", use_remote_storage=True)

        mock_store.client.abort_multipart_upload.assert_called_once_with(
            Bucket="dumps", Key=NAMER.token_for("dump.sql"), UploadId="upload-1"
        )

    @pytest.mark.asyncio
    async def test_remote_requires_store(self):
        writer = ExportWriter(make_db(), ExportConfig(), PolicyRegistry(), namer=NAMER)
        with pytest.raises(ExportError, match="no object store"):
            await writer.export("dump.sql", use_remote_storage=True)

    @pytest.mark.asyncio
    async def test_presign_failure_is_an_export_error(self, mock_store):
        mock_store.client.generate_presigned_url.side_effect = client_error("AccessDenied", "GetObject")
        config = ExportConfig(expiration_seconds=600)
        writer = ExportWriter(make_db(), config, PolicyRegistry(), store=mock_store, namer=NAMER)

        with pytest.raises(ExportError, match="no link could be generated") as exc_info:
            await writer.export("dump.sql", use_remote_storage=True)

        assert exc_info.value.context["key"] == NAMER.token_for("dump.sql")
        assert writer.state == ExportState.FAILED
        mock_store.client.complete_multipart_upload.assert_called_once()


class TestUnusualIdentifiers:
    """Tables and columns whose names need quoting."""

    @pytest.mark.asyncio
    async def test_hyphenated_spaced_and_non_ascii_names(self, tmp_path):
        db = FakeDatabase(
            {
                "order-items": {
                    "create": "CREATE TABLE `order-items` (`id` int, `first name` varchar(32), `straße` text)",
                    "indexes": primary_key_index(),
                    "rows": [{"id": 1, "first name": "Ann", "straße": "Hauptstraße 1"}],
                },
            }
        )
        registry = PolicyRegistry()
        registry.register_policy("order-items", EntityPolicy(omitted_columns={"straße"}))
        writer = ExportWriter(db, ExportConfig(output_dir=str(tmp_path)), registry, namer=NAMER)

        result = await writer.export("dump.sql")

        text = Path(result.path).read_text(encoding="utf-8")
        assert result.rows == 1
        assert "INSERT INTO `order-items` (`id`, `first name`, `straße`) VALUES (1, 'Ann', '" in text
        assert "Hauptstraße 1" not in text
