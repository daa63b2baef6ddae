"""Export writer: streams every table into a bounded buffer flushed to a local or remote sink."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import psutil
import structlog

from porter.artifacts import ArtifactNamer, generate_filename
from porter.config import ExportConfig
from porter.database import DatabaseManager
from porter.exceptions import ExportCancelledError, ExportError, StorageError
from porter.metrics import PorterMetrics
from porter.policy import PolicyRegistry
from porter.redaction import RowTransformer
from porter.schema_emitter import SchemaEmitter
from porter.serializer import SQLSerializer
from porter.storage import ObjectStore
from porter.table_data import TableDataGenerator
from porter.upload import ChunkedUploadSession
from utils.cancellation import CancellationToken, OperationCancelled
from utils.checksum import RunningChecksum
from utils.logging import get_logger

MIB = 1024 * 1024
MAX_DEFAULT_BUFFER = 10 * MIB

POSTAMBLE = "SET FOREIGN_KEY_CHECKS=1;\n"


def optimal_buffer_size() -> int:
    """min(10 MiB, a tenth of currently available memory)."""
    available = psutil.virtual_memory().available
    return int(min(MAX_DEFAULT_BUFFER, available // 10))


class ExportState(str, Enum):
    """Export writer states."""

    IDLE = "idle"
    SCHEMA = "schema"
    DATA = "data"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


class ExportBuffer:
    """In-memory staging area; the writer drains it once it reaches ``threshold``."""

    def __init__(self, threshold: int) -> None:
        self.threshold = threshold
        self._data = bytearray()
        self.peak = 0

    def write(self, text: str) -> None:
        self._data += text.encode("utf-8")
        self.peak = max(self.peak, len(self._data))

    @property
    def size(self) -> int:
        return len(self._data)

    @property
    def full(self) -> bool:
        return len(self._data) >= self.threshold

    def drain(self) -> bytes:
        data = bytes(self._data)
        self._data.clear()
        return data


class LocalSink:
    """Appends flushes to a file; on failure the file is flagged ``.partial`` or removed."""

    kind = "local"

    def __init__(
        self,
        path: Path,
        keep_partial: bool = True,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        self.path = path
        self.keep_partial = keep_partial
        self.logger = logger or get_logger("exporter")
        self._file: Optional[Any] = None
        self.parts = 0

    def open(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.path, "wb")

    def write(self, data: bytes) -> None:
        assert self._file is not None
        self._file.write(data)
        self.parts += 1

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def discard(self, tail: bytes) -> None:
        """Close the file after writing ``tail``, then flag or delete it."""
        if self._file is not None:
            try:
                self._file.write(tail)
            except OSError as e:
                self.logger.warning("Could not finish partial dump", path=str(self.path), error=str(e))
            self.close()

        if not self.path.exists():
            return
        if self.keep_partial:
            partial = self.path.with_name(self.path.name + ".partial")
            self.path.replace(partial)
            self.logger.warning("Partial dump kept for inspection", path=str(partial))
        else:
            self.path.unlink()
            self.logger.warning("Partial dump removed", path=str(self.path))


class RemoteSink:
    """Sends each flush as the next part of a multipart upload."""

    kind = "remote"

    def __init__(self, session: ChunkedUploadSession) -> None:
        self.session = session

    @property
    def parts(self) -> int:
        return len(self.session.state.completed_parts) if self.session.state else 0

    def open(self) -> None:
        self.session.open()

    def write(self, data: bytes) -> None:
        self.session.upload_next(data)

    def close(self) -> None:
        self.session.complete()

    def discard(self, tail: bytes) -> None:
        self.session.abort()


@dataclass
class ExportResult:
    """Outcome of a finished export."""

    location: str
    filename: str
    name: str
    sink: str
    path: Optional[Path] = None
    key: Optional[str] = None
    tables: int = 0
    tables_ignored: int = 0
    rows: int = 0
    bytes_written: int = 0
    parts: int = 0
    sha256: str = ""
    peak_buffer: int = 0
    ignored_tables: list[str] = field(default_factory=list)


class ExportWriter:
    """Drives schema emission and row streaming for every table of the database."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        config: ExportConfig,
        registry: PolicyRegistry,
        store: Optional[ObjectStore] = None,
        namer: Optional[ArtifactNamer] = None,
        metrics: Optional[PorterMetrics] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize export writer.

        Args:
            db_manager: Connected database manager
            config: Export settings
            registry: Table export policies
            store: Object store for remote exports
            namer: Token generator for publicly exposed dump names
            metrics: Optional metrics sink
            logger: Optional logger instance
        """
        self.db_manager = db_manager
        self.config = config
        self.registry = registry
        self.store = store
        self.metrics = metrics
        self.logger = logger or get_logger("exporter")
        self.namer = namer or ArtifactNamer.from_env(config.token_secret_env)

        self.schema = SchemaEmitter(db_manager, logger=self.logger)
        self.transformer = RowTransformer(
            locale=config.faker_locale,
            seed=config.faker_seed,
            logger=self.logger,
        )
        self.serializer = SQLSerializer(
            empty_strings_as_null=config.empty_strings_as_null,
            logger=self.logger,
        )
        self.generator = TableDataGenerator(
            db_manager,
            self.schema,
            self.transformer,
            self.serializer,
            page_size=config.page_size,
            logger=self.logger,
        )

        self.state = ExportState.IDLE
        self.current_table: Optional[str] = None

    def _transition(self, state: ExportState) -> None:
        self.logger.debug(
            "Export state change",
            previous=self.state.value,
            state=state.value,
            table=self.current_table,
        )
        self.state = state

    def buffer_threshold(self, remote: bool) -> int:
        """Flush threshold in bytes; never below the multipart minimum for remote sinks."""
        if self.config.buffer_size_mb:
            threshold = self.config.buffer_size_mb * MIB
        else:
            threshold = optimal_buffer_size()
        if remote:
            threshold = max(threshold, ChunkedUploadSession.MIN_PART_SIZE)
        return threshold

    @staticmethod
    def preamble(drop_if_exists: bool) -> str:
        lines = [
            "-- Porter SQL dump",
            "SET NAMES utf8mb4;",
            "SET FOREIGN_KEY_CHECKS=0;",
        ]
        if drop_if_exists:
            lines.append("-- Adding DROP IF EXISTS for each table")
        return "\n".join(lines) + "\n\n"

    async def export(
        self,
        output_identifier: Optional[str] = None,
        drop_if_exists: Optional[bool] = None,
        use_remote_storage: Optional[bool] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ExportResult:
        """Export the whole database as a SQL dump.

        Args:
            output_identifier: Dump filename (random ``export_*.sql`` if omitted)
            drop_if_exists: Emit DROP TABLE IF EXISTS (config default if None)
            use_remote_storage: Upload instead of writing locally (config default if None)
            cancel_token: Checked between tables and pages

        Returns:
            ExportResult whose ``location`` is a path, public URL or signed URL

        Raises:
            ExportCancelledError: If cancelled; remote uploads are aborted
            ExportError: On any failure; remote uploads are aborted and local
                files are flagged ``.partial`` (or removed)
        """
        drop = self.config.drop_if_exists if drop_if_exists is None else drop_if_exists
        remote = self.config.use_remote_storage if use_remote_storage is None else use_remote_storage
        if self.state not in (ExportState.IDLE, ExportState.DONE, ExportState.FAILED):
            raise ExportError("Export already in progress", context={"state": self.state.value})
        if remote and self.store is None:
            raise ExportError("Remote export requested but no object store is configured")

        filename = output_identifier or generate_filename()
        public = remote or bool(self.config.public_base_url)
        name = self.namer.token_for(filename) if public and self.config.obfuscate_filenames else filename

        self.state = ExportState.IDLE
        self.current_table = None
        buffer = ExportBuffer(self.buffer_threshold(remote))
        checksum = RunningChecksum()
        result = ExportResult(location="", filename=filename, name=name, sink="remote" if remote else "local")

        if remote:
            assert self.store is not None
            result.key = self.store.full_key(name)
            sink: Any = RemoteSink(
                ChunkedUploadSession(self.store, result.key, logger=self.logger)
            )
        else:
            result.path = Path(self.config.output_dir) / name
            sink = LocalSink(result.path, keep_partial=self.config.keep_partial, logger=self.logger)

        self.logger.info(
            "Starting export",
            filename=filename,
            sink=sink.kind,
            drop_if_exists=drop,
            buffer_threshold=buffer.threshold,
            policies=sorted(self.registry.names()),
        )
        if self.metrics:
            self.metrics.start_timer("export")

        try:
            sink.open()
            tables = await self.schema.list_tables()
            buffer.write(self.preamble(drop))

            for table in tables:
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()
                await self._export_table(table, drop, buffer, sink, checksum, result, cancel_token)

            self.current_table = None
            self._transition(ExportState.FINALIZING)
            buffer.write(POSTAMBLE)
            self._flush(buffer, sink, checksum)
            sink.close()
        except BaseException as e:
            self._transition(ExportState.FAILED)
            self._discard(buffer, sink)
            if self.metrics:
                self.metrics.finish_run("export", "failure")
            if not isinstance(e, Exception):
                raise
            if isinstance(e, OperationCancelled):
                raise ExportCancelledError(
                    f"Export cancelled: {e}",
                    context={"filename": filename, "table": self.current_table},
                ) from e
            if isinstance(e, ExportError):
                raise
            raise ExportError(
                f"Export failed: {e}",
                context={"filename": filename, "table": self.current_table, "sink": sink.kind},
            ) from e

        result.bytes_written = checksum.size
        result.sha256 = checksum.hexdigest()
        result.parts = sink.parts
        result.peak_buffer = buffer.peak
        try:
            result.location = self._location(result)
        except StorageError as e:
            # The dump itself is complete; only the link is missing
            self._transition(ExportState.FAILED)
            if self.metrics:
                self.metrics.finish_run("export", "failure")
            raise ExportError(
                f"Export written but no link could be generated: {e.message}",
                context={"filename": filename, "key": result.key},
            ) from e

        self._transition(ExportState.DONE)
        if self.metrics:
            self.metrics.finish_run("export", "success")

        self.logger.info(
            "Export completed",
            filename=filename,
            location=result.location,
            tables=result.tables,
            tables_ignored=result.tables_ignored,
            rows=result.rows,
            bytes=result.bytes_written,
            parts=result.parts,
        )
        return result

    async def _export_table(
        self,
        table: str,
        drop_if_exists: bool,
        buffer: ExportBuffer,
        sink: Any,
        checksum: RunningChecksum,
        result: ExportResult,
        cancel_token: Optional[CancellationToken],
    ) -> None:
        self.current_table = table
        self._transition(ExportState.SCHEMA)
        buffer.write(await self.schema.emit(table, drop_if_exists))
        if buffer.full:
            self._flush(buffer, sink, checksum)

        result.tables += 1
        policy = self.registry.get(table)
        if policy.ignore:
            # Schema stays in the dump; only rows are skipped
            self.logger.info("Skipping data for ignored table", table=table)
            result.tables_ignored += 1
            result.ignored_tables.append(table)
            self._transition(ExportState.IDLE)
            return

        self._transition(ExportState.DATA)
        rows = 0
        async for statement in self.generator.paginate(table, policy, cancel_token):
            buffer.write(statement)
            rows += 1
            if buffer.full:
                self._flush(buffer, sink, checksum)
        buffer.write("\n")

        result.rows += rows
        if self.metrics:
            self.metrics.record_rows(table, rows)
        self.logger.debug("Table data exported", table=table, rows=rows)
        self._transition(ExportState.IDLE)

    def _flush(self, buffer: ExportBuffer, sink: Any, checksum: RunningChecksum) -> None:
        data = buffer.drain()
        if not data:
            return
        sink.write(data)
        checksum.update(data)
        if self.metrics:
            self.metrics.record_flush(sink.kind, len(data))
        self.logger.debug("Buffer flushed", sink=sink.kind, size=len(data), table=self.current_table)

    def _discard(self, buffer: ExportBuffer, sink: Any) -> None:
        """Close the integrity-check bracket where possible and discard or flag output."""
        tail = buffer.drain() + POSTAMBLE.encode("utf-8")
        try:
            sink.discard(tail)
        except Exception as e:
            self.logger.error("Failed to clean up export output", sink=sink.kind, error=str(e))

    def _location(self, result: ExportResult) -> str:
        if result.sink == "remote":
            assert self.store is not None and result.key is not None
            if self.config.expiration_seconds:
                return self.store.presigned_url(result.key, self.config.expiration_seconds)
            return self.store.public_url(result.key)

        assert result.path is not None
        if self.config.public_base_url:
            return f"{self.config.public_base_url.rstrip('/')}/{result.name}"
        return str(result.path)
