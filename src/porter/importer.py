"""Streams a SQL dump back into the database, one statement at a time."""

import codecs
import shutil
import tempfile
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse

import structlog

from porter.config import ExportConfig, ImportConfig
from porter.database import DatabaseManager
from porter.exceptions import DatabaseError, ExportError, PorterError, SQLImportError, StorageError
from porter.exporter import ExportWriter
from porter.metrics import PorterMetrics
from porter.policy import PolicyRegistry
from porter.storage import ObjectStore
from utils.logging import get_logger

SNIPPET_LENGTH = 200
BACKUP_FILENAME = "pre_import_backup.sql"


class StatementSplitter:
    """Incremental splitter for SQL text.

    Feed decoded text in arbitrary pieces; complete statements come back as soon
    as their terminating ``;`` is seen. Terminators and comment markers inside
    quoted strings or backtick identifiers are ignored. ``--`` and ``#``
    comments are dropped up to the end of the line. ``/* ... */`` comments are
    passed through since the server honours versioned ``/*!...*/`` hints.
    """

    def __init__(self) -> None:
        self._pending = ""
        self._current: list[str] = []
        self._quote: Optional[str] = None
        self._escape = False

    def feed(self, text: str) -> list[str]:
        self._pending += text
        lines = self._pending.split("\n")
        self._pending = lines.pop()

        statements: list[str] = []
        for line in lines:
            self._scan(line + "\n", statements)
        return statements

    def finish(self) -> list[str]:
        """Flush the trailing statement, which may lack a terminator."""
        statements: list[str] = []
        if self._pending:
            self._scan(self._pending, statements)
            self._pending = ""
        self._emit(statements)
        return statements

    @property
    def in_quote(self) -> bool:
        return self._quote is not None

    def _scan(self, line: str, statements: list[str]) -> None:
        start = 0
        length = len(line)
        i = 0
        while i < length:
            ch = line[i]
            if self._quote is not None:
                if self._escape:
                    self._escape = False
                elif ch == "\\" and self._quote != "`":
                    self._escape = True
                elif ch == self._quote:
                    self._quote = None
            elif ch in ("'", '"', "`"):
                self._quote = ch
            elif ch == "#" or (
                ch == "-"
                and line.startswith("--", i)
                and (i + 2 == length or line[i + 2].isspace())
            ):
                self._current.append(line[start:i])
                self._current.append("\n")
                return
            elif ch == ";":
                self._current.append(line[start:i])
                self._emit(statements)
                start = i + 1
            i += 1
        self._current.append(line[start:])

    def _emit(self, statements: list[str]) -> None:
        statement = "".join(self._current).strip()
        self._current = []
        if statement:
            statements.append(statement)


def parse_s3_location(location: str) -> tuple[str, str]:
    """Split ``s3://bucket/key`` into bucket and key."""
    parsed = urlparse(location)
    key = parsed.path.lstrip("/")
    if parsed.scheme != "s3" or not parsed.netloc or not key:
        raise SQLImportError(f"Invalid object location: {location}")
    return parsed.netloc, key


class ImportRunner:
    """Executes a dump file statement by statement on a single connection.

    Session settings such as ``FOREIGN_KEY_CHECKS`` persist between statements.
    The first failing statement aborts the import.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        store: Optional[ObjectStore] = None,
        config: Optional[ImportConfig] = None,
        metrics: Optional[PorterMetrics] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        self.db_manager = db_manager
        self.store = store
        self.config = config or ImportConfig()
        self.metrics = metrics
        self.logger = logger or get_logger("importer")

    async def import_sql(self, location: str) -> dict[str, Any]:
        """Import a dump from a local path or ``s3://bucket/key``.

        With ``backup_before_import`` the current database is first exported to
        ``temp_dir``; if the import then fails, the backup is replayed and the
        raised error says whether that restore succeeded.

        Returns:
            Stats with ``statements`` executed and ``bytes`` read

        Raises:
            SQLImportError: If the backup fails, the file is missing or unreadable,
                or a statement fails
        """
        if self.metrics:
            self.metrics.start_timer("import")
        try:
            if self.config.backup_before_import:
                stats = await self._import_with_backup(location)
            else:
                stats = await self._import_location(location)
        except Exception:
            if self.metrics:
                self.metrics.finish_run("import", "failure")
            raise

        if self.metrics:
            self.metrics.finish_run("import", "success")
        self.logger.info("Import completed", location=location, **stats)
        return stats

    async def _import_location(self, location: str) -> dict[str, Any]:
        if location.startswith("s3://"):
            return await self._import_remote(location)
        path = Path(location)
        if not path.is_file():
            raise SQLImportError(f"SQL file not found: {location}")
        return await self._import_file(path)

    async def _import_with_backup(self, location: str) -> dict[str, Any]:
        backup = await self._backup()
        try:
            stats = await self._import_location(location)
        except (SQLImportError, DatabaseError) as e:
            raise await self._restore(backup, e) from e

        shutil.rmtree(backup.parent, ignore_errors=True)
        self.logger.info("Pre-import backup removed", path=str(backup))
        return stats

    async def _backup(self) -> Path:
        """Export the whole database, unredacted, with DROP TABLE IF EXISTS."""
        backup_dir = Path(tempfile.mkdtemp(prefix="porter-backup-", dir=self.config.temp_dir))
        writer = ExportWriter(
            self.db_manager,
            ExportConfig(
                output_dir=str(backup_dir),
                drop_if_exists=True,
                obfuscate_filenames=False,
                keep_partial=False,
            ),
            PolicyRegistry(logger=self.logger),
            logger=self.logger,
        )
        try:
            result = await writer.export(
                output_identifier=BACKUP_FILENAME,
                drop_if_exists=True,
                use_remote_storage=False,
            )
        except ExportError as e:
            shutil.rmtree(backup_dir, ignore_errors=True)
            raise SQLImportError(
                f"Pre-import backup failed: {e.message}",
                context={"backup_dir": str(backup_dir)},
            ) from e

        assert result.path is not None
        self.logger.info(
            "Pre-import backup written",
            path=str(result.path),
            tables=result.tables,
            bytes=result.bytes_written,
        )
        return result.path

    async def _restore(self, backup: Path, error: PorterError) -> SQLImportError:
        """Replay ``backup`` after a failed import and describe the outcome."""
        self.logger.warning("Import failed, restoring pre-import backup", path=str(backup), error=error.message)
        context = dict(error.context)
        try:
            await self._import_file(backup)
        except (SQLImportError, DatabaseError) as restore_error:
            self.logger.error(
                "Restore from pre-import backup failed; backup kept",
                path=str(backup),
                error=restore_error.message,
            )
            context.update(restored=False, backup=str(backup), restore_error=restore_error.message)
            return SQLImportError(
                f"{error.message}; restore from backup failed: {restore_error.message}",
                context=context,
            )

        shutil.rmtree(backup.parent, ignore_errors=True)
        self.logger.info("Database restored from pre-import backup")
        context.update(restored=True)
        return SQLImportError(f"{error.message}; database restored from pre-import backup", context=context)

    async def _import_remote(self, location: str) -> dict[str, Any]:
        bucket, key = parse_s3_location(location)
        if self.store is None:
            raise SQLImportError(
                "Object storage is not configured",
                context={"location": location},
            )

        with tempfile.TemporaryDirectory(dir=self.config.temp_dir) as tmp:
            local_path = Path(tmp) / Path(key).name
            try:
                self.store.download_file(key, local_path, bucket=bucket)
            except StorageError as e:
                raise SQLImportError(
                    f"Failed to download dump: {e.message}",
                    context={"location": location},
                ) from e
            return await self._import_file(local_path)

    async def _import_file(self, path: Path) -> dict[str, Any]:
        splitter = StatementSplitter()
        decoder = codecs.getincrementaldecoder("utf-8")()
        chunk_size = self.config.chunk_size_kb * 1024
        stats = {"statements": 0, "bytes": 0}

        self.logger.info("Starting import", path=str(path), chunk_size=chunk_size)

        async with self.db_manager.acquire_connection() as conn:
            async with conn.cursor() as cursor:
                with open(path, "rb") as handle:
                    while True:
                        chunk = handle.read(chunk_size)
                        if not chunk:
                            break
                        stats["bytes"] += len(chunk)
                        try:
                            text = decoder.decode(chunk)
                        except UnicodeDecodeError as e:
                            raise SQLImportError(
                                f"Dump is not valid UTF-8: {e}",
                                context={"path": str(path), "offset": stats["bytes"]},
                            ) from e
                        for statement in splitter.feed(text):
                            await self._execute(cursor, statement, stats)

                try:
                    tail = decoder.decode(b"", final=True)
                except UnicodeDecodeError as e:
                    raise SQLImportError(
                        f"Dump ends with a truncated UTF-8 sequence: {e}",
                        context={"path": str(path)},
                    ) from e
                for statement in splitter.feed(tail):
                    await self._execute(cursor, statement, stats)
                trailing = splitter.finish()
                if splitter.in_quote:
                    raise SQLImportError(
                        "Dump ends inside an unterminated quoted string",
                        context={"path": str(path), "statements": stats["statements"]},
                    )
                for statement in trailing:
                    await self._execute(cursor, statement, stats)

        return stats

    async def _execute(self, cursor: Any, statement: str, stats: dict[str, Any]) -> None:
        number = stats["statements"] + 1
        try:
            await cursor.execute(statement)
        except Exception as e:
            snippet = statement[:SNIPPET_LENGTH]
            self.logger.error(
                "Statement failed",
                statement_number=number,
                snippet=snippet,
                error=str(e),
            )
            raise SQLImportError(
                f"Statement {number} failed: {e}",
                context={"statement_number": number, "statement": snippet},
            ) from e

        stats["statements"] = number
        if self.metrics:
            self.metrics.record_statements()
