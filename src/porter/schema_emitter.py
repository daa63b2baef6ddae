"""Table listing, index introspection and CREATE TABLE emission for MySQL."""

from dataclasses import dataclass
from typing import Any, Optional

import structlog

from porter.database import DatabaseManager
from porter.exceptions import DatabaseError
from utils import quote_identifier
from utils.logging import get_logger


@dataclass(frozen=True)
class ColumnInfo:
    name: str
    nullable: bool


class SchemaEmitter:
    """Reads table structure from the server and renders it for the dump."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize schema emitter.

        Args:
            db_manager: Database manager instance
            logger: Optional logger instance
        """
        self.db_manager = db_manager
        self.logger = logger or get_logger("schema_emitter")

    async def list_tables(self) -> list[str]:
        """Return base table names of the current database, views excluded.

        Raises:
            DatabaseError: If listing fails
        """
        rows = await self.db_manager.fetch("SHOW FULL TABLES WHERE Table_type = 'BASE TABLE'")
        # The first column is named Tables_in_<database>
        tables = [next(iter(row.values())) for row in rows]
        self.logger.debug("Tables listed", count=len(tables))
        return tables

    async def emit(self, table_name: str, drop_if_exists: bool) -> str:
        """Render the schema block for one table.

        Args:
            table_name: Table to describe
            drop_if_exists: Prepend a DROP TABLE IF EXISTS statement

        Returns:
            Comment header, optional DROP statement and the CREATE TABLE statement

        Raises:
            DatabaseError: If the server does not return a definition
        """
        table = quote_identifier(table_name)
        row = await self.db_manager.fetchone(f"SHOW CREATE TABLE {table}")
        if not row or "Create Table" not in row:
            raise DatabaseError(
                "No CREATE TABLE definition returned",
                context={"table": table_name},
            )

        parts = [f"-- Exporting schema for table: {table_name}\n"]
        if drop_if_exists:
            parts.append(f"DROP TABLE IF EXISTS {table};\n")
        parts.append(f"{row['Create Table']};\n\n")
        return "".join(parts)

    async def get_indexes(self, table_name: str) -> list[dict[str, Any]]:
        """Return SHOW INDEX rows (Key_name, Non_unique, Seq_in_index, Column_name, ...)."""
        return await self.db_manager.fetch(f"SHOW INDEX FROM {quote_identifier(table_name)}")

    async def get_columns(self, table_name: str) -> list[ColumnInfo]:
        """Return columns in ordinal order with their nullability (SHOW COLUMNS)."""
        rows = await self.db_manager.fetch(f"SHOW COLUMNS FROM {quote_identifier(table_name)}")
        return [ColumnInfo(name=row["Field"], nullable=row.get("Null") == "YES") for row in rows]
