"""Paged, forward-only streaming of table rows as INSERT statements."""

from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from porter.database import DatabaseManager
from porter.policy import EntityPolicy
from porter.redaction import RowTransformer
from porter.schema_emitter import SchemaEmitter
from porter.serializer import SQLSerializer
from utils import quote_identifier
from utils.cancellation import CancellationToken
from utils.logging import get_logger


@dataclass(frozen=True)
class OrderPlan:
    """How a table is walked.

    ``keyset`` means the ordering column is unique and NOT NULL, so
    ``WHERE col > last`` pages without gaps or repeats. Otherwise pages use
    LIMIT/OFFSET.
    """

    column: Optional[str]
    keyset: bool
    primary_key: Optional[str]
    source: str


@dataclass(frozen=True)
class TablePlan:
    """Everything decided about a table before its first page is fetched."""

    order: OrderPlan
    retention_key: Optional[str]
    nullable_columns: frozenset[str]


def plan_ordering(indexes: list[dict[str, Any]]) -> OrderPlan:
    """Pick the ordering column from SHOW INDEX rows.

    Preference: single-column primary key, then the first unique index, then the
    first indexed column, then no explicit order.
    """
    by_key: dict[str, list[dict[str, Any]]] = {}
    for row in indexes:
        by_key.setdefault(row["Key_name"], []).append(row)
    for columns in by_key.values():
        columns.sort(key=lambda r: int(r.get("Seq_in_index") or 1))

    primary_key: Optional[str] = None
    primary = by_key.get("PRIMARY")
    if primary:
        if len(primary) == 1:
            primary_key = primary[0]["Column_name"]
            return OrderPlan(column=primary_key, keyset=True, primary_key=primary_key, source="primary")
        return OrderPlan(
            column=primary[0]["Column_name"], keyset=False, primary_key=None, source="primary"
        )

    for name, columns in by_key.items():
        if int(columns[0].get("Non_unique", 1)) == 0:
            single = len(columns) == 1 and columns[0].get("Null", "") != "YES"
            return OrderPlan(
                column=columns[0]["Column_name"], keyset=single, primary_key=None, source="unique"
            )

    if indexes:
        return OrderPlan(
            column=indexes[0]["Column_name"], keyset=False, primary_key=None, source="index"
        )

    return OrderPlan(column=None, keyset=False, primary_key=None, source="none")


class TableDataGenerator:
    """Yields serialized INSERT statements for one table, one page in memory at a time."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        schema: SchemaEmitter,
        transformer: RowTransformer,
        serializer: SQLSerializer,
        page_size: int = 1000,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize table data generator.

        Args:
            db_manager: Database manager instance
            schema: Schema emitter, used for index introspection
            transformer: Row transformer applying redaction
            serializer: INSERT statement serializer
            page_size: Rows per fetched page
            logger: Optional logger instance
        """
        self.db_manager = db_manager
        self.schema = schema
        self.transformer = transformer
        self.serializer = serializer
        self.page_size = page_size
        self.logger = logger or get_logger("table_data")

    async def plan(self, table_name: str, policy: Optional[EntityPolicy] = None) -> TablePlan:
        """Inspect indexes and columns to decide paging, retention key and nullability."""
        order = plan_ordering(await self.schema.get_indexes(table_name))
        columns = await self.schema.get_columns(table_name)
        if order.column is None:
            self.logger.warning(
                "Table has no index; paging in engine default order, rows may repeat or be "
                "missed if the table changes during export",
                table=table_name,
            )

        retention_key = order.primary_key
        if retention_key is None and any(c.name == "id" for c in columns):
            retention_key = "id"
        if retention_key is None and policy is not None and policy.retained_row_keys:
            self.logger.warning(
                "Table has no single-column key; retained row keys cannot be matched "
                "and every row will be redacted",
                table=table_name,
                retained_keys=len(policy.retained_row_keys),
            )

        return TablePlan(
            order=order,
            retention_key=retention_key,
            nullable_columns=frozenset(c.name for c in columns if c.nullable),
        )

    async def paginate(
        self,
        table_name: str,
        policy: EntityPolicy,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[str]:
        """Yield one INSERT statement per row.

        The sequence is finite and single-pass. Ignored tables must be filtered by
        the caller before this is reached.

        Args:
            table_name: Table to stream
            policy: The table's export policy
            cancel_token: Checked before each page fetch

        Yields:
            Serialized INSERT statements, newline-terminated
        """
        plan = await self.plan(table_name, policy)
        async for page in self._pages(table_name, plan.order, cancel_token):
            for row in page:
                if policy.redacts:
                    row = self.transformer.transform(policy, row, primary_key=plan.retention_key)
                yield self.serializer.insert_statement(table_name, row, plan.nullable_columns)

    async def _pages(
        self,
        table_name: str,
        order: OrderPlan,
        cancel_token: Optional[CancellationToken],
    ) -> AsyncIterator[list[dict[str, Any]]]:
        table = quote_identifier(table_name)
        column = quote_identifier(order.column) if order.column else None
        last_value: Any = None
        offset = 0
        page_number = 0

        while True:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()

            if order.keyset and column:
                if page_number == 0:
                    query = f"SELECT * FROM {table} ORDER BY {column} LIMIT %s"
                    args: tuple[Any, ...] = (self.page_size,)
                else:
                    query = f"SELECT * FROM {table} WHERE {column} > %s ORDER BY {column} LIMIT %s"
                    args = (last_value, self.page_size)
            else:
                order_by = f" ORDER BY {column}" if column else ""
                query = f"SELECT * FROM {table}{order_by} LIMIT %s OFFSET %s"
                args = (self.page_size, offset)

            rows = await self.db_manager.fetch(query, args)
            page_number += 1

            self.logger.debug(
                "Page fetched",
                table=table_name,
                page=page_number,
                rows=len(rows),
                keyset=order.keyset,
            )

            if not rows:
                return

            yield rows

            if len(rows) < self.page_size:
                return

            if order.keyset and order.column:
                last_value = rows[-1][order.column]
            offset += len(rows)
