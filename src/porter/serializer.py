"""Serialization of rows to MySQL INSERT statements."""

from datetime import date, datetime, time, timedelta
from decimal import Decimal
from collections.abc import Collection
from typing import Any, Optional
from uuid import UUID

import structlog

from porter.exceptions import PorterError
from utils import quote_identifier
from utils.logging import get_logger

_ESCAPES = str.maketrans(
    {
        "\\": "\\\\",
        "'": "\\'",
        "\r": "\\r",
        "\n": "\\n",
        "\x00": "\\0",
        "\x1a": "\\Z",
    }
)


class SerializationError(PorterError):
    """Serialization-related errors."""

    pass


class SQLSerializer:
    """Renders rows as single-line INSERT statements."""

    def __init__(
        self,
        empty_strings_as_null: bool = False,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize serializer.

        Args:
            empty_strings_as_null: Render '' as NULL in nullable columns
            logger: Optional logger instance
        """
        self.empty_strings_as_null = empty_strings_as_null
        self.logger = logger or get_logger("serializer")

    def insert_statement(
        self,
        table_name: str,
        row: dict[str, Any],
        nullable_columns: Collection[str] = (),
    ) -> str:
        """Build ``INSERT INTO `t` (`a`, `b`) VALUES (...);`` followed by a newline.

        Args:
            table_name: Target table
            row: Column name to value, in column order
            nullable_columns: Columns that accept NULL; only these have '' turned
                into NULL when ``empty_strings_as_null`` is set

        Raises:
            SerializationError: If the row has no columns
        """
        if not row:
            raise SerializationError(
                "Cannot build an INSERT for an empty row",
                context={"table": table_name},
            )

        columns = ", ".join(quote_identifier(column) for column in row)
        values = ", ".join(
            "NULL"
            if value == "" and self.empty_strings_as_null and column in nullable_columns
            else self.literal(value)
            for column, value in row.items()
        )
        return f"INSERT INTO {quote_identifier(table_name)} ({columns}) VALUES ({values});\n"

    def literal(self, value: Any) -> str:
        """Render one value as a SQL literal."""
        if value is None:
            return "NULL"
        # bool before int
        if isinstance(value, bool):
            return "1" if value else "0"
        if isinstance(value, (int, Decimal)):
            return str(value)
        if isinstance(value, float):
            return repr(value)
        if isinstance(value, (bytes, bytearray, memoryview)):
            data = bytes(value)
            return f"X'{data.hex()}'" if data else "''"
        if isinstance(value, datetime):
            return self.quote(value.isoformat(sep=" "))
        if isinstance(value, (date, time)):
            return self.quote(value.isoformat())
        if isinstance(value, timedelta):
            return self.quote(self._format_timedelta(value))
        if isinstance(value, UUID):
            return self.quote(str(value))
        if isinstance(value, str):
            return self.quote(value)
        if isinstance(value, (set, frozenset)):
            # MySQL SET columns come back as Python sets
            return self.quote(",".join(sorted(str(item) for item in value)))

        self.logger.warning(
            "Unknown type, converting to string",
            type=type(value).__name__,
            value=str(value)[:100],
        )
        return self.quote(str(value))

    @staticmethod
    def quote(text: str) -> str:
        """Escape backslash, quote, CR, LF (plus NUL and ^Z) and wrap in single quotes."""
        return "'" + text.translate(_ESCAPES) + "'"

    @staticmethod
    def _format_timedelta(value: timedelta) -> str:
        # MySQL TIME columns are returned as timedelta
        total = int(value.total_seconds())
        sign = "-" if total < 0 else ""
        total = abs(total)
        hours, remainder = divmod(total, 3600)
        minutes, seconds = divmod(remainder, 60)
        return f"{sign}{hours:02d}:{minutes:02d}:{seconds:02d}"
