"""Database connection and query management using aiomysql."""

from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from typing import Any, Optional

import aiomysql
from structlog import BoundLogger

from porter.config import DatabaseConfig
from porter.exceptions import DatabaseError
from utils.logging import get_logger


class DatabaseManager:
    """Manages MySQL connections and queries."""

    def __init__(
        self,
        config: DatabaseConfig,
        pool_size: Optional[int] = None,
        logger: Optional[BoundLogger] = None,
    ) -> None:
        """Initialize database manager.

        Args:
            config: Database configuration
            pool_size: Connection pool size (defaults to the configured size)
            logger: Optional logger instance
        """
        self.config = config
        self.pool_size = pool_size or config.connection_pool_size
        self.logger = logger or get_logger("database")
        self.pool: Optional[aiomysql.Pool] = None

    def connection_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for aiomysql.create_pool."""
        try:
            password = self.config.get_password()
        except ValueError as e:
            raise DatabaseError(
                str(e),
                context={"database": self.config.name},
            ) from e

        return {
            "host": self.config.host,
            "port": self.config.port,
            "user": self.config.user,
            "password": password,
            "db": self.config.name,
            "charset": self.config.charset,
            "connect_timeout": self.config.connect_timeout,
            "autocommit": True,
        }

    async def connect(self) -> None:
        """Create connection pool."""
        try:
            self.logger.debug(
                "Creating connection pool",
                database=self.config.name,
                host=self.config.host,
                pool_size=self.pool_size,
            )

            self.pool = await aiomysql.create_pool(
                minsize=1,
                maxsize=self.pool_size,
                **self.connection_kwargs(),
            )

            version = await self.fetchval("SELECT VERSION()")
            self.logger.debug(
                "Database connection established",
                database=self.config.name,
                version=version or "unknown",
            )

        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(
                f"Failed to create connection pool: {e}",
                context={"database": self.config.name, "host": self.config.host},
            ) from e

    async def disconnect(self) -> None:
        """Close connection pool."""
        if self.pool:
            self.logger.debug("Closing connection pool", database=self.config.name)
            self.pool.close()
            await self.pool.wait_closed()
            self.pool = None

    async def __aenter__(self) -> "DatabaseManager":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect()

    @asynccontextmanager
    async def acquire_connection(self) -> AsyncGenerator[aiomysql.Connection, None]:
        """Acquire a connection from the pool.

        Yields:
            Database connection

        Raises:
            DatabaseError: If pool is not initialized
        """
        if not self.pool:
            raise DatabaseError(
                "Connection pool not initialized. Call connect() first.",
                context={"database": self.config.name},
            )

        async with self.pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[aiomysql.Connection, None]:
        """Run the block in a transaction on one connection; rolls back on error."""
        async with self.acquire_connection() as conn:
            await conn.begin()
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            else:
                await conn.commit()

    async def execute(self, query: str, args: Optional[Sequence[Any]] = None) -> int:
        """Execute a statement that doesn't return rows.

        Args:
            query: SQL statement with %s placeholders
            args: Statement parameters

        Returns:
            Affected row count

        Raises:
            DatabaseError: If execution fails
        """
        try:
            async with self.acquire_connection() as conn:
                async with conn.cursor() as cur:
                    return await cur.execute(query, args)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(
                f"Query execution failed: {e}",
                context={"database": self.config.name, "query": query[:100]},
            ) from e

    async def fetch(self, query: str, args: Optional[Sequence[Any]] = None) -> list[dict[str, Any]]:
        """Execute a query and return all rows as dictionaries in column order.

        Raises:
            DatabaseError: If execution fails
        """
        try:
            async with self.acquire_connection() as conn:
                async with conn.cursor(aiomysql.DictCursor) as cur:
                    await cur.execute(query, args)
                    return list(await cur.fetchall())
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(
                f"Query execution failed: {e}",
                context={"database": self.config.name, "query": query[:100]},
            ) from e

    async def fetchone(
        self, query: str, args: Optional[Sequence[Any]] = None
    ) -> Optional[dict[str, Any]]:
        """Execute a query and return one row as dictionary, or None."""
        rows = await self.fetch(query, args)
        return rows[0] if rows else None

    async def fetchval(self, query: str, args: Optional[Sequence[Any]] = None) -> Any:
        """Execute a query and return the first column of the first row."""
        row = await self.fetchone(query, args)
        if not row:
            return None
        return next(iter(row.values()))
