"""Database connection and query management using asyncpg."""

import asyncio
import re
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, Optional, TypeVar

import asyncpg
from structlog import BoundLogger

from archival.config import DatabaseConfig, DataSourceConfig, EngineConfig
from archival.exceptions import DatabaseError
from utils.logging import get_logger

T = TypeVar("T")


class DatabaseManager:
    """Manages a connection pool to one PostgreSQL database."""

    def __init__(
        self,
        config: DatabaseConfig,
        logger: Optional[BoundLogger] = None,
        application_name: str = "table_archival",
    ) -> None:
        """Initialize database manager.

        Args:
            config: Database configuration
            logger: Optional logger instance
            application_name: Reported in pg_stat_activity
        """
        self.config = config
        self.pool_size = config.connection_pool_size
        self.application_name = application_name
        self.logger = logger or get_logger("database")
        self.pool: Optional[asyncpg.Pool] = None
        self._dsn: Optional[str] = None

    @property
    def dsn(self) -> str:
        """Get database connection DSN."""
        if self._dsn is None:
            try:
                password = self.config.get_password()
            except ValueError as e:
                raise DatabaseError(
                    str(e),
                    context={"database": self.config.name},
                ) from e

            self._dsn = (
                f"postgresql://{self.config.user}:{password}@"
                f"{self.config.host}:{self.config.port}/{self.config.name}"
            )
        return self._dsn

    @property
    def is_connected(self) -> bool:
        return self.pool is not None

    def same_database_as(self, other: "DatabaseManager") -> bool:
        """Whether both managers point at the same server and database."""
        return (self.config.host, self.config.port, self.config.name) == (
            other.config.host,
            other.config.port,
            other.config.name,
        )

    async def connect(self) -> None:
        """Create connection pool."""
        try:
            self.logger.debug(
                "Creating connection pool",
                database=self.config.name,
                host=self.config.host,
                pool_size=self.pool_size,
            )

            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=1,
                max_size=self.pool_size,
                command_timeout=self.config.command_timeout,
                server_settings={
                    "application_name": self.application_name,
                },
            )

            async with self.pool.acquire() as conn:
                version = await conn.fetchval("SELECT version()")
                self.logger.debug(
                    "Database connection established",
                    database=self.config.name,
                    version=version.split(",")[0] if version else "unknown",
                )

        except Exception as e:
            raise DatabaseError(
                f"Failed to create connection pool: {e}",
                context={"database": self.config.name, "host": self.config.host},
            ) from e

    async def disconnect(self) -> None:
        """Close connection pool."""
        if self.pool:
            self.logger.debug("Closing connection pool", database=self.config.name)
            await self.pool.close()
            self.pool = None

    @asynccontextmanager
    async def acquire_connection(self) -> AsyncGenerator[asyncpg.Connection, None]:
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

        conn = await self.pool.acquire()
        try:
            yield conn
        finally:
            await self.pool.release(conn)

    @asynccontextmanager
    async def transaction(
        self, isolation: str = "read_committed"
    ) -> AsyncGenerator[asyncpg.Connection, None]:
        """Start a database transaction.

        Args:
            isolation: Transaction isolation level

        Yields:
            Database connection in transaction
        """
        async with self.acquire_connection() as conn:
            async with conn.transaction(isolation=isolation):
                yield conn

    async def _run(
        self,
        query: str,
        call: Callable[[asyncpg.Connection], Awaitable[T]],
    ) -> T:
        try:
            async with self.acquire_connection() as conn:
                return await call(conn)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(
                f"Query execution failed: {e}",
                context={"database": self.config.name, "query": query[:100]},
            ) from e

    async def execute(self, query: str, *args: Any, timeout: Optional[float] = None) -> str:
        """Execute a query that doesn't return rows.

        Returns:
            Command status string

        Raises:
            DatabaseError: If execution fails
        """
        return await self._run(query, lambda conn: conn.execute(query, *args, timeout=timeout))

    async def fetch(
        self, query: str, *args: Any, timeout: Optional[float] = None
    ) -> list[asyncpg.Record]:
        """Execute a query and return all rows.

        Raises:
            DatabaseError: If execution fails
        """
        return await self._run(query, lambda conn: conn.fetch(query, *args, timeout=timeout))

    async def fetchrow(
        self, query: str, *args: Any, timeout: Optional[float] = None
    ) -> Optional[asyncpg.Record]:
        """Execute a query and return one row.

        Raises:
            DatabaseError: If execution fails
        """
        return await self._run(query, lambda conn: conn.fetchrow(query, *args, timeout=timeout))

    async def fetchval(self, query: str, *args: Any, timeout: Optional[float] = None) -> Any:
        """Execute a query and return a single value.

        Args:
            query: SQL query
            *args: Query parameters
            timeout: Optional per-query timeout in seconds; the statement is
                cancelled server-side when it expires

        Returns:
            Single value or None

        Raises:
            DatabaseError: If execution fails
        """
        return await self._run(query, lambda conn: conn.fetchval(query, *args, timeout=timeout))

    async def get_server_version(self) -> int:
        """Return ``server_version_num`` (e.g. 160002)."""
        version = await self.fetchval("SHOW server_version_num")
        if version and re.fullmatch(r"\d+", str(version)):
            return int(version)
        return 0


class DataSourceConnections:
    """Source and target connection pools of one configured datasource."""

    def __init__(self, datasource: DataSourceConfig, logger: Optional[BoundLogger] = None) -> None:
        self.datasource = datasource
        self.logger = logger or get_logger("database")
        self.source = DatabaseManager(datasource.database, logger=self.logger)
        if datasource.uses_source_as_target:
            self.target = self.source
        else:
            self.target = DatabaseManager(datasource.target_database, logger=self.logger)

    @property
    def shares_database(self) -> bool:
        return self.target is self.source or self.source.same_database_as(self.target)

    async def connect(self) -> None:
        if not self.source.is_connected:
            await self.source.connect()
        if not self.target.is_connected:
            await self.target.connect()

    async def disconnect(self) -> None:
        await self.source.disconnect()
        if self.target is not self.source:
            await self.target.disconnect()


class ConnectionRegistry:
    """Lazily opens and caches connections per datasource name."""

    def __init__(self, config: EngineConfig, logger: Optional[BoundLogger] = None) -> None:
        self.config = config
        self.logger = logger or get_logger("database")
        self._connections: dict[str, DataSourceConnections] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def get(self, datasource_name: str) -> DataSourceConnections:
        """Return connected pools for a datasource.

        Raises:
            ConfigurationError: If the datasource is unknown
            DatabaseError: If connecting fails
        """
        # Jobs firing together on one datasource must share a single set of pools
        async with self._locks.setdefault(datasource_name, asyncio.Lock()):
            connections = self._connections.get(datasource_name)
            if connections is None:
                datasource = self.config.get_datasource(datasource_name)
                connections = DataSourceConnections(datasource, logger=self.logger)
                self._connections[datasource_name] = connections
            await connections.connect()
            return connections

    async def close(self) -> None:
        for name, connections in self._connections.items():
            try:
                await connections.disconnect()
            except Exception as e:
                self.logger.warning("Failed to close datasource connections", datasource=name, error=str(e))
        self._connections.clear()
