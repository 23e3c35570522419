"""
连接管理 - 主库/备库 asyncpg 连接池与查询执行器
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

from pg_mirror.errors import ConnectivityError
from pg_mirror.models.sync_config import PostgresConnection, SyncConfig
from pg_mirror.utils.logging import get_logger

logger = get_logger(__name__)

PRIMARY = "primary"
BACKUP = "backup"


class DatabaseConnection:
    """
    单个数据库的连接池

    每个操作通过 runner() 借出一条连接，作用域结束即归还。
    语句超时同时由 command_timeout（客户端）和 statement_timeout（服务端）约束。

    属性:
        role: primary 或 backup
        config: 连接配置

    示例:
        ```python
        db = DatabaseConnection("primary", config.primary)
        await db.connect()
        async with db.runner() as conn:
            rows = await conn.fetch("SELECT 1")
        ```
    """

    def __init__(self, role: str, config: PostgresConnection):
        self.role = role
        self.config = config
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def schema(self) -> str:
        """同步的 schema"""
        return self.config.schema_name

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    async def connect(self) -> None:
        """建立连接池"""
        if self._pool is not None:
            return

        statement_timeout_ms = int(self.config.command_timeout * 1000)
        try:
            self._pool = await asyncpg.create_pool(
                host=self.config.host,
                port=self.config.port,
                user=self.config.username,
                password=self.config.password or None,
                database=self.config.database,
                min_size=self.config.pool_min_size,
                max_size=self.config.pool_max_size,
                timeout=self.config.connect_timeout,
                command_timeout=self.config.command_timeout,
                server_settings={
                    "application_name": "pg-mirror",
                    "statement_timeout": str(statement_timeout_ms),
                    "search_path": self.config.schema_name,
                },
            )
            logger.info(
                "database_connected",
                role=self.role,
                dsn=self.config.dsn_display()
            )
        except Exception as e:
            logger.error(
                "database_connect_failed",
                role=self.role,
                dsn=self.config.dsn_display(),
                error=str(e)
            )
            raise ConnectivityError(self.role, str(e)) from e

    async def close(self) -> None:
        """关闭连接池"""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info("database_disconnected", role=self.role)

    @asynccontextmanager
    async def runner(self) -> AsyncIterator[asyncpg.Connection]:
        """借出一条连接，任何路径下都会归还"""
        if self._pool is None:
            raise ConnectivityError(self.role, "连接池未初始化")
        async with self._pool.acquire() as conn:
            yield conn

    async def fetch(self, query: str, *args: Any) -> List[asyncpg.Record]:
        async with self.runner() as conn:
            return await conn.fetch(query, *args)

    async def fetchval(self, query: str, *args: Any) -> Any:
        async with self.runner() as conn:
            return await conn.fetchval(query, *args)

    async def execute(self, query: str, *args: Any) -> str:
        async with self.runner() as conn:
            return await conn.execute(query, *args)

    async def ping(self) -> bool:
        """连接探测 SELECT 1，失败返回 False"""
        try:
            return await self.fetchval("SELECT 1") == 1
        except Exception as e:
            logger.warning("database_ping_failed", role=self.role, error=str(e))
            return False


class ConnectionProvider:
    """
    主库 + 备库连接提供者

    示例:
        ```python
        async with ConnectionProvider(config) as provider:
            async with provider.primary.runner() as conn:
                ...
        ```
    """

    def __init__(
        self,
        config: SyncConfig,
        primary: Optional[DatabaseConnection] = None,
        backup: Optional[DatabaseConnection] = None
    ):
        self.config = config
        self.primary = primary or DatabaseConnection(PRIMARY, config.primary)
        self.backup = backup or DatabaseConnection(BACKUP, config.backup)

    async def connect(self) -> None:
        """连接两个数据库，任何一个失败都会关闭已建立的连接池"""
        try:
            await self.primary.connect()
            await self.backup.connect()
        except ConnectivityError:
            await self.close()
            raise

    async def close(self) -> None:
        for db in (self.primary, self.backup):
            try:
                await db.close()
            except Exception as e:
                logger.warning("database_close_failed", role=db.role, error=str(e))

    async def ping_all(self) -> Dict[str, bool]:
        """探测两个数据库"""
        return {
            self.primary.role: await self.primary.ping(),
            self.backup.role: await self.backup.ping(),
        }

    async def __aenter__(self) -> "ConnectionProvider":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
