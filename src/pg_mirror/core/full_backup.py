"""
全量备份 - 逐表对账主库与备库

非强制模式：确保表存在后按主键合并（不删除备库多出的行）。
强制模式：重建表结构、TRUNCATE 后重新加载。
"""

import asyncio
from contextlib import aclosing
from typing import Any, AsyncGenerator, Dict, List, Optional

import asyncpg

from pg_mirror.core import catalog
from pg_mirror.core.connection import ConnectionProvider
from pg_mirror.core.schema_sync import SchemaSynchronizer
from pg_mirror.core.upsert import UpsertEngine
from pg_mirror.models.outcome import BackupStatusReport, SyncOutcome, TableRowCount
from pg_mirror.models.sync_config import SyncConfig
from pg_mirror.storage.ledger import STATUS_FAILED, STATUS_PARTIAL, STATUS_SUCCESS, StatusLedger
from pg_mirror.utils.logging import get_logger
from pg_mirror.utils.sql_parser import qualified, quote_ident

logger = get_logger(__name__)


class FullBackupOrchestrator:
    """
    全量备份协调器

    主库按页读取：单列主键用 WHERE pk > last ORDER BY pk 的键集分页，
    否则在只读事务中使用服务端游标。

    示例:
        ```python
        orchestrator = FullBackupOrchestrator(provider, config, schema_sync, upsert, ledger)
        outcomes = await orchestrator.perform_full_backup(force_recreate=True)
        ```
    """

    def __init__(
        self,
        connections: ConnectionProvider,
        config: SyncConfig,
        schema_sync: SchemaSynchronizer,
        upsert_engine: UpsertEngine,
        ledger: StatusLedger
    ):
        self.connections = connections
        self.config = config
        self.schema_sync = schema_sync
        self.upsert_engine = upsert_engine
        self.ledger = ledger
        self.page_size = config.full_backup.page_size

    async def list_source_tables(self) -> List[str]:
        primary = self.connections.primary
        async with primary.runner() as conn:
            return await catalog.list_tables(conn, primary.schema, [self.config.ledger.schema_name])

    async def perform_full_backup(self, force_recreate: bool = False) -> List[SyncOutcome]:
        """
        备份主库所有表，单表失败不影响其他表

        参数:
            force_recreate: 是否重建表结构并清空后重新加载

        返回:
            每张表的结果

        异常:
            读取主库表列表失败时抛出
        """
        tables = await self.list_source_tables()
        logger.info("full_backup_start", tables=len(tables), force=force_recreate)

        outcomes: List[SyncOutcome] = []
        for table in tables:
            outcomes.append(await self.backup_table(table, force_recreate))

        failed = [o.table for o in outcomes if not o.succeeded]
        logger.info(
            "full_backup_complete",
            tables=len(outcomes),
            rows=sum(o.rows_processed for o in outcomes),
            failed_tables=failed,
            force=force_recreate
        )
        return outcomes

    async def backup_table(self, table: str, force_recreate: bool = False) -> SyncOutcome:
        """
        备份单表

        参数:
            table: 表名
            force_recreate: 是否重建并重新加载

        返回:
            SyncOutcome，失败时 succeeded=False
        """
        primary = self.connections.primary
        backup = self.connections.backup
        try:
            async with primary.runner() as pconn:
                if not await catalog.table_exists(pconn, table, primary.schema):
                    return SyncOutcome.failure(table, f"主库不存在表 {table}")

            await self.schema_sync.ensure_table(table, force_recreate=force_recreate)

            if force_recreate:
                async with backup.runner() as bconn:
                    await bconn.execute(f"TRUNCATE TABLE {qualified(backup.schema, table)} CASCADE")

            synced = 0
            failed = 0
            async with aclosing(self.iter_source_pages(table)) as pages:
                async for page in pages:
                    async with backup.runner() as bconn:
                        result = await self.upsert_engine.upsert(bconn, table, page)
                    synced += result.succeeded
                    failed += result.failed

                    if len(page) == self.page_size:
                        await asyncio.sleep(0)

        except Exception as e:
            logger.error("full_backup_table_failed", table=table, error=str(e), exc_info=e)
            await self.ledger.record_table_backup(table, 0, STATUS_FAILED, str(e))
            return SyncOutcome.failure(table, str(e))

        status = STATUS_SUCCESS if failed == 0 else STATUS_PARTIAL
        error = f"{failed} 行写入失败" if failed else None
        await self.ledger.record_table_backup(table, synced, status, error)

        logger.info("full_backup_table_complete", table=table, rows=synced, failed=failed)
        return SyncOutcome(table=table, rows_processed=synced, error=error)

    async def iter_source_pages(self, table: str) -> AsyncGenerator[List[Dict[str, Any]], None]:
        """按页读取主库表"""
        primary = self.connections.primary
        async with primary.runner() as conn:
            primary_key = await catalog.get_primary_key(conn, table, primary.schema)
            if len(primary_key) == 1:
                pages = self._keyset_pages(conn, table, primary_key[0], primary.schema)
            else:
                pages = self._cursor_pages(conn, table, primary.schema)
            async with aclosing(pages):
                async for page in pages:
                    yield page

    async def _keyset_pages(
        self,
        conn: asyncpg.Connection,
        table: str,
        pk_column: str,
        schema: str
    ) -> AsyncGenerator[List[Dict[str, Any]], None]:
        """WHERE pk > last_pk 分页"""
        source = qualified(schema, table)
        pk = quote_ident(pk_column)
        last_pk: Optional[Any] = None

        while True:
            if last_pk is None:
                rows = await conn.fetch(
                    f"SELECT * FROM {source} ORDER BY {pk} LIMIT {self.page_size}"
                )
            else:
                rows = await conn.fetch(
                    f"SELECT * FROM {source} WHERE {pk} > $1 ORDER BY {pk} LIMIT {self.page_size}",
                    last_pk
                )
            if not rows:
                break

            yield [dict(row) for row in rows]

            if len(rows) < self.page_size:
                break
            last_pk = rows[-1][pk_column]

    async def _cursor_pages(
        self,
        conn: asyncpg.Connection,
        table: str,
        schema: str
    ) -> AsyncGenerator[List[Dict[str, Any]], None]:
        """无单列主键时在只读事务中用服务端游标分页"""
        async with conn.transaction(isolation="repeatable_read", readonly=True):
            cursor = await conn.cursor(f"SELECT * FROM {qualified(schema, table)}")
            while True:
                rows = await cursor.fetch(self.page_size)
                if not rows:
                    break
                yield [dict(row) for row in rows]

    async def cleanup_old_backups(self) -> int:
        """清理超过保留期的 backup_log"""
        return await self.ledger.cleanup(self.config.ledger.retention_days)

    async def get_backup_status(self) -> BackupStatusReport:
        """主库与备库的表覆盖情况和备库各表行数"""
        primary = self.connections.primary
        backup = self.connections.backup
        excluded = [self.config.ledger.schema_name]

        async with primary.runner() as pconn:
            source_tables = await catalog.list_tables(pconn, primary.schema, excluded)

        stats: List[TableRowCount] = []
        async with backup.runner() as bconn:
            backup_tables = await catalog.list_tables(bconn, backup.schema, excluded)
            for table in backup_tables:
                try:
                    count = await catalog.count_rows(bconn, table, backup.schema)
                except Exception as e:
                    logger.warning("row_count_failed", table=table, error=str(e))
                    count = 0
                stats.append(TableRowCount(table_name=table, row_count=count))

        return BackupStatusReport(
            total_tables=len(source_tables),
            backed_up_tables=len(backup_tables),
            missing_tables=sorted(set(source_tables) - set(backup_tables)),
            table_stats=stats,
        )
