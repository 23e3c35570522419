"""
增量同步 - 基于修改时间列的轮询

每个周期:
    1. 在主库找出带修改时间列的表
    2. 每组 concurrency 张表并发同步，组与组之间串行
    3. 每张表从备库读取 MAX(修改时间列) 作为水位，拉取主库上更新的行并 UPSERT

水位每次从备库重新计算，进程内不保存同步位置。
"""

import asyncio
import uuid
from typing import Any, Dict, List, Optional

import asyncpg

from pg_mirror.core import catalog
from pg_mirror.core.connection import ConnectionProvider
from pg_mirror.core.schema_sync import SchemaSynchronizer
from pg_mirror.core.upsert import UpsertEngine
from pg_mirror.models.event import ChangeBatch
from pg_mirror.models.outcome import ForceSyncResult, SyncOutcome
from pg_mirror.models.position import CursorKind, Watermark
from pg_mirror.models.schema import TrackedTable
from pg_mirror.models.sync_config import SyncConfig
from pg_mirror.utils.logging import bind_context, clear_context, get_logger
from pg_mirror.utils.sql_parser import qualified, quote_ident

logger = get_logger(__name__)

# 备库为空时的水位下界
_INITIAL_CURSOR_SQL = {
    "bigint": "0",
    "integer": "0",
    "timestamp without time zone": "'1970-01-01 00:00:00'::timestamp",
    "timestamp with time zone": "'1970-01-01 00:00:00+00'::timestamptz",
}


class ChangeDetector:
    """
    增量变更检测器

    属性:
        enabled: 是否参与调度
        page_size: 每个周期每张表最多拉取的行数
        concurrency: 同时同步的表数

    示例:
        ```python
        detector = ChangeDetector(provider, config, schema_sync, upsert_engine)
        outcomes = await detector.run_cycle()
        ```
    """

    def __init__(
        self,
        connections: ConnectionProvider,
        config: SyncConfig,
        schema_sync: SchemaSynchronizer,
        upsert_engine: UpsertEngine
    ):
        self.connections = connections
        self.config = config
        self.schema_sync = schema_sync
        self.upsert_engine = upsert_engine
        self.enabled = config.change_detection.enabled
        self.page_size = config.change_detection.page_size
        self.concurrency = config.change_detection.concurrency

    def enable(self) -> None:
        self.enabled = True

    def disable(self) -> None:
        self.enabled = False

    async def list_tracked_tables(self) -> List[TrackedTable]:
        """主库上参与增量同步的表"""
        primary = self.connections.primary
        async with primary.runner() as conn:
            return await catalog.list_tracked_tables(
                conn,
                self.config.change_detection.tracking_columns,
                primary.schema
            )

    async def run_cycle(self) -> List[SyncOutcome]:
        """
        执行一个检测周期

        返回:
            每张表的同步结果；未启用时为空列表

        异常:
            读取主库表列表失败时抛出（由调度层记录并在下个周期重试）
        """
        if not self.enabled:
            logger.debug("cdc_cycle_disabled")
            return []

        bind_context(cycle_id=uuid.uuid4().hex[:8])
        try:
            tables = await self.list_tracked_tables()
            logger.debug("cdc_cycle_start", tables=len(tables))

            outcomes: List[SyncOutcome] = []
            for start in range(0, len(tables), self.concurrency):
                group = tables[start:start + self.concurrency]
                results = await asyncio.gather(
                    *(self.sync_table(t) for t in group),
                    return_exceptions=True
                )
                for tracked, result in zip(group, results):
                    if isinstance(result, BaseException):
                        outcomes.append(SyncOutcome.failure(tracked.name, str(result)))
                    else:
                        outcomes.append(result)

            synced = sum(o.rows_processed for o in outcomes)
            failed = [o.table for o in outcomes if not o.succeeded]
            if synced or failed:
                logger.info(
                    "cdc_cycle_complete",
                    tables=len(outcomes),
                    rows=synced,
                    failed_tables=failed
                )
            return outcomes
        finally:
            clear_context()

    async def sync_table(self, tracked: TrackedTable) -> SyncOutcome:
        """同步单表，任何异常都转为失败结果"""
        try:
            return await self._sync_table(tracked)
        except Exception as e:
            logger.error(
                "cdc_table_sync_failed",
                table=tracked.name,
                error=str(e),
                exc_info=e
            )
            return SyncOutcome.failure(tracked.name, str(e))

    async def _sync_table(self, tracked: TrackedTable) -> SyncOutcome:
        primary = self.connections.primary
        backup = self.connections.backup
        table, column = tracked.name, tracked.column

        async with primary.runner() as pconn:
            if not await catalog.table_exists(pconn, table, primary.schema):
                return SyncOutcome.skip(table, "主库不存在该表")
            native_type = await catalog.column_data_type(pconn, table, column, primary.schema)
            if native_type is None:
                return SyncOutcome.skip(table, f"主库缺少列 {column}")

        async with backup.runner() as bconn:
            target_exists = await catalog.table_exists(bconn, table, backup.schema)

        if not target_exists:
            # 本周期只建表，数据在下个周期复制
            await self.schema_sync.ensure_table(table)
            return SyncOutcome.skip(table, "备库表已创建，下个周期复制数据")

        async with backup.runner() as bconn:
            if await catalog.column_data_type(bconn, table, column, backup.schema) is None:
                return SyncOutcome.skip(table, f"备库缺少列 {column}")
            watermark = await self.read_watermark(bconn, tracked, backup.schema)

        async with primary.runner() as pconn:
            batch = await self.fetch_changes(pconn, watermark, primary.schema)

        if batch.is_empty():
            return SyncOutcome(table=table)

        async with backup.runner() as bconn:
            result = await self.upsert_engine.upsert(bconn, table, batch.rows)

        logger.info(
            "cdc_table_synced",
            table=table,
            rows=result.succeeded,
            failed=result.failed,
            watermark=str(watermark.value),
            max_cursor=str(batch.max_cursor())
        )
        error = f"{result.failed} 行写入失败" if result.failed else None
        return SyncOutcome(table=table, rows_processed=result.succeeded, error=error)

    async def read_watermark(
        self,
        conn: asyncpg.Connection,
        tracked: TrackedTable,
        schema: str = "public"
    ) -> Watermark:
        """
        从备库读取水位 COALESCE(MAX(col), 初始值)

        参数:
            conn: 备库连接
            tracked: 表与水位列
            schema: 备库 schema
        """
        native = tracked.native_type.lower()
        initial = _INITIAL_CURSOR_SQL.get(native, "'1970-01-01 00:00:00'::timestamp")
        value = await conn.fetchval(
            f"SELECT COALESCE(MAX({quote_ident(tracked.column)}), {initial}) "
            f"FROM {qualified(schema, tracked.name)}"
        )
        if value is None:
            return Watermark.initial(tracked.name, tracked.column, tracked.native_type)
        return Watermark(
            table=tracked.name,
            column=tracked.column,
            cursor_kind=CursorKind.from_native(native),
            value=value
        )

    async def fetch_changes(
        self,
        conn: asyncpg.Connection,
        watermark: Watermark,
        schema: str = "public",
        limit: Optional[int] = None
    ) -> ChangeBatch:
        """拉取主库中水位之后的行，按水位列升序"""
        column = quote_ident(watermark.column)
        rows = await conn.fetch(
            f"SELECT * FROM {qualified(schema, watermark.table)} "
            f"WHERE {column} > $1 ORDER BY {column} LIMIT {int(limit or self.page_size)}",
            watermark.value
        )
        return ChangeBatch(
            table=watermark.table,
            watermark=watermark,
            rows=[dict(row) for row in rows]
        )

    async def force_sync_table(self, table: str) -> ForceSyncResult:
        """
        强制同步单表（忽略水位）

        最多复制 force_sync_limit 行；任何一侧缺表时返回失败结果。
        """
        primary = self.connections.primary
        backup = self.connections.backup
        try:
            async with primary.runner() as pconn:
                if not await catalog.table_exists(pconn, table, primary.schema):
                    return ForceSyncResult(success=False, message=f"Table {table} not found on primary")
                records = await pconn.fetch(
                    f"SELECT * FROM {qualified(primary.schema, table)} "
                    f"LIMIT {int(self.config.force_sync_limit)}"
                )

            async with backup.runner() as bconn:
                if not await catalog.table_exists(bconn, table, backup.schema):
                    return ForceSyncResult(success=False, message=f"Table {table} not found on backup")
                result = await self.upsert_engine.upsert(bconn, table, [dict(r) for r in records])

            logger.info(
                "force_sync_complete",
                table=table,
                rows=result.succeeded,
                failed=result.failed
            )
            return ForceSyncResult(
                success=True,
                message=f"Synced {result.succeeded} rows for {table}",
                rows_processed=result.succeeded
            )
        except Exception as e:
            logger.error("force_sync_failed", table=table, error=str(e), exc_info=e)
            return ForceSyncResult(success=False, message=f"Force sync failed for {table}: {e}")

    async def get_status(self) -> Dict[str, Any]:
        """监控状态：是否启用、跟踪的表、连接探测"""
        status: Dict[str, Any] = {
            "monitoring": self.enabled,
            "interval_seconds": self.config.change_detection.interval_seconds,
            "databases": await self.connections.ping_all(),
        }
        try:
            tracked = await self.list_tracked_tables()
            status["tracked_tables"] = [t.model_dump() for t in tracked]
        except Exception as e:
            status["tracked_tables"] = []
            status["error"] = str(e)
        return status
