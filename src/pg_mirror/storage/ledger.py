"""
备份状态台账 - 备库上的 backup_status / backup_log 表

台账是可选的：读写失败只记录日志，不影响同步本身。
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pg_mirror.core.connection import DatabaseConnection
from pg_mirror.models.health import TableBackupStatus
from pg_mirror.utils.logging import get_logger
from pg_mirror.utils.sql_parser import parse_command_count, quote_ident

logger = get_logger(__name__)

STATUS_SUCCESS = "success"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"


class StatusLedger:
    """
    备份状态台账

    表结构:
        backup_status(table_name PK, last_backup_time, row_count, status)
        backup_log(id, table_name, operation, timestamp, status, error_message)

    示例:
        ```python
        ledger = StatusLedger(provider.backup, "backup_info")
        await ledger.ensure_schema()
        await ledger.record_table_backup("accounts", 3, "success")
        ```
    """

    def __init__(self, backup: DatabaseConnection, schema_name: str = "backup_info"):
        """
        参数:
            backup: 备库
            schema_name: 台账 schema
        """
        self.backup = backup
        self.schema_name = schema_name

    @property
    def status_table(self) -> str:
        return f"{quote_ident(self.schema_name)}.backup_status"

    @property
    def log_table(self) -> str:
        return f"{quote_ident(self.schema_name)}.backup_log"

    async def ensure_schema(self) -> bool:
        """创建台账 schema 和表，失败返回 False"""
        try:
            async with self.backup.runner() as conn:
                await conn.execute(f"CREATE SCHEMA IF NOT EXISTS {quote_ident(self.schema_name)}")
                await conn.execute(f"""
                    CREATE TABLE IF NOT EXISTS {self.status_table} (
                        table_name TEXT PRIMARY KEY,
                        last_backup_time TIMESTAMPTZ,
                        row_count BIGINT DEFAULT 0,
                        status TEXT
                    )
                """)
                await conn.execute(f"""
                    CREATE TABLE IF NOT EXISTS {self.log_table} (
                        id BIGSERIAL PRIMARY KEY,
                        table_name TEXT NOT NULL,
                        operation TEXT NOT NULL,
                        timestamp TIMESTAMPTZ NOT NULL DEFAULT now(),
                        status TEXT NOT NULL,
                        error_message TEXT
                    )
                """)
                await conn.execute(f"""
                    CREATE INDEX IF NOT EXISTS idx_backup_log_timestamp
                        ON {self.log_table} (timestamp)
                """)
            return True
        except Exception as e:
            logger.warning("ledger_create_failed", schema=self.schema_name, error=str(e))
            return False

    async def record_table_backup(
        self,
        table: str,
        row_count: int,
        status: str,
        error_message: Optional[str] = None,
        operation: str = "full_backup"
    ) -> bool:
        """
        记录单表备份结果（backup_status 覆盖写 + backup_log 追加）

        返回:
            是否写入成功
        """
        try:
            async with self.backup.runner() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO {self.status_table} (table_name, last_backup_time, row_count, status)
                    VALUES ($1, now(), $2, $3)
                    ON CONFLICT (table_name) DO UPDATE SET
                        last_backup_time = EXCLUDED.last_backup_time,
                        row_count = EXCLUDED.row_count,
                        status = EXCLUDED.status
                    """,
                    table, row_count, status
                )
                await conn.execute(
                    f"""
                    INSERT INTO {self.log_table} (table_name, operation, status, error_message)
                    VALUES ($1, $2, $3, $4)
                    """,
                    table, operation, status, error_message
                )
            return True
        except Exception as e:
            logger.debug("ledger_write_skipped", table=table, error=str(e))
            return False

    async def cleanup(self, retention_days: int) -> int:
        """
        删除超过保留期的 backup_log

        返回:
            删除行数；台账不存在时为 0
        """
        try:
            async with self.backup.runner() as conn:
                status = await conn.execute(
                    f"DELETE FROM {self.log_table} WHERE timestamp < now() - make_interval(days => $1)",
                    retention_days
                )
        except Exception as e:
            logger.debug("ledger_cleanup_skipped", error=str(e))
            return 0

        deleted = parse_command_count(status)
        logger.info("ledger_cleanup_complete", deleted=deleted, retention_days=retention_days)
        return deleted

    async def last_successful_backup(self) -> Optional[datetime]:
        """最近一次成功备份的时间"""
        try:
            async with self.backup.runner() as conn:
                return await conn.fetchval(
                    f"SELECT MAX(last_backup_time) FROM {self.status_table} WHERE status = $1",
                    STATUS_SUCCESS
                )
        except Exception as e:
            logger.debug("ledger_read_skipped", error=str(e))
            return None

    async def table_statuses(self) -> List[TableBackupStatus]:
        """各表的最新备份状态"""
        try:
            async with self.backup.runner() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT table_name, last_backup_time, row_count, status
                    FROM {self.status_table}
                    ORDER BY table_name
                    """
                )
        except Exception as e:
            logger.debug("ledger_read_skipped", error=str(e))
            return []

        return [
            TableBackupStatus(
                table_name=row["table_name"],
                last_backup=row["last_backup_time"],
                row_count=row["row_count"] or 0,
                status=row["status"] or "unknown",
            )
            for row in rows
        ]

    async def recent_log(self, hours: int = 24, limit: int = 50) -> List[Dict[str, Any]]:
        """最近的备份日志"""
        try:
            async with self.backup.runner() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT table_name, operation, timestamp, status, error_message
                    FROM {self.log_table}
                    WHERE timestamp > now() - make_interval(hours => $1)
                    ORDER BY timestamp DESC
                    LIMIT $2
                    """,
                    hours, limit
                )
        except Exception as e:
            logger.debug("ledger_read_skipped", error=str(e))
            return []
        return [dict(row) for row in rows]
