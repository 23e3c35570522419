"""
健康检查 - 备份覆盖率与新鲜度
"""

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pg_mirror.core import catalog
from pg_mirror.core.connection import ConnectionProvider
from pg_mirror.models.health import (
    HealthSnapshot,
    HealthStatus,
    TableBackupStatus,
    coverage_percentage,
)
from pg_mirror.models.sync_config import SyncConfig
from pg_mirror.storage.ledger import StatusLedger
from pg_mirror.utils.logging import get_logger
from pg_mirror.utils.notifier import NotifierManager

logger = get_logger(__name__)


def classify_health(
    total_tables: int,
    backed_up_tables: int,
    last_backup_time: Optional[datetime],
    databases: Mapping[str, bool],
    table_status: Iterable[TableBackupStatus] = (),
    now: Optional[datetime] = None,
    warning_hours: float = 6.0,
    error_hours: float = 24.0,
    coverage_threshold: float = 0.9
) -> HealthSnapshot:
    """
    根据指标判定健康状态

    规则:
        - error: 任一数据库连接失败，或最近备份超过 error_hours
        - warning: 覆盖率低于 coverage_threshold，或最近备份超过 warning_hours
        - 其余为 healthy

    每条触发的规则都会写入 errors，最终状态取最严重的一条。

    参数:
        total_tables: 主库表数
        backed_up_tables: 备库表数
        last_backup_time: 最近一次成功备份（naive 值按 UTC 处理）
        databases: 连接探测结果
        table_status: 台账中的各表状态
        now: 当前时间（测试用）

    返回:
        HealthSnapshot

    示例:
        >>> classify_health(45, 43, None, {"primary": True, "backup": True}).status
        <HealthStatus.HEALTHY: 'healthy'>
    """
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    status = HealthStatus.HEALTHY
    errors: List[str] = []

    for role, ok in databases.items():
        if not ok:
            errors.append(f"{role} database connection failed")
            status = HealthStatus.worst(status, HealthStatus.ERROR)

    if total_tables > 0 and backed_up_tables / total_tables < coverage_threshold:
        errors.append(
            f"Backup coverage is low: {coverage_percentage(backed_up_tables, total_tables)}% "
            f"({backed_up_tables}/{total_tables} tables)"
        )
        status = HealthStatus.worst(status, HealthStatus.WARNING)

    if last_backup_time is not None:
        last = last_backup_time
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        hours = (now - last).total_seconds() / 3600
        if hours > error_hours:
            errors.append(f"Last backup is {hours:.1f} hours old")
            status = HealthStatus.worst(status, HealthStatus.ERROR)
        elif hours > warning_hours:
            errors.append(f"Last backup is {hours:.1f} hours old")
            status = HealthStatus.worst(status, HealthStatus.WARNING)

    return HealthSnapshot(
        total_tables=total_tables,
        backed_up_tables=backed_up_tables,
        last_backup_time=last_backup_time,
        status=status,
        errors=errors,
        table_status=list(table_status),
        databases=dict(databases),
        checked_at=now,
    )


class HealthMonitor:
    """
    健康监控

    collect_metrics 每次重新计算并更新缓存；get_health 返回最近一次快照。
    """

    def __init__(
        self,
        connections: ConnectionProvider,
        config: SyncConfig,
        ledger: StatusLedger,
        notifier: Optional[NotifierManager] = None
    ):
        self.connections = connections
        self.config = config
        self.ledger = ledger
        self.notifier = notifier
        self._last_snapshot: Optional[HealthSnapshot] = None

    @property
    def last_snapshot(self) -> Optional[HealthSnapshot]:
        return self._last_snapshot

    async def collect_metrics(self) -> HealthSnapshot:
        """探测连接、统计表数量、读取台账后判定健康状态"""
        databases = await self.connections.ping_all()
        primary = self.connections.primary
        backup = self.connections.backup
        ledger_schema = self.config.ledger.schema_name

        total = 0
        backed_up = 0
        if databases.get(primary.role):
            try:
                async with primary.runner() as conn:
                    total = len(await catalog.list_tables(conn, primary.schema, [ledger_schema]))
            except Exception as e:
                logger.warning("health_table_count_failed", role=primary.role, error=str(e))

        if databases.get(backup.role):
            try:
                async with backup.runner() as conn:
                    backed_up = await catalog.count_tables(conn, backup.schema, [ledger_schema])
            except Exception as e:
                logger.warning("health_table_count_failed", role=backup.role, error=str(e))

        table_status: List[TableBackupStatus] = []
        last_backup: Optional[datetime] = None
        if databases.get(backup.role):
            table_status = await self.ledger.table_statuses()
            last_backup = await self.ledger.last_successful_backup()

        health = self.config.health
        snapshot = classify_health(
            total_tables=total,
            backed_up_tables=backed_up,
            last_backup_time=last_backup,
            databases=databases,
            table_status=table_status,
            warning_hours=health.warning_hours,
            error_hours=health.error_hours,
            coverage_threshold=health.coverage_threshold,
        )
        self._last_snapshot = snapshot
        return snapshot

    async def run_health_check(self) -> HealthSnapshot:
        """定时任务：重新计算并在 error 时告警"""
        snapshot = await self.collect_metrics()
        log = logger.info if snapshot.status == HealthStatus.HEALTHY else logger.warning
        log(
            "health_check_complete",
            status=snapshot.status.value,
            coverage=snapshot.coverage_percentage,
            errors=snapshot.errors
        )
        if self.notifier is not None:
            await self.notifier.notify_health(snapshot)
        return snapshot

    async def get_health(self) -> HealthSnapshot:
        """最近一次快照，尚未计算时立即计算"""
        if self._last_snapshot is None:
            return await self.collect_metrics()
        return self._last_snapshot

    async def get_metrics(self) -> Dict[str, Any]:
        snapshot = await self.get_health()
        return snapshot.to_metrics()

    async def detailed_report(self) -> Dict[str, Any]:
        """完整报告：最新快照 + 最近 24 小时备份日志 + 数据库大小"""
        snapshot = await self.collect_metrics()
        return {
            "health": snapshot.model_dump(mode="json"),
            "coverage_percentage": snapshot.coverage_percentage,
            "recent_backups": await self.ledger.recent_log(hours=24, limit=50),
            "database_sizes": await self._database_sizes(),
        }

    async def generate_daily_report(self) -> Dict[str, Any]:
        """定时任务：输出每日报告到日志"""
        report = await self.detailed_report()
        health = report["health"]
        logger.info(
            "daily_backup_report",
            status=health["status"],
            total_tables=health["total_tables"],
            backed_up_tables=health["backed_up_tables"],
            coverage=report["coverage_percentage"],
            last_backup_time=health["last_backup_time"],
            recent_backups=len(report["recent_backups"]),
            database_sizes=report["database_sizes"],
            errors=health["errors"]
        )
        return report

    async def _database_sizes(self) -> Dict[str, Optional[str]]:
        sizes: Dict[str, Optional[str]] = {}
        for db in (self.connections.primary, self.connections.backup):
            try:
                sizes[db.role] = await db.fetchval(
                    "SELECT pg_size_pretty(pg_database_size(current_database()))"
                )
            except Exception as e:
                logger.debug("database_size_failed", role=db.role, error=str(e))
                sizes[db.role] = None
        return sizes
