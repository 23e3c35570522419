"""
备份引擎 - 组装各组件、注册定时任务、提供运维操作入口
"""

import asyncio
from typing import Any, Dict, Optional

from pg_mirror.core.change_detector import ChangeDetector
from pg_mirror.core.connection import ConnectionProvider
from pg_mirror.core.full_backup import FullBackupOrchestrator
from pg_mirror.core.health import HealthMonitor
from pg_mirror.core.scheduler import JobScheduler
from pg_mirror.core.schema_sync import SchemaSynchronizer
from pg_mirror.core.upsert import UpsertEngine
from pg_mirror.models.health import HealthSnapshot
from pg_mirror.models.outcome import BackupResult, BackupStatusReport, ForceSyncResult
from pg_mirror.models.sync_config import SyncConfig
from pg_mirror.storage.ledger import StatusLedger
from pg_mirror.utils.logging import get_logger
from pg_mirror.utils.notifier import NotifierManager, build_notifier_manager

logger = get_logger(__name__)

JOB_CHANGE_DETECTION = "change_detection"
JOB_FULL_BACKUP = "full_backup"
JOB_FORCED_BACKUP = "forced_full_backup"
JOB_HEALTH_CHECK = "health_check"
JOB_DAILY_REPORT = "daily_report"


class BackupEngine:
    """
    备份引擎

    管理完整的备份流程：
    - 每 30 秒增量同步
    - 每小时全量对账，每天 02:00 强制重建 + 清理日志
    - 每 5 分钟健康检查，每天 06:00 输出报告

    所有 trigger_* 方法返回结果对象，不抛出异常。

    示例:
        ```python
        engine = BackupEngine(load_config("backup.yaml"))
        await engine.start()
        result = await engine.trigger_table_backup("accounts", force=True)
        await engine.stop()
        ```
    """

    def __init__(
        self,
        config: SyncConfig,
        connections: Optional[ConnectionProvider] = None,
        notifier: Optional[NotifierManager] = None
    ):
        """
        初始化备份引擎

        参数:
            config: 同步配置
            connections: 连接提供者（默认按配置创建）
            notifier: 告警通知（默认控制台 + 可选 webhook）
        """
        self.config = config
        self.connections = connections or ConnectionProvider(config)
        self.notifier = notifier or build_notifier_manager(config.health.webhook_url)

        self.ledger = StatusLedger(self.connections.backup, config.ledger.schema_name)
        self.schema_sync = SchemaSynchronizer(self.connections, config.full_backup)
        self.upsert_engine = UpsertEngine(config.upsert_batch_size, config.backup.schema_name)
        self.change_detector = ChangeDetector(
            self.connections, config, self.schema_sync, self.upsert_engine
        )
        self.full_backup = FullBackupOrchestrator(
            self.connections, config, self.schema_sync, self.upsert_engine, self.ledger
        )
        self.health = HealthMonitor(self.connections, config, self.ledger, self.notifier)
        self.scheduler = JobScheduler()

        self._connected = False
        self._stop_event = asyncio.Event()

    async def connect(self) -> None:
        """建立连接（幂等），按配置创建台账"""
        if self._connected:
            return
        await self.connections.connect()
        self._connected = True
        if self.config.ledger.create_if_missing:
            await self.ledger.ensure_schema()

    async def close(self) -> None:
        if self._connected:
            await self.connections.close()
            self._connected = False

    async def start(self) -> None:
        """连接数据库并启动定时任务"""
        if self.scheduler.is_running():
            raise RuntimeError("备份引擎已在运行")

        await self.connect()
        self._register_jobs()
        self.scheduler.start()
        self._stop_event.clear()

        logger.info(
            "backup_engine_started",
            primary=self.config.primary.dsn_display(),
            backup=self.config.backup.dsn_display(),
            change_detection=self.change_detector.enabled
        )

    async def stop(self) -> None:
        """停止定时任务并关闭连接"""
        logger.info("backup_engine_stopping")
        await self.scheduler.stop()
        await self.close()
        self._stop_event.set()
        logger.info("backup_engine_stopped")

    async def run_forever(self) -> None:
        """启动后阻塞直到 stop() 或被取消"""
        await self.start()
        try:
            await self._stop_event.wait()
        finally:
            if self.scheduler.is_running() or self._connected:
                await self.stop()

    def _register_jobs(self) -> None:
        if self.scheduler.jobs:
            return
        cd = self.config.change_detection
        fb = self.config.full_backup
        health = self.config.health

        if cd.enabled:
            self.scheduler.add_interval_job(
                JOB_CHANGE_DETECTION, self.run_detection_cycle, cd.interval_seconds
            )
        self.scheduler.add_cron_job(JOB_FULL_BACKUP, self._scheduled_full_backup, fb.hourly_cron)
        self.scheduler.add_cron_job(JOB_FORCED_BACKUP, self._scheduled_forced_backup, fb.daily_forced_cron)
        self.scheduler.add_interval_job(JOB_HEALTH_CHECK, self._scheduled_health_check, health.interval_seconds)
        self.scheduler.add_cron_job(JOB_DAILY_REPORT, self._scheduled_daily_report, health.report_cron)

    # ========================================================================
    # 定时任务
    # ========================================================================

    async def run_detection_cycle(self) -> BackupResult:
        """执行一个增量同步周期"""
        try:
            await self.connect()
            outcomes = await self.change_detector.run_cycle()
        except Exception as e:
            logger.error("cdc_cycle_failed", error=str(e), exc_info=e)
            return BackupResult(success=False, message=f"Change detection cycle failed: {e}")
        return BackupResult.from_outcomes(outcomes, "Change detection cycle")

    async def _scheduled_full_backup(self) -> BackupResult:
        return await self.trigger_full_backup(force=False)

    async def _scheduled_forced_backup(self) -> BackupResult:
        result = await self.trigger_full_backup(force=True)
        try:
            await self.full_backup.cleanup_old_backups()
        except Exception as e:
            logger.error("ledger_cleanup_failed", error=str(e), exc_info=e)
        return result

    async def _scheduled_health_check(self) -> Optional[HealthSnapshot]:
        try:
            return await self.health.run_health_check()
        except Exception as e:
            logger.error("health_check_failed", error=str(e), exc_info=e)
            return None

    async def _scheduled_daily_report(self) -> Optional[Dict[str, Any]]:
        try:
            return await self.health.generate_daily_report()
        except Exception as e:
            logger.error("daily_report_failed", error=str(e), exc_info=e)
            return None

    # ========================================================================
    # 运维操作
    # ========================================================================

    async def trigger_full_backup(self, force: bool = False) -> BackupResult:
        """
        全量备份所有表

        参数:
            force: 是否强制重建表结构并重新加载
        """
        label = "Forced full backup" if force else "Full backup"
        try:
            await self.connect()
            outcomes = await self.full_backup.perform_full_backup(force_recreate=force)
        except Exception as e:
            logger.error("full_backup_failed", force=force, error=str(e), exc_info=e)
            return BackupResult(success=False, message=f"{label} failed: {e}")
        return BackupResult.from_outcomes(outcomes, label)

    async def trigger_table_backup(self, table: str, force: bool = False) -> BackupResult:
        """
        备份单表

        参数:
            table: 表名
            force: 是否强制重建并重新加载
        """
        label = f"Backup of table {table}"
        try:
            await self.connect()
            outcome = await self.full_backup.backup_table(table, force_recreate=force)
        except Exception as e:
            logger.error("table_backup_failed", table=table, error=str(e), exc_info=e)
            return BackupResult(success=False, message=f"{label} failed: {e}")
        return BackupResult.from_outcomes([outcome], label)

    async def force_sync_table(self, table: str) -> ForceSyncResult:
        """忽略水位强制同步单表"""
        try:
            await self.connect()
        except Exception as e:
            return ForceSyncResult(success=False, message=f"Force sync failed for {table}: {e}")
        return await self.change_detector.force_sync_table(table)

    async def get_health(self) -> HealthSnapshot:
        """最近一次健康快照，连接失败时重新探测并返回 error 快照"""
        if not await self._try_connect("get_health"):
            return await self.health.collect_metrics()
        return await self.health.get_health()

    async def get_metrics(self) -> Dict[str, Any]:
        snapshot = await self.get_health()
        return snapshot.to_metrics()

    async def detailed_report(self) -> Dict[str, Any]:
        await self._try_connect("detailed_report")
        return await self.health.detailed_report()

    async def get_backup_status(self) -> BackupStatusReport:
        """表覆盖情况，数据库不可用时返回带 error 的空报告"""
        try:
            await self.connect()
            return await self.full_backup.get_backup_status()
        except Exception as e:
            logger.error("backup_status_failed", error=str(e), exc_info=e)
            return BackupStatusReport(error=f"Backup status unavailable: {e}")

    async def get_cdc_status(self) -> Dict[str, Any]:
        """增量同步状态（含调度器信息）"""
        await self._try_connect("get_cdc_status")
        status = await self.change_detector.get_status()
        status["scheduler"] = self.scheduler.status()
        return status

    async def _try_connect(self, operation: str) -> bool:
        try:
            await self.connect()
        except Exception as e:
            logger.error("engine_connect_failed", operation=operation, error=str(e))
            return False
        return True

    async def __aenter__(self) -> "BackupEngine":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self.scheduler.is_running():
            await self.scheduler.stop()
        await self.close()
