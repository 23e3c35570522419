"""
健康检查单元测试 (unittest)
"""

import unittest
from datetime import datetime, timedelta, timezone
from unittest import IsolatedAsyncioTestCase
from unittest.mock import AsyncMock, MagicMock, patch

from conftest import create_mock_conn, create_mock_provider, create_test_config
from pg_mirror.core import catalog
from pg_mirror.core.health import HealthMonitor, classify_health
from pg_mirror.models.health import HealthSnapshot, HealthStatus
from pg_mirror.utils.notifier import NotifierManager

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
UP = {"primary": True, "backup": True}


class TestClassifyHealth(unittest.TestCase):
    """健康判定测试"""

    def test_healthy(self):
        """测试覆盖率足够且 2 小时前备份为 healthy"""
        snapshot = classify_health(45, 43, NOW - timedelta(hours=2), UP, now=NOW)

        self.assertEqual(snapshot.status, HealthStatus.HEALTHY)
        self.assertEqual(snapshot.errors, [])
        self.assertEqual(snapshot.coverage_percentage, 96)

    def test_stale_backup_warning(self):
        """测试 7 小时前备份为 warning"""
        snapshot = classify_health(45, 43, NOW - timedelta(hours=7), UP, now=NOW)

        self.assertEqual(snapshot.status, HealthStatus.WARNING)
        self.assertEqual(snapshot.errors, ["Last backup is 7.0 hours old"])

    def test_stale_backup_error(self):
        """测试 25 小时前备份为 error"""
        snapshot = classify_health(45, 43, NOW - timedelta(hours=25), UP, now=NOW)

        self.assertEqual(snapshot.status, HealthStatus.ERROR)
        self.assertEqual(snapshot.errors, ["Last backup is 25.0 hours old"])

    def test_connection_failure(self):
        """测试连接失败为 error"""
        snapshot = classify_health(45, 43, None, {"primary": True, "backup": False}, now=NOW)

        self.assertEqual(snapshot.status, HealthStatus.ERROR)
        self.assertIn("backup database connection failed", snapshot.errors)

    def test_low_coverage(self):
        """测试覆盖率低于阈值为 warning"""
        snapshot = classify_health(10, 5, NOW, UP, now=NOW)

        self.assertEqual(snapshot.status, HealthStatus.WARNING)
        self.assertEqual(snapshot.errors, ["Backup coverage is low: 50% (5/10 tables)"])

    def test_empty_primary_is_not_low_coverage(self):
        snapshot = classify_health(0, 0, None, UP, now=NOW)
        self.assertEqual(snapshot.status, HealthStatus.HEALTHY)

    def test_worst_rule_wins(self):
        """测试多条规则同时触发时取最严重的状态"""
        snapshot = classify_health(
            10, 5, NOW - timedelta(hours=30), {"primary": False, "backup": True}, now=NOW
        )
        self.assertEqual(snapshot.status, HealthStatus.ERROR)
        self.assertEqual(len(snapshot.errors), 3)

    def test_naive_last_backup(self):
        """测试不带时区的备份时间按 UTC 处理"""
        naive = (NOW - timedelta(hours=2)).replace(tzinfo=None)
        snapshot = classify_health(1, 1, naive, UP, now=NOW)
        self.assertEqual(snapshot.status, HealthStatus.HEALTHY)

    def test_custom_thresholds(self):
        snapshot = classify_health(
            10, 8, NOW - timedelta(hours=2), UP, now=NOW,
            warning_hours=1, error_hours=3, coverage_threshold=0.8
        )
        self.assertEqual(snapshot.status, HealthStatus.WARNING)
        self.assertEqual(len(snapshot.errors), 1)


class TestHealthMonitor(IsolatedAsyncioTestCase):
    """HealthMonitor 测试"""

    def setUp(self):
        self.provider = create_mock_provider()
        self.ledger = MagicMock()
        self.ledger.table_statuses = AsyncMock(return_value=[])
        self.ledger.last_successful_backup = AsyncMock(
            return_value=datetime.now(timezone.utc) - timedelta(hours=1)
        )
        self.ledger.recent_log = AsyncMock(return_value=[])
        self.notifier = MagicMock(spec=NotifierManager)
        self.notifier.notify_health = AsyncMock(return_value=False)
        self.monitor = HealthMonitor(self.provider, create_test_config(), self.ledger, self.notifier)

    async def test_collect_metrics(self):
        """测试统计主库表数和备库表数"""
        with patch("pg_mirror.core.health.catalog.list_tables", AsyncMock(return_value=["a", "b"])), \
                patch("pg_mirror.core.health.catalog.count_tables", AsyncMock(return_value=2)) as count:
            snapshot = await self.monitor.collect_metrics()

        self.assertEqual(snapshot.total_tables, 2)
        self.assertEqual(snapshot.backed_up_tables, 2)
        self.assertEqual(snapshot.status, HealthStatus.HEALTHY)
        count.assert_awaited_once_with(self.provider.backup.conn, "public", ["backup_info"])
        self.assertIs(self.monitor.last_snapshot, snapshot)

    async def test_backup_down_skips_ledger(self):
        """测试备库不可达时不读取台账"""
        self.provider.ping_all.return_value = {"primary": True, "backup": False}
        with patch("pg_mirror.core.health.catalog.list_tables", AsyncMock(return_value=["a"])), \
                patch("pg_mirror.core.health.catalog.count_tables", AsyncMock()) as count:
            snapshot = await self.monitor.collect_metrics()

        count.assert_not_awaited()
        self.ledger.last_successful_backup.assert_not_awaited()
        self.assertEqual(snapshot.status, HealthStatus.ERROR)

    async def test_get_health_uses_cache(self):
        """测试 get_health 返回缓存快照"""
        cached = HealthSnapshot(total_tables=1, backed_up_tables=1)
        self.monitor._last_snapshot = cached
        self.provider.ping_all.reset_mock()

        self.assertIs(await self.monitor.get_health(), cached)
        self.provider.ping_all.assert_not_awaited()

    async def test_run_health_check_notifies(self):
        with patch("pg_mirror.core.health.catalog.list_tables", AsyncMock(return_value=[])), \
                patch("pg_mirror.core.health.catalog.count_tables", AsyncMock(return_value=0)):
            snapshot = await self.monitor.run_health_check()

        self.notifier.notify_health.assert_awaited_once_with(snapshot)

    async def test_detailed_report(self):
        self.provider.primary.fetchval.return_value = "12 MB"
        self.provider.backup.fetchval.side_effect = RuntimeError("denied")
        with patch("pg_mirror.core.health.catalog.list_tables", AsyncMock(return_value=["a"])), \
                patch("pg_mirror.core.health.catalog.count_tables", AsyncMock(return_value=1)):
            report = await self.monitor.detailed_report()

        self.assertEqual(report["coverage_percentage"], 100)
        self.assertEqual(report["health"]["status"], "healthy")
        self.assertEqual(report["database_sizes"], {"primary": "12 MB", "backup": None})
        self.assertEqual(report["recent_backups"], [])

    async def test_coverage_ignores_other_backup_schemas(self):
        """测试备库其他 schema 下的表不计入覆盖率"""
        self.provider.primary.conn.fetch.return_value = [{"tablename": n} for n in ("a", "b", "c", "d")]
        counts = {"public": 2, "archive": 50}
        self.provider.backup.conn.fetchval.side_effect = lambda sql, schema: counts[schema]

        snapshot = await self.monitor.collect_metrics()

        self.assertEqual(snapshot.total_tables, 4)
        self.assertEqual(snapshot.backed_up_tables, 2)
        self.assertEqual(snapshot.coverage_percentage, 50)
        self.assertEqual(snapshot.status, HealthStatus.WARNING)


class TestCountTables(IsolatedAsyncioTestCase):
    """备库表计数测试"""

    async def test_scoped_to_schema(self):
        conn = create_mock_conn()
        conn.fetchval.return_value = 7

        self.assertEqual(await catalog.count_tables(conn, "mirror", ["backup_info"]), 7)

        sql, schema = conn.fetchval.await_args.args
        self.assertIn("table_schema = $1", sql)
        self.assertEqual(schema, "mirror")

    async def test_excluded_schema(self):
        """测试台账 schema 不计数"""
        conn = create_mock_conn()

        self.assertEqual(await catalog.count_tables(conn, "backup_info", ["backup_info"]), 0)
        conn.fetchval.assert_not_awaited()


class TestNotifyHealth(IsolatedAsyncioTestCase):
    """健康告警测试"""

    async def test_only_error_notifies(self):
        channel = MagicMock()
        channel.notify = AsyncMock()
        manager = NotifierManager([channel])

        sent = await manager.notify_health(HealthSnapshot(status=HealthStatus.WARNING))
        self.assertFalse(sent)
        channel.notify.assert_not_awaited()

        snapshot = HealthSnapshot(status=HealthStatus.ERROR, errors=["backup database connection failed"])
        self.assertTrue(await manager.notify_health(snapshot))
        level, title, message = channel.notify.await_args.args
        self.assertEqual(level, "error")
        self.assertIn("backup database connection failed", message)

    async def test_failing_channel_isolated(self):
        """测试单个渠道失败不影响其他渠道"""
        broken = MagicMock()
        broken.notify = AsyncMock(side_effect=RuntimeError("down"))
        working = MagicMock()
        working.notify = AsyncMock()
        manager = NotifierManager([broken, working])

        await manager.notify("error", "title", "message")

        working.notify.assert_awaited_once_with("error", "title", "message")


if __name__ == "__main__":
    unittest.main()
