"""
模型单元测试 (unittest)
"""

import unittest
from datetime import timezone

from pydantic import ValidationError

from conftest import create_accounts_descriptor, create_test_config, create_test_config_dict
from pg_mirror.models.event import ChangeBatch
from pg_mirror.models.health import HealthSnapshot, HealthStatus, coverage_percentage
from pg_mirror.models.outcome import BackupResult, SyncOutcome
from pg_mirror.models.position import EPOCH, CursorKind, Watermark
from pg_mirror.models.schema import CanonicalKind, ColumnDescriptor, TableDescriptor
from pg_mirror.models.sync_config import (
    DEFAULT_TRACKING_COLUMNS,
    ChangeDetectionConfig,
    HealthConfig,
    PostgresConnection,
    SyncConfig,
)


class TestSyncConfig(unittest.TestCase):
    """同步配置模型测试"""

    def test_basic_config(self):
        """测试基本配置创建与默认值"""
        config = create_test_config()

        self.assertEqual(config.primary.host, "primary.local")
        self.assertEqual(config.backup.port, 5433)
        self.assertEqual(config.upsert_batch_size, 50)
        self.assertEqual(config.force_sync_limit, 1000)
        self.assertEqual(config.full_backup.hourly_cron, "0 * * * *")
        self.assertEqual(config.full_backup.daily_forced_cron, "0 2 * * *")
        self.assertEqual(config.ledger.schema_name, "backup_info")

    def test_log_level_normalized(self):
        """测试日志级别统一大写"""
        config = create_test_config(log_level="warning")
        self.assertEqual(config.log_level, "WARNING")

    def test_invalid_log_level(self):
        """测试无效日志级别"""
        with self.assertRaises(ValidationError):
            create_test_config(log_level="VERBOSE")

    def test_same_database_rejected(self):
        """测试主库和备库不能相同"""
        data = create_test_config_dict()
        data["backup"] = dict(data["primary"])
        with self.assertRaises(ValidationError) as cm:
            SyncConfig(**data)
        self.assertIn("同一个数据库", str(cm.exception))

    def test_invalid_cron_rejected(self):
        """测试无效 cron 表达式"""
        with self.assertRaises(ValidationError):
            create_test_config(full_backup={"hourly_cron": "every hour"})

    def test_health_thresholds(self):
        """测试 warning 阈值必须小于 error 阈值"""
        with self.assertRaises(ValidationError):
            HealthConfig(warning_hours=24, error_hours=6)

    def test_batch_size_bounds(self):
        """测试 UPSERT 分组大小范围"""
        with self.assertRaises(ValidationError):
            create_test_config(upsert_batch_size=0)


class TestPostgresConnection(unittest.TestCase):
    """连接配置测试"""

    def test_defaults(self):
        conn = PostgresConnection(host="db", database="app", username="u")
        self.assertEqual(conn.port, 5432)
        self.assertEqual(conn.schema_name, "public")

    def test_dsn_display_hides_password(self):
        """测试连接描述不包含密码"""
        conn = PostgresConnection(host="db", database="app", username="u", password="hunter2")
        self.assertEqual(conn.dsn_display(), "u@db:5432/app")
        self.assertNotIn("hunter2", conn.dsn_display())

    def test_invalid_schema_name(self):
        """测试 schema 名必须是普通标识符"""
        with self.assertRaises(ValidationError):
            PostgresConnection(host="db", database="app", username="u", schema_name="public; DROP")

    def test_pool_bounds(self):
        with self.assertRaises(ValidationError):
            PostgresConnection(host="db", database="app", username="u", pool_min_size=5, pool_max_size=2)


class TestChangeDetectionConfig(unittest.TestCase):
    """增量同步配置测试"""

    def test_default_tracking_columns(self):
        config = ChangeDetectionConfig()
        self.assertEqual(config.tracking_columns, DEFAULT_TRACKING_COLUMNS)
        self.assertEqual(config.page_size, 100)
        self.assertEqual(config.concurrency, 3)

    def test_tracking_columns_normalized(self):
        """测试列名小写并去重"""
        config = ChangeDetectionConfig(tracking_columns=["Updated_At", "modified", "updated_at"])
        self.assertEqual(config.tracking_columns, ["updated_at", "modified"])

    def test_empty_tracking_columns(self):
        with self.assertRaises(ValidationError):
            ChangeDetectionConfig(tracking_columns=["  "])


class TestSchemaModels(unittest.TestCase):
    """表结构模型测试"""

    def test_primary_key_must_be_column(self):
        """测试主键列必须属于表"""
        with self.assertRaises(ValidationError):
            TableDescriptor(
                name="t",
                columns=[ColumnDescriptor(name="id", native_type="integer")],
                primary_key=["missing"],
            )

    def test_descriptor_lookup(self):
        descriptor = create_accounts_descriptor()
        self.assertEqual(descriptor.column_names, ["id", "name", "balance", "active", "updated_at"])
        self.assertTrue(descriptor.has_column("balance"))
        self.assertFalse(descriptor.has_column("email"))
        self.assertEqual(descriptor.primary_key, ["id"])
        self.assertEqual(descriptor.get_column("balance").canonical_kind, CanonicalKind.DECIMAL)


class TestWatermark(unittest.TestCase):
    """水位线模型测试"""

    def test_initial_timestamp(self):
        """测试时间戳列的初始水位为纪元"""
        mark = Watermark.initial("accounts", "updated_at", "timestamp without time zone")
        self.assertEqual(mark.cursor_kind, CursorKind.TIMESTAMP)
        self.assertEqual(mark.value, EPOCH)
        self.assertTrue(mark.is_initial())

    def test_initial_timestamptz(self):
        mark = Watermark.initial("accounts", "updated_at", "timestamp with time zone")
        self.assertEqual(mark.value.tzinfo, timezone.utc)
        self.assertTrue(mark.is_initial())

    def test_initial_integer(self):
        """测试整数列的初始水位为 0"""
        mark = Watermark.initial("events", "modified", "bigint")
        self.assertEqual(mark.cursor_kind, CursorKind.INTEGER)
        self.assertEqual(mark.value, 0)


class TestChangeBatch(unittest.TestCase):
    """变更批次测试"""

    def test_max_cursor(self):
        mark = Watermark.initial("accounts", "updated_at", "timestamp without time zone")
        batch = ChangeBatch(
            table="accounts",
            watermark=mark,
            rows=[{"id": 1, "updated_at": "a"}, {"id": 2, "updated_at": "b"}],
        )
        self.assertEqual(len(batch), 2)
        self.assertFalse(batch.is_empty())
        self.assertEqual(batch.max_cursor(), "b")

    def test_empty_batch(self):
        mark = Watermark.initial("accounts", "updated_at", "timestamp without time zone")
        batch = ChangeBatch(table="accounts", watermark=mark)
        self.assertTrue(batch.is_empty())
        self.assertIsNone(batch.max_cursor())


class TestOutcomes(unittest.TestCase):
    """结果模型测试"""

    def test_backup_result_success(self):
        outcomes = [SyncOutcome(table="a", rows_processed=3), SyncOutcome(table="b")]
        result = BackupResult.from_outcomes(outcomes, "Full backup")
        self.assertTrue(result.success)
        self.assertEqual(result.rows_processed, 3)
        self.assertIn("completed successfully", result.message)

    def test_backup_result_partial_failure(self):
        """测试单表失败时汇总为失败并列出表名"""
        outcomes = [SyncOutcome(table="a", rows_processed=3), SyncOutcome.failure("b", "boom")]
        result = BackupResult.from_outcomes(outcomes, "Full backup")
        self.assertFalse(result.success)
        self.assertIn("1 failed table(s) of 2: b", result.message)

    def test_skip_is_not_failure(self):
        outcome = SyncOutcome.skip("a", "备库表已创建")
        self.assertTrue(outcome.succeeded)
        self.assertTrue(outcome.skipped)


class TestHealthModels(unittest.TestCase):
    """健康模型测试"""

    def test_coverage_rounding(self):
        """测试覆盖率四舍五入"""
        self.assertEqual(coverage_percentage(43, 45), 96)
        self.assertEqual(coverage_percentage(1, 8), 13)  # 12.5 -> 13
        self.assertEqual(coverage_percentage(0, 0), 0)
        self.assertEqual(coverage_percentage(5, 5), 100)

    def test_worst_status(self):
        self.assertEqual(
            HealthStatus.worst(HealthStatus.WARNING, HealthStatus.ERROR, HealthStatus.HEALTHY),
            HealthStatus.ERROR
        )
        self.assertEqual(HealthStatus.worst(), HealthStatus.HEALTHY)

    def test_snapshot_metrics(self):
        snapshot = HealthSnapshot(total_tables=45, backed_up_tables=43)
        metrics = snapshot.to_metrics()
        self.assertEqual(metrics["coverage_percentage"], 96)
        self.assertEqual(metrics["backup_health"], "healthy")


if __name__ == "__main__":
    unittest.main()
