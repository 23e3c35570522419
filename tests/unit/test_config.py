"""
配置加载单元测试 (unittest)
"""

import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import yaml

from conftest import create_test_config_yaml
from pg_mirror.config import (
    ConfigError,
    generate_config_template,
    load_config,
    load_config_from_string,
    save_config_template,
)


class TestLoadConfig(unittest.TestCase):
    """配置加载测试"""

    def test_load_from_string(self):
        """测试从 YAML 字符串加载"""
        config = load_config_from_string(create_test_config_yaml())

        self.assertEqual(config.primary.host, "primary.local")
        self.assertEqual(config.primary.password, "secret")
        self.assertEqual(config.backup.port, 5433)
        self.assertEqual(config.change_detection.interval_seconds, 15)
        self.assertEqual(config.change_detection.tracking_columns, ["updated_at", "modified"])
        self.assertEqual(config.log_level, "DEBUG")

    def test_env_var_expansion(self):
        """测试环境变量替换"""
        with patch.dict(os.environ, {"PG_MIRROR_TEST_PASSWORD": "from-env"}):
            config = load_config_from_string(create_test_config_yaml())
        self.assertEqual(config.primary.password, "from-env")

    def test_missing_env_var(self):
        """测试未设置且无默认值的环境变量"""
        content = create_test_config_yaml().replace(
            "${PG_MIRROR_TEST_PASSWORD:-secret}", "${PG_MIRROR_TEST_UNSET_VAR}"
        )
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("PG_MIRROR_TEST_UNSET_VAR", None)
            with self.assertRaises(ConfigError) as cm:
                load_config_from_string(content)
        self.assertIn("PG_MIRROR_TEST_UNSET_VAR", str(cm.exception))

    def test_invalid_yaml(self):
        with self.assertRaises(ConfigError):
            load_config_from_string("primary: [unclosed")

    def test_not_a_mapping(self):
        with self.assertRaises(ConfigError):
            load_config_from_string("- just\n- a list\n")

    def test_validation_error(self):
        """测试缺少备库配置"""
        with self.assertRaises(ConfigError) as cm:
            load_config_from_string("primary:\n  host: a\n  database: b\n  username: c\n")
        self.assertIn("配置验证失败", str(cm.exception))

    def test_missing_file(self):
        with self.assertRaises(ConfigError):
            load_config("/nonexistent/backup.yaml")

    def test_load_from_file(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "backup.yaml"
            path.write_text(create_test_config_yaml(), encoding="utf-8")
            config = load_config(path)
        self.assertEqual(config.backup.database, "app_backup")


class TestConfigTemplate(unittest.TestCase):
    """配置模板测试"""

    def test_template_is_valid_yaml(self):
        data = yaml.safe_load(generate_config_template())
        self.assertIn("primary", data)
        self.assertIn("backup", data)
        self.assertEqual(data["full_backup"]["hourly_cron"], "0 * * * *")

    def test_saved_template_loads(self):
        """测试模板填好环境变量后可以加载"""
        env = {
            "PRIMARY_USER": "reader",
            "PRIMARY_PASSWORD": "p",
            "BACKUP_USER": "writer",
            "BACKUP_PASSWORD": "b",
        }
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "backup.yaml"
            save_config_template(path)
            with patch.dict(os.environ, env):
                config = load_config(path)

        self.assertEqual(config.primary.username, "reader")
        self.assertEqual(config.ledger.retention_days, 30)


if __name__ == "__main__":
    unittest.main()
