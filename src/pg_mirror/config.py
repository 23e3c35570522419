"""
配置加载模块 - 支持 YAML 和环境变量
"""

from pathlib import Path
from typing import Any, Dict

import yaml
from pydantic import ValidationError

from pg_mirror.models.sync_config import SyncConfig, expand_env_vars


class ConfigError(Exception):
    """配置错误"""
    pass


def _build_config(raw_config: Any) -> SyncConfig:
    if not isinstance(raw_config, dict):
        raise ConfigError("配置文件必须是一个对象")

    try:
        expanded: Dict[str, Any] = expand_env_vars(raw_config)
    except ValueError as e:
        raise ConfigError(f"环境变量展开失败: {e}")

    try:
        return SyncConfig(**expanded)
    except ValidationError as e:
        raise ConfigError(f"配置验证失败: {e}")


def load_config(path: str | Path) -> SyncConfig:
    """
    加载 YAML 配置文件

    支持环境变量替换，格式:
        - ${VAR_NAME}
        - ${VAR_NAME:-default_value}

    参数:
        path: 配置文件路径

    返回:
        SyncConfig: 验证后的配置对象

    异常:
        ConfigError: 配置文件不存在、格式错误或验证失败

    示例:
        ```python
        config = load_config("backup.yaml")
        print(config.primary.host)
        ```
    """
    config_path = Path(path)

    if not config_path.exists():
        raise ConfigError(f"配置文件不存在: {config_path}")

    try:
        content = config_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"读取配置文件失败: {e}")

    return load_config_from_string(content)


def load_config_from_string(content: str) -> SyncConfig:
    """
    从字符串加载配置

    参数:
        content: YAML 配置字符串

    返回:
        SyncConfig: 验证后的配置对象
    """
    try:
        raw_config = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(f"YAML 解析失败: {e}")

    return _build_config(raw_config)


def generate_config_template() -> str:
    """
    生成配置模板

    返回:
        str: YAML 配置模板
    """
    return '''# PostgreSQL 备份同步引擎配置

# 主库（只读访问）
primary:
  host: "${PRIMARY_HOST:-localhost}"
  port: 5432
  database: "app"
  username: "${PRIMARY_USER}"
  password: "${PRIMARY_PASSWORD}"
  schema_name: "public"
  pool_max_size: 10
  command_timeout: 60

# 备库
backup:
  host: "${BACKUP_HOST:-localhost}"
  port: 5433
  database: "app_backup"
  username: "${BACKUP_USER}"
  password: "${BACKUP_PASSWORD}"
  schema_name: "public"

# 增量同步（基于修改时间列轮询）
change_detection:
  enabled: true
  interval_seconds: 30
  page_size: 100          # 每个周期每张表最多复制的行数
  concurrency: 3          # 同时同步的表数
  tracking_columns: ["updated_at", "updateat", "modified", "last_modified", "last_updated"]

# 全量备份
full_backup:
  page_size: 1000
  hourly_cron: "0 * * * *"        # 非强制对账
  daily_forced_cron: "0 2 * * *"  # 重建 + 重新加载 + 清理日志
  ddl_dump_enabled: true          # 使用 pg_dump 克隆表结构
  pg_dump_path: "pg_dump"
  ddl_dump_timeout: 60

# 健康检查
health:
  interval_seconds: 300
  report_cron: "0 6 * * *"
  warning_hours: 6
  error_hours: 24
  coverage_threshold: 0.9
  # webhook_url: "https://hooks.example.com/backup-alerts"

# 备份状态台账（备库）
ledger:
  schema_name: "backup_info"
  retention_days: 30
  create_if_missing: true

# 全局配置
upsert_batch_size: 50
force_sync_limit: 1000
log_level: "INFO"             # 日志级别 (DEBUG, INFO, WARNING, ERROR)
json_logs: false
'''


def save_config_template(path: str | Path) -> None:
    """
    保存配置模板到文件

    参数:
        path: 输出文件路径
    """
    config_path = Path(path)
    config_path.write_text(generate_config_template(), encoding="utf-8")
