"""
同步配置模型 - 使用 Pydantic 进行配置验证
"""

import os
import re
from typing import Any, List, Optional

from croniter import croniter
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# 识别为"最后修改时间"的列名，按优先级排列
DEFAULT_TRACKING_COLUMNS = [
    "updated_at",
    "updateat",
    "modified",
    "last_modified",
    "last_updated",
]

_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]*$")


def _validate_cron(value: str) -> str:
    if not croniter.is_valid(value):
        raise ValueError(f"无效的 cron 表达式: {value}")
    return value


class PostgresConnection(BaseModel):
    """
    PostgreSQL 连接配置

    属性:
        host: 主机地址
        port: 端口
        database: 数据库名
        username: 用户名
        password: 密码
        schema_name: 同步的 schema，默认 public
        pool_min_size: 连接池最小连接数
        pool_max_size: 连接池最大连接数
        command_timeout: 单条语句超时（秒）
        connect_timeout: 建立连接超时（秒）
    """
    model_config = ConfigDict(title="PostgreSQL Connection")

    host: str = Field(..., description="主机地址")
    port: int = Field(default=5432, ge=1, le=65535, description="端口")
    database: str = Field(..., description="数据库名")
    username: str = Field(..., description="用户名")
    password: str = Field(default="", description="密码")
    schema_name: str = Field(default="public", description="同步的 schema")
    pool_min_size: int = Field(default=1, ge=0, le=50, description="连接池最小连接数")
    pool_max_size: int = Field(default=10, ge=1, le=100, description="连接池最大连接数")
    command_timeout: float = Field(default=60.0, gt=0, description="单条语句超时（秒）")
    connect_timeout: float = Field(default=10.0, gt=0, description="建立连接超时（秒）")

    @field_validator("schema_name")
    @classmethod
    def validate_schema_name(cls, v: str) -> str:
        """schema 名会拼进 SQL，限制为普通标识符"""
        if not _IDENTIFIER_PATTERN.match(v):
            raise ValueError(f"无效的 schema 名: {v}")
        return v

    @model_validator(mode="after")
    def validate_pool_bounds(self) -> "PostgresConnection":
        """验证连接池上下限"""
        if self.pool_min_size > self.pool_max_size:
            raise ValueError("pool_min_size 不能大于 pool_max_size")
        return self

    def dsn_display(self) -> str:
        """不含密码的连接描述，用于日志"""
        return f"{self.username}@{self.host}:{self.port}/{self.database}"


class ChangeDetectionConfig(BaseModel):
    """
    增量同步（时间戳轮询）配置

    属性:
        enabled: 是否启用轮询
        interval_seconds: 轮询间隔
        page_size: 每个周期每张表最多拉取的行数
        concurrency: 同时同步的表数
        tracking_columns: 识别为修改时间的列名，按优先级排列
    """
    enabled: bool = Field(default=True, description="是否启用轮询")
    interval_seconds: float = Field(default=30.0, gt=0, description="轮询间隔（秒）")
    page_size: int = Field(default=100, ge=1, le=10000, description="每周期每表拉取行数上限")
    concurrency: int = Field(default=3, ge=1, le=32, description="同时同步的表数")
    tracking_columns: List[str] = Field(
        default_factory=lambda: list(DEFAULT_TRACKING_COLUMNS),
        min_length=1,
        description="修改时间列名（按优先级）"
    )

    @field_validator("tracking_columns")
    @classmethod
    def normalize_tracking_columns(cls, v: List[str]) -> List[str]:
        """列名统一小写并去重，保持顺序"""
        seen: List[str] = []
        for name in v:
            lowered = name.strip().lower()
            if lowered and lowered not in seen:
                seen.append(lowered)
        if not seen:
            raise ValueError("tracking_columns 不能为空")
        return seen


class FullBackupConfig(BaseModel):
    """
    全量备份配置

    属性:
        page_size: 从主库分页读取的行数
        hourly_cron: 非强制全量备份的 cron
        daily_forced_cron: 强制重建 + 清理的 cron
        ddl_dump_enabled: 是否使用 pg_dump 克隆表结构
        pg_dump_path: pg_dump 可执行文件
        ddl_dump_timeout: pg_dump 超时（秒）
    """
    page_size: int = Field(default=1000, ge=1, le=100000, description="分页读取行数")
    hourly_cron: str = Field(default="0 * * * *", description="全量备份 cron")
    daily_forced_cron: str = Field(default="0 2 * * *", description="强制全量备份 cron")
    ddl_dump_enabled: bool = Field(default=True, description="是否使用 pg_dump 克隆结构")
    pg_dump_path: str = Field(default="pg_dump", description="pg_dump 路径")
    ddl_dump_timeout: float = Field(default=60.0, gt=0, description="pg_dump 超时（秒）")

    @field_validator("hourly_cron", "daily_forced_cron")
    @classmethod
    def validate_cron(cls, v: str) -> str:
        """验证 cron 表达式"""
        return _validate_cron(v)


class HealthConfig(BaseModel):
    """
    健康检查配置

    属性:
        interval_seconds: 健康检查间隔
        report_cron: 每日报告 cron
        warning_hours: 超过该小时数未备份为 warning
        error_hours: 超过该小时数未备份为 error
        coverage_threshold: 覆盖率低于该值为 warning
        webhook_url: 健康状态为 error 时的告警 Webhook
    """
    interval_seconds: float = Field(default=300.0, gt=0, description="健康检查间隔（秒）")
    report_cron: str = Field(default="0 6 * * *", description="每日报告 cron")
    warning_hours: float = Field(default=6.0, gt=0, description="warning 阈值（小时）")
    error_hours: float = Field(default=24.0, gt=0, description="error 阈值（小时）")
    coverage_threshold: float = Field(default=0.9, gt=0, le=1, description="覆盖率阈值")
    webhook_url: Optional[str] = Field(default=None, description="告警 Webhook")

    @field_validator("report_cron")
    @classmethod
    def validate_cron(cls, v: str) -> str:
        """验证 cron 表达式"""
        return _validate_cron(v)

    @model_validator(mode="after")
    def validate_thresholds(self) -> "HealthConfig":
        """warning 阈值必须小于 error 阈值"""
        if self.warning_hours >= self.error_hours:
            raise ValueError("warning_hours 必须小于 error_hours")
        return self


class LedgerConfig(BaseModel):
    """
    备份状态台账配置（备库上的 backup_status / backup_log 表）

    属性:
        schema_name: 台账所在 schema
        retention_days: backup_log 保留天数
        create_if_missing: 引擎启动时是否在备库创建台账
    """
    schema_name: str = Field(default="backup_info", description="台账 schema")
    retention_days: int = Field(default=30, ge=1, description="backup_log 保留天数")
    create_if_missing: bool = Field(default=True, description="启动时创建台账")

    @field_validator("schema_name")
    @classmethod
    def validate_schema_name(cls, v: str) -> str:
        if not _IDENTIFIER_PATTERN.match(v):
            raise ValueError(f"无效的 schema 名: {v}")
        return v


class SyncConfig(BaseModel):
    """
    备份同步配置根对象

    属性:
        primary: 主库连接
        backup: 备库连接
        change_detection: 增量同步配置
        full_backup: 全量备份配置
        health: 健康检查配置
        ledger: 状态台账配置
        upsert_batch_size: UPSERT 分组大小，默认 50
        force_sync_limit: 手动强制同步的行数上限，默认 1000
        log_level: 日志级别
        json_logs: 是否输出 JSON 日志
    """
    primary: PostgresConnection = Field(..., description="主库连接")
    backup: PostgresConnection = Field(..., description="备库连接")
    change_detection: ChangeDetectionConfig = Field(
        default_factory=ChangeDetectionConfig, description="增量同步配置"
    )
    full_backup: FullBackupConfig = Field(
        default_factory=FullBackupConfig, description="全量备份配置"
    )
    health: HealthConfig = Field(default_factory=HealthConfig, description="健康检查配置")
    ledger: LedgerConfig = Field(default_factory=LedgerConfig, description="状态台账配置")
    upsert_batch_size: int = Field(default=50, ge=1, le=1000, description="UPSERT 分组大小")
    force_sync_limit: int = Field(default=1000, ge=1, description="强制同步行数上限")
    log_level: str = Field(default="INFO", description="日志级别")
    json_logs: bool = Field(default=False, description="是否输出 JSON 日志")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """验证日志级别"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR"]
        if v.upper() not in valid_levels:
            raise ValueError(f"日志级别必须是以下之一: {valid_levels}")
        return v.upper()

    @model_validator(mode="after")
    def validate_distinct_databases(self) -> "SyncConfig":
        """主库和备库不能是同一个库"""
        p, b = self.primary, self.backup
        if (p.host, p.port, p.database, p.schema_name) == (b.host, b.port, b.database, b.schema_name):
            raise ValueError("primary 和 backup 指向同一个数据库")
        return self


def expand_env_vars(value: Any) -> Any:
    """
    递归展开值中的环境变量

    支持格式:
        - ${VAR_NAME}
        - ${VAR_NAME:-default_value}
    """
    if isinstance(value, str):
        pattern = r'\$\{([^}:-]+)(?::-([^}]*))?\}'

        def replacer(match: "re.Match[str]") -> str:
            var_name = match.group(1)
            default_val = match.group(2)
            env_value = os.getenv(var_name)
            if env_value is None:
                if default_val is not None:
                    return default_val
                raise ValueError(f"环境变量 {var_name} 未设置且无默认值")
            return env_value

        result: Any = re.sub(pattern, replacer, value)
        return result
    elif isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [expand_env_vars(item) for item in value]
    return value
