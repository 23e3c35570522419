"""
PostgreSQL 备份同步引擎

在无法使用 WAL 流复制的前提下，让备库在结构和数据上追平主库：
基于时间戳轮询的增量同步、按类型转换的批量 UPSERT、
定时全量对账以及备份覆盖率健康检查。
"""

from typing import Any

__version__ = "0.1.0"

# 延迟导入，避免循环依赖
__all__ = [
    "BackupEngine",
    "ConnectionProvider",
    "SyncConfig",
    "HealthSnapshot",
    "load_config",
]


def __getattr__(name: str) -> Any:
    """延迟加载核心类"""
    if name == "BackupEngine":
        from pg_mirror.core.engine import BackupEngine
        return BackupEngine
    elif name == "ConnectionProvider":
        from pg_mirror.core.connection import ConnectionProvider
        return ConnectionProvider
    elif name == "SyncConfig":
        from pg_mirror.models.sync_config import SyncConfig
        return SyncConfig
    elif name == "HealthSnapshot":
        from pg_mirror.models.health import HealthSnapshot
        return HealthSnapshot
    elif name == "load_config":
        from pg_mirror.config import load_config
        return load_config
    raise AttributeError(f"module 'pg_mirror' has no attribute '{name}'")
