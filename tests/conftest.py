"""
测试配置和共享工具 (unittest 兼容)
"""

import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

from pg_mirror.models.schema import CanonicalKind, ColumnDescriptor, TableDescriptor
from pg_mirror.models.sync_config import PostgresConnection, SyncConfig

# 数据库集成测试使用的环境变量
PRIMARY_DSN_ENV = "PG_MIRROR_TEST_PRIMARY_DSN"
BACKUP_DSN_ENV = "PG_MIRROR_TEST_BACKUP_DSN"


# ============================================================================
# 配置工厂函数
# ============================================================================

def create_test_config_dict(**overrides: Any) -> Dict[str, Any]:
    """返回测试配置字典"""
    config: Dict[str, Any] = {
        "primary": {
            "host": "primary.local",
            "port": 5432,
            "database": "app",
            "username": "reader",
            "password": "secret",
        },
        "backup": {
            "host": "backup.local",
            "port": 5433,
            "database": "app_backup",
            "username": "writer",
            "password": "secret",
        },
        "change_detection": {
            "interval_seconds": 30,
            "page_size": 100,
            "concurrency": 3,
        },
        "full_backup": {
            "page_size": 1000,
            "ddl_dump_enabled": True,
        },
        "upsert_batch_size": 50,
        "log_level": "DEBUG",
    }
    config.update(overrides)
    return config


def create_test_config(**overrides: Any) -> SyncConfig:
    return SyncConfig(**create_test_config_dict(**overrides))


def create_test_config_yaml() -> str:
    """返回测试配置 YAML 字符串"""
    return """
primary:
  host: "primary.local"
  database: "app"
  username: "reader"
  password: "${PG_MIRROR_TEST_PASSWORD:-secret}"

backup:
  host: "backup.local"
  port: 5433
  database: "app_backup"
  username: "writer"
  password: "secret"

change_detection:
  interval_seconds: 15
  tracking_columns: ["Updated_At", "modified", "updated_at"]

log_level: "debug"
"""


# ============================================================================
# Mock 数据库
# ============================================================================

class AsyncContext:
    """可用于 async with 的空上下文"""

    def __init__(self, value: Any = None):
        self.value = value

    async def __aenter__(self) -> Any:
        return self.value

    async def __aexit__(self, *exc: Any) -> bool:
        return False


def create_mock_conn() -> MagicMock:
    """创建 Mock asyncpg 连接"""
    conn = MagicMock()
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetchval = AsyncMock(return_value=None)
    conn.execute = AsyncMock(return_value="INSERT 0 1")
    conn.transaction = MagicMock(return_value=AsyncContext())
    return conn


def create_mock_database(
    role: str,
    conn: Optional[MagicMock] = None,
    schema: str = "public"
) -> MagicMock:
    """创建 Mock DatabaseConnection，runner() 总是借出同一条连接"""
    conn = conn or create_mock_conn()
    db = MagicMock()
    db.role = role
    db.schema = schema
    db.conn = conn
    db.config = PostgresConnection(
        host=f"{role}.local",
        database=role,
        username="tester",
        password="secret",
        schema_name=schema,
    )

    @asynccontextmanager
    async def runner():
        yield conn

    db.runner = runner
    db.ping = AsyncMock(return_value=True)
    db.fetchval = AsyncMock(return_value=None)
    return db


def create_mock_provider(
    primary_conn: Optional[MagicMock] = None,
    backup_conn: Optional[MagicMock] = None
) -> MagicMock:
    """创建 Mock ConnectionProvider"""
    provider = MagicMock()
    provider.primary = create_mock_database("primary", primary_conn)
    provider.backup = create_mock_database("backup", backup_conn)
    provider.ping_all = AsyncMock(return_value={"primary": True, "backup": True})
    provider.connect = AsyncMock()
    provider.close = AsyncMock()
    return provider


# ============================================================================
# 测试数据工厂函数
# ============================================================================

def create_accounts_descriptor(primary_key: Optional[List[str]] = None) -> TableDescriptor:
    """accounts 表描述: id / name / balance / active / updated_at"""
    return TableDescriptor(
        name="accounts",
        columns=[
            ColumnDescriptor(name="id", native_type="integer", canonical_kind=CanonicalKind.INTEGER, nullable=False),
            ColumnDescriptor(name="name", native_type="character varying", canonical_kind=CanonicalKind.TEXT, max_length=100),
            ColumnDescriptor(name="balance", native_type="numeric", canonical_kind=CanonicalKind.DECIMAL, precision=12, scale=2),
            ColumnDescriptor(name="active", native_type="boolean", canonical_kind=CanonicalKind.BOOLEAN),
            ColumnDescriptor(name="updated_at", native_type="timestamp without time zone", canonical_kind=CanonicalKind.TIMESTAMP),
        ],
        primary_key=["id"] if primary_key is None else primary_key,
    )


def get_sample_account_rows(count: int = 3) -> List[Dict[str, Any]]:
    """返回样本 accounts 行"""
    return [
        {
            "id": i,
            "name": f"account-{i}",
            "balance": f"{i * 10}.50",
            "active": "t",
            "updated_at": f"2024-01-01T10:00:{i:02d}",
        }
        for i in range(1, count + 1)
    ]


def column_rows(descriptor: TableDescriptor) -> List[Dict[str, Any]]:
    """把表描述转换为 information_schema.columns 查询结果的形式"""
    return [
        {
            "column_name": c.name,
            "data_type": c.native_type,
            "is_nullable": "YES" if c.nullable else "NO",
            "character_maximum_length": c.max_length,
            "numeric_precision": c.precision,
            "numeric_scale": c.scale,
            "udt_name": c.udt_name,
            "column_default": c.default,
            "is_enum": c.canonical_kind == CanonicalKind.ENUM,
        }
        for c in descriptor.columns
    ]


# ============================================================================
# 工具函数
# ============================================================================

def setup_logging():
    """设置测试日志级别"""
    from pg_mirror.utils.logging import configure_logging
    configure_logging(log_level="DEBUG", json_format=False)


def database_dsns() -> Optional[Dict[str, str]]:
    """集成测试的主库/备库 DSN，未设置时返回 None"""
    primary = os.getenv(PRIMARY_DSN_ENV)
    backup = os.getenv(BACKUP_DSN_ENV)
    if not primary or not backup:
        return None
    return {"primary": primary, "backup": backup}
