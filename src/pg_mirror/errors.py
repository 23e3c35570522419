"""
异常定义
"""

from typing import Optional


class PgMirrorError(Exception):
    """所有引擎异常的基类"""
    pass


class ConnectivityError(PgMirrorError):
    """无法连接主库或备库，当前周期失败，下个周期重试"""

    def __init__(self, role: str, message: str):
        self.role = role
        super().__init__(f"{role} 数据库连接失败: {message}")


class SchemaIntrospectionError(PgMirrorError):
    """元数据查询失败"""
    pass


class SchemaError(PgMirrorError):
    """
    单个建表策略失败

    属性:
        strategy: 失败的策略名
        missing_type: 是否因为目标库缺少自定义类型而失败
    """

    def __init__(
        self,
        strategy: str,
        message: str,
        missing_type: bool = False,
        cause: Optional[BaseException] = None
    ):
        self.strategy = strategy
        self.missing_type = missing_type
        self.cause = cause
        super().__init__(f"[{strategy}] {message}")


class SchemaCreationError(SchemaError):
    """所有建表策略均已失败"""

    def __init__(self, table: str, errors: list[SchemaError]):
        self.table = table
        self.errors = errors
        detail = "; ".join(str(e) for e in errors) or "no strategy attempted"
        super().__init__("exhausted", f"无法在备库创建表 {table}: {detail}")


class CoercionError(PgMirrorError):
    """单个值无法转换为目标列类型"""

    def __init__(self, column: Optional[str], kind: str, value: object):
        self.column = column
        self.kind = kind
        preview = repr(value)
        if len(preview) > 80:
            preview = preview[:80] + "..."
        super().__init__(f"无法将 {preview} 转换为 {kind} (列: {column})")


class TableSyncError(PgMirrorError):
    """表级同步失败"""

    def __init__(self, table: str, message: str):
        self.table = table
        super().__init__(f"表 {table} 同步失败: {message}")
