"""
同步位置（水位线）与周期状态模型
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Union

from pydantic import BaseModel, Field

# 备库为空时的初始水位
EPOCH = datetime(1970, 1, 1)
EPOCH_UTC = datetime(1970, 1, 1, tzinfo=timezone.utc)

# 可作为水位列的原生类型
TIMESTAMP_CURSOR_TYPES = ("timestamp without time zone", "timestamp with time zone")
INTEGER_CURSOR_TYPES = ("bigint", "integer")


class CycleState(str, Enum):
    """调度周期状态"""
    IDLE = "idle"  # 空闲
    RUNNING = "running"  # 运行中


class CursorKind(str, Enum):
    """水位值类型"""
    TIMESTAMP = "timestamp"
    INTEGER = "integer"

    @classmethod
    def from_native(cls, native_type: str) -> "CursorKind":
        """按列的原生类型判断水位类型"""
        if native_type.lower() in INTEGER_CURSOR_TYPES:
            return cls.INTEGER
        return cls.TIMESTAMP


class Watermark(BaseModel):
    """
    水位线

    备库中已复制的最大修改时间值，下一次拉取的下界。
    每个周期都从备库重新计算（MAX(col)），进程内不保存，重启安全。

    属性:
        table: 表名
        column: 水位列
        cursor_kind: 时间戳或整数
        value: 当前水位值
    """
    table: str = Field(..., description="表名")
    column: str = Field(..., description="水位列")
    cursor_kind: CursorKind = Field(..., description="水位类型")
    value: Union[datetime, int] = Field(..., description="水位值")

    @classmethod
    def initial(cls, table: str, column: str, native_type: str) -> "Watermark":
        """备库为空时的水位：整数为 0，时间戳为纪元"""
        kind = CursorKind.from_native(native_type)
        if kind == CursorKind.INTEGER:
            value: Union[datetime, int] = 0
        elif native_type.lower() == "timestamp with time zone":
            value = EPOCH_UTC
        else:
            value = EPOCH
        return cls(table=table, column=column, cursor_kind=kind, value=value)

    def is_initial(self) -> bool:
        """是否仍是初始水位"""
        if self.cursor_kind == CursorKind.INTEGER:
            return self.value == 0
        assert isinstance(self.value, datetime)
        return self.value.replace(tzinfo=None) == EPOCH
