"""
表结构模型 - 元数据查询结果的数据模型
"""

from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class CanonicalKind(str, Enum):
    """与数据库无关的值类别，驱动 DDL 生成和值转换"""
    INTEGER = "integer"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"
    TIMESTAMP = "timestamp"
    TEXT = "text"
    JSON = "json"
    ENUM = "enum"
    ARRAY = "array"
    BINARY = "binary"


class ColumnDescriptor(BaseModel):
    """
    列描述

    属性:
        name: 列名
        native_type: information_schema.columns.data_type
        canonical_kind: 归一化后的值类别
        nullable: 是否可空
        max_length: 字符类型长度
        precision: numeric 精度
        scale: numeric 标度
        udt_name: 底层类型名（枚举名、数组元素类型等）
        default: 列默认值表达式
    """
    name: str = Field(..., min_length=1, description="列名")
    native_type: str = Field(..., description="原生类型名")
    canonical_kind: CanonicalKind = Field(default=CanonicalKind.TEXT, description="值类别")
    nullable: bool = Field(default=True, description="是否可空")
    max_length: Optional[int] = Field(default=None, ge=0, description="字符长度")
    precision: Optional[int] = Field(default=None, ge=0, description="数值精度")
    scale: Optional[int] = Field(default=None, ge=0, description="数值标度")
    udt_name: Optional[str] = Field(default=None, description="底层类型名")
    default: Optional[str] = Field(default=None, description="默认值表达式")

    def attributes(self) -> dict[str, Any]:
        """供类型映射使用的属性"""
        return {
            "native_type": self.native_type,
            "max_length": self.max_length,
            "precision": self.precision,
            "scale": self.scale,
            "udt_name": self.udt_name,
        }


class TableDescriptor(BaseModel):
    """
    表描述

    每次操作重新查询，不跨操作缓存，主库结构可能随时变化。
    """
    name: str = Field(..., min_length=1, description="表名")
    columns: List[ColumnDescriptor] = Field(default_factory=list, description="有序列列表")
    primary_key: List[str] = Field(default_factory=list, description="主键列（有序）")

    @model_validator(mode="after")
    def validate_primary_key_subset(self) -> "TableDescriptor":
        """主键列必须是表列的子集"""
        names = {c.name for c in self.columns}
        unknown = [c for c in self.primary_key if c not in names]
        if unknown:
            raise ValueError(f"主键列不在表 {self.name} 中: {unknown}")
        return self

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    def get_column(self, name: str) -> Optional[ColumnDescriptor]:
        """按列名查找"""
        for column in self.columns:
            if column.name == name:
                return column
        return None

    def has_column(self, name: str) -> bool:
        return self.get_column(name) is not None


class EnumTypeDefinition(BaseModel):
    """
    枚举类型定义

    labels 保持源库 enumsortorder 的顺序。
    """
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="类型名")
    labels: List[str] = Field(default_factory=list, description="有序标签")


class TrackedTable(BaseModel):
    """
    参与增量同步的表

    属性:
        name: 表名
        column: 选中的修改时间列
        native_type: 该列在主库上的原生类型
    """
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="表名")
    column: str = Field(..., min_length=1, description="水位列")
    native_type: str = Field(..., description="水位列原生类型")
