"""
变更批次模型 - 一个周期内一张表拉取到的变更行
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from pg_mirror.models.position import Watermark


class ChangeBatch(BaseModel):
    """
    变更批次

    从主库拉取的原始行，按水位列升序，长度不超过 page_size。
    大量积压会分散到多个周期完成。

    属性:
        table: 表名
        watermark: 拉取时使用的水位
        rows: 原始行（列名 -> 未转换的值）
        fetched_at: 拉取时间
    """
    table: str = Field(..., description="表名")
    watermark: Watermark = Field(..., description="拉取下界")
    rows: List[Dict[str, Any]] = Field(default_factory=list, description="变更行")
    fetched_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="拉取时间"
    )

    def __len__(self) -> int:
        """返回行数"""
        return len(self.rows)

    def is_empty(self) -> bool:
        """检查是否为空批次"""
        return len(self.rows) == 0

    def max_cursor(self) -> Optional[Any]:
        """批次内最大的水位列值（行已升序）"""
        if not self.rows:
            return None
        return self.rows[-1].get(self.watermark.column)
