"""
健康状态模型
"""

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class HealthStatus(str, Enum):
    """三态健康结论，按严重程度排序"""
    HEALTHY = "healthy"
    WARNING = "warning"
    ERROR = "error"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    @classmethod
    def worst(cls, *statuses: "HealthStatus") -> "HealthStatus":
        """取最严重的状态"""
        result = cls.HEALTHY
        for status in statuses:
            if status.severity > result.severity:
                result = status
        return result


_SEVERITY = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.WARNING: 1,
    HealthStatus.ERROR: 2,
}


class TableBackupStatus(BaseModel):
    """台账中单表的备份状态"""
    table_name: str
    last_backup: Optional[datetime] = None
    row_count: int = Field(default=0, ge=0)
    status: str = Field(default="unknown")


class HealthSnapshot(BaseModel):
    """
    健康快照

    按需重新计算，只作为"最近一次"缓存给同步读取使用。
    """
    total_tables: int = Field(default=0, ge=0, description="主库表数")
    backed_up_tables: int = Field(default=0, ge=0, description="备库表数")
    last_backup_time: Optional[datetime] = Field(default=None, description="最近一次成功备份")
    status: HealthStatus = Field(default=HealthStatus.HEALTHY, description="健康结论")
    errors: List[str] = Field(default_factory=list, description="问题列表")
    table_status: List[TableBackupStatus] = Field(default_factory=list, description="各表状态")
    databases: Dict[str, bool] = Field(default_factory=dict, description="连接探测结果")
    checked_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="计算时间"
    )

    @property
    def coverage_percentage(self) -> int:
        return coverage_percentage(self.backed_up_tables, self.total_tables)

    def to_metrics(self) -> Dict[str, Any]:
        """精简的指标视图"""
        return {
            "backup_health": self.status.value,
            "total_tables": self.total_tables,
            "backed_up_tables": self.backed_up_tables,
            "coverage_percentage": self.coverage_percentage,
            "last_backup_time": self.last_backup_time,
            "errors": list(self.errors),
        }


def coverage_percentage(backed_up: int, total: int) -> int:
    """
    覆盖率百分比，四舍五入（.5 向上）

    示例:
        >>> coverage_percentage(43, 45)
        96
    """
    if total <= 0:
        return 0
    return int(math.floor(backed_up / total * 100 + 0.5))
