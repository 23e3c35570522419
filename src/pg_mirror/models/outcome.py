"""
操作结果模型 - 对外返回的结构化结果，从不抛出底层驱动异常
"""

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field


class SyncOutcome(BaseModel):
    """
    单表同步结果

    批量同步的调用方总是拿到完整的结果列表，失败的表只是 succeeded=False。
    """
    table: str = Field(..., description="表名")
    rows_processed: int = Field(default=0, ge=0, description="处理行数")
    succeeded: bool = Field(default=True, description="是否成功")
    error: Optional[str] = Field(default=None, description="错误摘要")
    skipped: bool = Field(default=False, description="是否跳过（非错误）")

    @classmethod
    def failure(cls, table: str, error: str, rows_processed: int = 0) -> "SyncOutcome":
        return cls(table=table, rows_processed=rows_processed, succeeded=False, error=error)

    @classmethod
    def skip(cls, table: str, reason: str) -> "SyncOutcome":
        return cls(table=table, succeeded=True, skipped=True, error=reason)


class UpsertResult(BaseModel):
    """
    UPSERT 统计

    属性:
        table: 目标表
        attempted: 尝试写入的行数
        succeeded: 成功行数
        failed: 失败行数（已记录日志）
        skipped: 无可写列而跳过的行数
    """
    table: str = Field(..., description="目标表")
    attempted: int = Field(default=0, ge=0)
    succeeded: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    skipped: int = Field(default=0, ge=0)


class BackupResult(BaseModel):
    """手动/定时备份的汇总结果"""
    success: bool = Field(..., description="是否全部成功")
    message: str = Field(..., description="可读消息")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="完成时间"
    )
    outcomes: List[SyncOutcome] = Field(default_factory=list, description="各表结果")

    @property
    def rows_processed(self) -> int:
        return sum(o.rows_processed for o in self.outcomes)

    @classmethod
    def from_outcomes(cls, outcomes: List[SyncOutcome], label: str) -> "BackupResult":
        """按各表结果生成汇总"""
        failed = [o for o in outcomes if not o.succeeded]
        rows = sum(o.rows_processed for o in outcomes)
        if failed:
            names = ", ".join(o.table for o in failed[:10])
            message = (
                f"{label} completed with {len(failed)} failed table(s) "
                f"of {len(outcomes)}: {names}"
            )
        else:
            message = f"{label} completed successfully ({len(outcomes)} table(s), {rows} rows)"
        return cls(success=not failed, message=message, outcomes=outcomes)


class ForceSyncResult(BaseModel):
    """强制同步单表的结果"""
    success: bool = Field(..., description="是否成功")
    message: str = Field(..., description="可读消息")
    rows_processed: int = Field(default=0, ge=0, description="处理行数")


class TableRowCount(BaseModel):
    table_name: str
    row_count: int = Field(default=0, ge=0)


class BackupStatusReport(BaseModel):
    """
    备份覆盖状态

    属性:
        total_tables: 主库表数
        backed_up_tables: 备库已存在的表数
        missing_tables: 备库缺失的表
        table_stats: 备库各表行数
        error: 无法读取时的错误信息
    """
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    total_tables: int = Field(default=0, ge=0)
    backed_up_tables: int = Field(default=0, ge=0)
    missing_tables: List[str] = Field(default_factory=list)
    table_stats: List[TableRowCount] = Field(default_factory=list)
    error: Optional[str] = None
