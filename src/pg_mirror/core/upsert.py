"""
UPSERT 写入 - 按行类型转换并写入备库

单行失败只记录日志，不影响同组其他行。
"""

from typing import Any, Dict, List, Optional, Sequence

import asyncpg

from pg_mirror.core import catalog
from pg_mirror.errors import TableSyncError
from pg_mirror.models.outcome import UpsertResult
from pg_mirror.models.schema import TableDescriptor
from pg_mirror.utils.logging import get_logger, sanitize_row
from pg_mirror.utils.sql_parser import column_list, qualified, quote_ident
from pg_mirror.utils.type_mapper import coerce_for_column

logger = get_logger(__name__)


def build_upsert_sql(
    table: str,
    columns: Sequence[str],
    primary_key: Sequence[str],
    schema: str = "public"
) -> str:
    """
    构建 UPSERT 语句

    规则:
        - 有主键且行内包含全部主键列: ON CONFLICT (pk) DO UPDATE SET c = EXCLUDED.c，
          所有写入列都是主键列时为 DO NOTHING
        - 有主键但行内缺少主键列: 普通 INSERT
        - 无主键: ON CONFLICT DO NOTHING

    示例:
        >>> build_upsert_sql("t", ["id", "name"], ["id"])
        'INSERT INTO "public"."t" ("id", "name") VALUES ($1, $2) ON CONFLICT ("id") DO UPDATE SET "name" = EXCLUDED."name"'
    """
    placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
    sql = f"INSERT INTO {qualified(schema, table)} ({column_list(columns)}) VALUES ({placeholders})"

    if not primary_key:
        return f"{sql} ON CONFLICT DO NOTHING"

    if not all(pk in columns for pk in primary_key):
        return sql

    updates = [c for c in columns if c not in primary_key]
    conflict = f"ON CONFLICT ({column_list(primary_key)})"
    if not updates:
        return f"{sql} {conflict} DO NOTHING"

    assignments = ", ".join(f"{quote_ident(c)} = EXCLUDED.{quote_ident(c)}" for c in updates)
    return f"{sql} {conflict} DO UPDATE SET {assignments}"


class UpsertEngine:
    """
    备库写入器

    每次调用重新读取目标表结构，只写入目标表存在的列。

    属性:
        batch_size: 每组行数，默认 50
        schema: 备库 schema
    """

    def __init__(self, batch_size: int = 50, schema: str = "public"):
        self.batch_size = batch_size
        self.schema = schema

    async def upsert(
        self,
        conn: asyncpg.Connection,
        table: str,
        rows: List[Dict[str, Any]],
        descriptor: Optional[TableDescriptor] = None
    ) -> UpsertResult:
        """
        写入一批行

        参数:
            conn: 备库连接
            table: 目标表
            rows: 原始行
            descriptor: 已读取的目标表结构（不传则重新读取）

        返回:
            UpsertResult

        异常:
            TableSyncError: 目标表不存在
        """
        result = UpsertResult(table=table)
        if not rows:
            return result

        if descriptor is None:
            descriptor = await catalog.describe_table(conn, table, self.schema)
        if descriptor is None:
            raise TableSyncError(table, "备库不存在该表")

        for start in range(0, len(rows), self.batch_size):
            group = rows[start:start + self.batch_size]
            for row in group:
                result.attempted += 1
                outcome = await self._upsert_row(conn, descriptor, row)
                if outcome is None:
                    result.skipped += 1
                elif outcome:
                    result.succeeded += 1
                else:
                    result.failed += 1

            logger.debug(
                "upsert_group_done",
                table=table,
                offset=start,
                size=len(group)
            )

        if result.failed:
            logger.warning(
                "upsert_rows_failed",
                table=table,
                failed=result.failed,
                succeeded=result.succeeded
            )
        return result

    async def _upsert_row(
        self,
        conn: asyncpg.Connection,
        descriptor: TableDescriptor,
        row: Dict[str, Any]
    ) -> Optional[bool]:
        """
        写入单行

        返回:
            True 成功，False 失败，None 无可写列
        """
        columns = [name for name in row if descriptor.has_column(name)]
        if not columns:
            logger.warning(
                "upsert_row_skipped",
                table=descriptor.name,
                reason="no matching columns",
                row=sanitize_row(row)
            )
            return None

        try:
            values = [
                coerce_for_column(row[name], descriptor.get_column(name)).value
                for name in columns
            ]
            sql = build_upsert_sql(descriptor.name, columns, descriptor.primary_key, self.schema)
            await conn.execute(sql, *values)
            return True
        except Exception as e:
            logger.error(
                "upsert_row_failed",
                table=descriptor.name,
                error=str(e),
                row=sanitize_row(row)
            )
            return False
