"""
元数据查询 - 基于 information_schema / pg_catalog 的表结构读取

所有函数接收一条已借出的连接（runner），不持有任何缓存：
主库结构随时可能变化，每次操作重新查询。
"""

from typing import Dict, Iterable, List, Optional, Sequence

import asyncpg

from pg_mirror.errors import SchemaIntrospectionError
from pg_mirror.models.position import INTEGER_CURSOR_TYPES, TIMESTAMP_CURSOR_TYPES
from pg_mirror.models.schema import (
    ColumnDescriptor,
    EnumTypeDefinition,
    TableDescriptor,
    TrackedTable,
)
from pg_mirror.utils.logging import get_logger
from pg_mirror.utils.sql_parser import qualified
from pg_mirror.utils.type_mapper import native_to_canonical

logger = get_logger(__name__)

_COLUMNS_SQL = """
    SELECT c.column_name,
           c.data_type,
           c.is_nullable,
           c.character_maximum_length,
           c.numeric_precision,
           c.numeric_scale,
           c.udt_name,
           c.column_default,
           EXISTS (
               SELECT 1 FROM pg_type t
               WHERE t.typname = c.udt_name AND t.typtype = 'e'
           ) AS is_enum
    FROM information_schema.columns c
    WHERE c.table_schema = $1 AND c.table_name = $2
    ORDER BY c.ordinal_position
"""

_PRIMARY_KEY_SQL = """
    SELECT kcu.column_name
    FROM information_schema.table_constraints tc
    JOIN information_schema.key_column_usage kcu
      ON tc.constraint_name = kcu.constraint_name
     AND tc.table_schema = kcu.table_schema
     AND tc.table_name = kcu.table_name
    WHERE tc.table_schema = $1
      AND tc.table_name = $2
      AND tc.constraint_type = 'PRIMARY KEY'
    ORDER BY kcu.ordinal_position
"""

_TRACKED_COLUMNS_SQL = """
    SELECT c.table_name, c.column_name, c.data_type
    FROM information_schema.columns c
    JOIN information_schema.tables t
      ON t.table_schema = c.table_schema AND t.table_name = c.table_name
    WHERE c.table_schema = $1
      AND t.table_type = 'BASE TABLE'
      AND lower(c.column_name) = ANY($2::text[])
      AND c.data_type = ANY($3::text[])
    ORDER BY c.table_name
"""

_TABLE_ENUMS_SQL = """
    SELECT t.typname AS name,
           array_agg(e.enumlabel ORDER BY e.enumsortorder) AS labels
    FROM information_schema.columns c
    JOIN pg_namespace n ON n.nspname = c.udt_schema
    JOIN pg_type t
      ON t.typname = c.udt_name AND t.typnamespace = n.oid AND t.typtype = 'e'
    JOIN pg_enum e ON e.enumtypid = t.oid
    WHERE c.table_schema = $1
      AND c.table_name = $2
      AND c.data_type = 'USER-DEFINED'
    GROUP BY t.typname
    ORDER BY t.typname
"""


async def describe_table(
    conn: asyncpg.Connection,
    table: str,
    schema: str = "public"
) -> Optional[TableDescriptor]:
    """
    读取表结构

    参数:
        conn: 数据库连接
        table: 表名
        schema: schema 名

    返回:
        TableDescriptor，表不存在时返回 None

    异常:
        SchemaIntrospectionError: 列查询失败
    """
    try:
        rows = await conn.fetch(_COLUMNS_SQL, schema, table)
    except Exception as e:
        raise SchemaIntrospectionError(f"读取表 {table} 的列失败: {e}") from e

    if not rows:
        return None

    columns: List[ColumnDescriptor] = []
    for row in rows:
        native_type = row["data_type"] or "text"
        is_numeric = native_type.lower() in ("numeric", "decimal")
        columns.append(ColumnDescriptor(
            name=row["column_name"],
            native_type=native_type,
            canonical_kind=native_to_canonical(native_type, row["udt_name"], row["is_enum"]),
            nullable=row["is_nullable"] == "YES",
            max_length=row["character_maximum_length"],
            precision=row["numeric_precision"] if is_numeric else None,
            scale=row["numeric_scale"] if is_numeric else None,
            udt_name=row["udt_name"],
            default=row["column_default"],
        ))

    primary_key = await get_primary_key(conn, table, schema)
    return TableDescriptor(name=table, columns=columns, primary_key=primary_key)


async def get_primary_key(
    conn: asyncpg.Connection,
    table: str,
    schema: str = "public"
) -> List[str]:
    """主键列（有序），查询失败时返回空列表"""
    try:
        rows = await conn.fetch(_PRIMARY_KEY_SQL, schema, table)
    except Exception as e:
        logger.warning("primary_key_lookup_failed", table=table, error=str(e))
        return []
    return [row["column_name"] for row in rows]


async def table_exists(conn: asyncpg.Connection, table: str, schema: str = "public") -> bool:
    """表是否存在"""
    return bool(await conn.fetchval(
        """
        SELECT EXISTS (
            SELECT 1 FROM information_schema.tables
            WHERE table_schema = $1 AND table_name = $2
        )
        """,
        schema, table
    ))


async def column_data_type(
    conn: asyncpg.Connection,
    table: str,
    column: str,
    schema: str = "public"
) -> Optional[str]:
    """列的 data_type，列不存在时返回 None"""
    return await conn.fetchval(
        """
        SELECT data_type FROM information_schema.columns
        WHERE table_schema = $1 AND table_name = $2 AND column_name = $3
        """,
        schema, table, column
    )


async def list_tables(
    conn: asyncpg.Connection,
    schema: str = "public",
    exclude_schemas: Iterable[str] = ()
) -> List[str]:
    """
    schema 下的用户表（pg_tables，排除 pg_ 前缀）

    参数:
        conn: 数据库连接
        schema: schema 名
        exclude_schemas: 需要排除的 schema（如台账 schema）
    """
    if schema in set(exclude_schemas):
        return []
    rows = await conn.fetch(
        """
        SELECT tablename FROM pg_tables
        WHERE schemaname = $1 AND tablename NOT LIKE 'pg\\_%'
        ORDER BY tablename
        """,
        schema
    )
    return [row["tablename"] for row in rows]


async def count_tables(
    conn: asyncpg.Connection,
    schema: str = "public",
    exclude_schemas: Iterable[str] = ()
) -> int:
    """schema 下的基表数量，口径与 list_tables 一致"""
    if schema in set(exclude_schemas):
        return 0
    value = await conn.fetchval(
        """
        SELECT count(*) FROM information_schema.tables
        WHERE table_schema = $1
          AND table_type = 'BASE TABLE'
          AND table_name NOT LIKE 'pg\\_%'
        """,
        schema
    )
    return int(value or 0)


async def list_tracked_tables(
    conn: asyncpg.Connection,
    tracking_columns: Sequence[str],
    schema: str = "public"
) -> List[TrackedTable]:
    """
    带修改时间列的表

    同一张表有多个候选列时按 tracking_columns 的顺序取第一个。

    参数:
        conn: 主库连接
        tracking_columns: 候选列名（小写，按优先级）
        schema: schema 名

    返回:
        按表名排序的 TrackedTable 列表
    """
    priority = {name: index for index, name in enumerate(tracking_columns)}
    allowed_types = list(TIMESTAMP_CURSOR_TYPES + INTEGER_CURSOR_TYPES)
    rows = await conn.fetch(_TRACKED_COLUMNS_SQL, schema, list(tracking_columns), allowed_types)

    best: Dict[str, TrackedTable] = {}
    for row in rows:
        table, column = row["table_name"], row["column_name"]
        current = best.get(table)
        if current is None or priority[column.lower()] < priority[current.column.lower()]:
            best[table] = TrackedTable(name=table, column=column, native_type=row["data_type"])

    return [best[name] for name in sorted(best)]


async def list_enum_types_for_table(
    conn: asyncpg.Connection,
    table: str,
    schema: str = "public"
) -> List[EnumTypeDefinition]:
    """表中用到的枚举类型，标签按 enumsortorder 排列"""
    rows = await conn.fetch(_TABLE_ENUMS_SQL, schema, table)
    return [EnumTypeDefinition(name=row["name"], labels=list(row["labels"])) for row in rows]


async def enum_type_exists(conn: asyncpg.Connection, name: str) -> bool:
    return bool(await conn.fetchval(
        "SELECT EXISTS (SELECT 1 FROM pg_type WHERE typname = $1 AND typtype = 'e')",
        name
    ))


async def count_rows(conn: asyncpg.Connection, table: str, schema: str = "public") -> int:
    value = await conn.fetchval(f"SELECT count(*) FROM {qualified(schema, table)}")
    return int(value or 0)
