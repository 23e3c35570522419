"""
SQL 工具 - 标识符引用、pg_dump 输出清洗、错误分类
"""

import re
from typing import Iterable, List, Optional

import sqlparse

# 清洗 pg_dump 输出时整条丢弃的语句前缀
_DROPPED_PREFIXES = (
    "SET ",
    "SELECT PG_CATALOG.SET_CONFIG",
    "GRANT ",
    "REVOKE ",
)

_MISSING_TYPE_PATTERN = re.compile(r"type\s+\S+\s+does not exist", re.IGNORECASE)

# 缺少对象（类型）的 SQLSTATE
UNDEFINED_OBJECT_SQLSTATE = "42704"


def quote_ident(name: str) -> str:
    """
    引用标识符

    示例:
        >>> quote_ident("accounts")
        '"accounts"'
        >>> quote_ident('we"ird')
        '"we""ird"'
    """
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    """引用字符串字面量"""
    return "'" + value.replace("'", "''") + "'"


def qualified(schema: str, table: str) -> str:
    """schema 限定的表名"""
    return f"{quote_ident(schema)}.{quote_ident(table)}"


def column_list(columns: Iterable[str]) -> str:
    """逗号分隔的已引用列名"""
    return ", ".join(quote_ident(c) for c in columns)


def _strip_meta_commands(dump: str) -> str:
    """移除 psql 元命令行（\\connect、\\restrict 等）"""
    return "\n".join(
        line for line in dump.splitlines()
        if not line.lstrip().startswith("\\")
    )


def _strip_schema_qualification(statement: str, schema: str) -> str:
    """移除 schema 限定，让对象落在备库连接的 search_path 上"""
    escaped = re.escape(schema)
    statement = re.sub(rf'"{escaped}"\.', "", statement)
    return re.sub(rf"(?<![\w\"]){escaped}\.", "", statement)


def _is_dropped(statement: str) -> bool:
    upper = statement.upper()
    if upper.startswith(_DROPPED_PREFIXES):
        return True
    return " OWNER TO " in upper


def clean_dump_ddl(dump: str, schema: str = "public") -> List[str]:
    """
    清洗 pg_dump --schema-only 输出

    丢弃注释、SET、set_config、psql 元命令、OWNER TO、GRANT/REVOKE，
    并去掉 schema 前缀，返回可逐条执行的语句。

    参数:
        dump: pg_dump 原始输出
        schema: 主库 schema 名

    返回:
        语句列表（不含结尾分号）

    示例:
        >>> clean_dump_ddl("SET x = 1;\\nCREATE TABLE public.t (id int);")
        ['CREATE TABLE t (id int)']
    """
    text = _strip_meta_commands(dump)
    text = sqlparse.format(text, strip_comments=True)

    statements: List[str] = []
    for raw in sqlparse.split(text):
        statement = raw.strip().rstrip(";").strip()
        if not statement or _is_dropped(statement):
            continue
        statements.append(_strip_schema_qualification(statement, schema))
    return statements


def has_create_table(statements: Iterable[str]) -> bool:
    """清洗后的语句中是否包含 CREATE TABLE"""
    return any(s.upper().startswith(("CREATE TABLE", "CREATE UNLOGGED TABLE")) for s in statements)


def is_missing_type_error(error: Optional[BaseException]) -> bool:
    """
    判断错误是否由目标库缺少自定义类型导致

    依据 SQLSTATE 42704 或 "type ... does not exist" 消息。
    """
    if error is None:
        return False
    if getattr(error, "sqlstate", None) == UNDEFINED_OBJECT_SQLSTATE:
        return True
    return bool(_MISSING_TYPE_PATTERN.search(str(error)))


def parse_command_count(status: Optional[str]) -> int:
    """
    解析命令状态中的行数

    示例:
        >>> parse_command_count("DELETE 12")
        12
    """
    if not status:
        return 0
    parts = status.split()
    try:
        return int(parts[-1])
    except (ValueError, IndexError):
        return 0
