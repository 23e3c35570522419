"""
结构同步 - 在备库上创建与主库一致的表

按顺序尝试建表策略，前一个失败才尝试下一个:
    1. NativeDDLCloneStrategy: pg_dump 导出 DDL 后在备库重放
    2. EnumReplicationStrategy: 缺少枚举类型时先复制类型再重试 1
    3. GenericBuilderStrategy: 根据主库列描述拼装 CREATE TABLE
"""

import asyncio
import os
import re
from abc import ABC, abstractmethod
from typing import List, Optional

from pg_mirror.core import catalog
from pg_mirror.core.connection import ConnectionProvider, DatabaseConnection
from pg_mirror.errors import SchemaCreationError, SchemaError
from pg_mirror.models.schema import CanonicalKind, ColumnDescriptor
from pg_mirror.models.sync_config import FullBackupConfig
from pg_mirror.utils.logging import get_logger
from pg_mirror.utils.sql_parser import (
    clean_dump_ddl,
    column_list,
    has_create_table,
    is_missing_type_error,
    qualified,
    quote_ident,
    quote_literal,
)
from pg_mirror.utils.type_mapper import column_ddl_type

logger = get_logger(__name__)

# 可以原样保留的常量默认值：数字、布尔、NULL、字符串字面量（可带类型转换）
_CONSTANT_DEFAULT = re.compile(
    r"^\(?\s*(?:-?\d+(?:\.\d+)?|true|false|null|'(?:[^']|'')*')\s*\)?(?:::[\w\s\".\[\]]+)?$",
    re.IGNORECASE,
)
_CAST_SUFFIX = re.compile(r"::[\w\s\".\[\]]+$")


class SchemaSyncContext:
    """
    一次建表过程的上下文

    属性:
        table: 表名
        primary: 主库
        backup: 备库
        options: 全量备份配置（pg_dump 相关）
        errors: 已失败策略的错误，按尝试顺序
    """

    def __init__(
        self,
        table: str,
        primary: DatabaseConnection,
        backup: DatabaseConnection,
        options: FullBackupConfig
    ):
        self.table = table
        self.primary = primary
        self.backup = backup
        self.options = options
        self.errors: List[SchemaError] = []

    @property
    def last_error(self) -> Optional[SchemaError]:
        return self.errors[-1] if self.errors else None


class SchemaStrategy(ABC):
    """建表策略"""

    name = "strategy"

    def applicable(self, ctx: SchemaSyncContext) -> bool:
        """当前上下文下是否需要尝试"""
        return True

    @abstractmethod
    async def attempt(self, ctx: SchemaSyncContext) -> Optional[SchemaError]:
        """
        尝试建表

        返回:
            None 表示成功，否则为失败原因
        """
        raise NotImplementedError


class NativeDDLCloneStrategy(SchemaStrategy):
    """用 pg_dump --schema-only 导出主库表结构并在备库重放"""

    name = "native_clone"

    async def attempt(self, ctx: SchemaSyncContext) -> Optional[SchemaError]:
        if not ctx.options.ddl_dump_enabled:
            return SchemaError(self.name, "pg_dump 已禁用")

        try:
            dump = await self.dump_table_ddl(ctx)
        except SchemaError as e:
            return e

        statements = clean_dump_ddl(dump, ctx.primary.schema)
        if not has_create_table(statements):
            return SchemaError(self.name, "导出结果中没有 CREATE TABLE")

        try:
            async with ctx.backup.runner() as conn:
                async with conn.transaction():
                    for statement in statements:
                        await conn.execute(statement)
        except Exception as e:
            return SchemaError(
                self.name,
                str(e),
                missing_type=is_missing_type_error(e),
                cause=e
            )

        logger.debug("ddl_clone_replayed", table=ctx.table, statements=len(statements))
        return None

    async def dump_table_ddl(self, ctx: SchemaSyncContext) -> str:
        """
        调用 pg_dump 导出单表结构

        异常:
            SchemaError: pg_dump 不存在、超时或返回非零
        """
        conf = ctx.primary.config
        args = [
            ctx.options.pg_dump_path,
            "--schema-only",
            "--no-owner",
            "--no-privileges",
            "-h", conf.host,
            "-p", str(conf.port),
            "-U", conf.username,
            "-d", conf.database,
            "-t", f"{quote_ident(ctx.primary.schema)}.{quote_ident(ctx.table)}",
        ]
        env = dict(os.environ)
        env["PGPASSWORD"] = conf.password
        env["PGCONNECT_TIMEOUT"] = str(int(conf.connect_timeout))

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            raise SchemaError(self.name, f"无法启动 pg_dump: {e}", cause=e) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=ctx.options.ddl_dump_timeout
            )
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise SchemaError(self.name, "pg_dump 超时", cause=e) from e

        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            raise SchemaError(self.name, f"pg_dump 退出码 {process.returncode}: {message}")

        return stdout.decode("utf-8", errors="replace")


class EnumReplicationStrategy(SchemaStrategy):
    """复制缺失的枚举类型后重试原生克隆，只处理缺少类型的失败"""

    name = "enum_replication"

    def __init__(self, clone: NativeDDLCloneStrategy):
        self.clone = clone

    def applicable(self, ctx: SchemaSyncContext) -> bool:
        last = ctx.last_error
        return last is not None and last.strategy == self.clone.name and last.missing_type

    async def attempt(self, ctx: SchemaSyncContext) -> Optional[SchemaError]:
        try:
            async with ctx.primary.runner() as pconn:
                enums = await catalog.list_enum_types_for_table(pconn, ctx.table, ctx.primary.schema)

            created = []
            async with ctx.backup.runner() as bconn:
                for enum in enums:
                    if await catalog.enum_type_exists(bconn, enum.name):
                        continue
                    labels = ", ".join(quote_literal(label) for label in enum.labels)
                    await bconn.execute(f"CREATE TYPE {quote_ident(enum.name)} AS ENUM ({labels})")
                    created.append(enum.name)
        except Exception as e:
            return SchemaError(self.name, f"复制枚举类型失败: {e}", cause=e)

        logger.info("enum_types_replicated", table=ctx.table, types=created)

        error = await self.clone.attempt(ctx)
        if error is not None:
            return SchemaError(self.name, f"复制枚举后重试失败: {error}", cause=error)
        return None


class GenericBuilderStrategy(SchemaStrategy):
    """根据主库列描述生成 CREATE TABLE，不识别的类型退化为 text"""

    name = "generic_builder"

    async def attempt(self, ctx: SchemaSyncContext) -> Optional[SchemaError]:
        try:
            async with ctx.primary.runner() as pconn:
                descriptor = await catalog.describe_table(pconn, ctx.table, ctx.primary.schema)
        except Exception as e:
            return SchemaError(self.name, f"读取主库表结构失败: {e}", cause=e)

        if descriptor is None:
            return SchemaError(self.name, f"主库不存在表 {ctx.table}")

        target = qualified(ctx.backup.schema, ctx.table)
        try:
            async with ctx.backup.runner() as bconn:
                definitions = []
                for column in descriptor.columns:
                    definitions.append(await self._column_definition(bconn, column))

                await bconn.execute(
                    f"CREATE TABLE IF NOT EXISTS {target} ({', '.join(definitions)})"
                )

                if descriptor.primary_key:
                    constraint = quote_ident(f"{ctx.table}_pkey")
                    try:
                        await bconn.execute(
                            f"ALTER TABLE {target} ADD CONSTRAINT {constraint} "
                            f"PRIMARY KEY ({column_list(descriptor.primary_key)})"
                        )
                    except Exception as e:
                        logger.warning(
                            "primary_key_constraint_failed",
                            table=ctx.table,
                            error=str(e)
                        )
        except Exception as e:
            return SchemaError(self.name, str(e), cause=e)

        return None

    async def _column_definition(self, conn, column: ColumnDescriptor) -> str:
        """单列定义"""
        enum_available = False
        if column.canonical_kind == CanonicalKind.ENUM and column.udt_name:
            enum_available = await catalog.enum_type_exists(conn, column.udt_name)

        parts = [quote_ident(column.name), column_ddl_type(column, enum_available)]
        if not column.nullable:
            parts.append("NOT NULL")

        default = constant_default(column.default)
        if default is not None:
            parts.append(f"DEFAULT {default}")
        return " ".join(parts)


def constant_default(expression: Optional[str]) -> Optional[str]:
    """
    只保留常量默认值，序列和函数调用（nextval、now() ...）丢弃

    类型转换后缀会去掉，避免引用备库上不存在的类型。

    示例:
        >>> constant_default("'active'::character varying")
        "'active'"
        >>> constant_default("nextval('t_id_seq'::regclass)") is None
        True
    """
    if not expression:
        return None
    text = expression.strip()
    if not _CONSTANT_DEFAULT.match(text):
        return None
    return _CAST_SUFFIX.sub("", text).strip()


def default_strategies() -> List[SchemaStrategy]:
    clone = NativeDDLCloneStrategy()
    return [clone, EnumReplicationStrategy(clone), GenericBuilderStrategy()]


class SchemaSynchronizer:
    """
    表结构同步器

    ensure_table 是幂等的：表已存在且未要求重建时直接返回。

    示例:
        ```python
        sync = SchemaSynchronizer(provider, config.full_backup)
        await sync.ensure_table("accounts")
        ```
    """

    def __init__(
        self,
        connections: ConnectionProvider,
        options: Optional[FullBackupConfig] = None,
        strategies: Optional[List[SchemaStrategy]] = None
    ):
        self.connections = connections
        self.options = options or FullBackupConfig()
        self.strategies = strategies if strategies is not None else default_strategies()

    async def ensure_table(self, table: str, force_recreate: bool = False) -> None:
        """
        确保备库存在该表

        参数:
            table: 表名
            force_recreate: 先 DROP ... CASCADE 再重建

        异常:
            SchemaCreationError: 所有策略均失败
        """
        backup = self.connections.backup
        async with backup.runner() as conn:
            exists = await catalog.table_exists(conn, table, backup.schema)
            if exists and not force_recreate:
                return
            if exists:
                await conn.execute(f"DROP TABLE IF EXISTS {qualified(backup.schema, table)} CASCADE")
                logger.info("backup_table_dropped", table=table)

        ctx = SchemaSyncContext(table, self.connections.primary, backup, self.options)
        for strategy in self.strategies:
            if not strategy.applicable(ctx):
                continue

            error = await strategy.attempt(ctx)
            if error is None:
                logger.info("backup_table_created", table=table, strategy=strategy.name)
                return

            ctx.errors.append(error)
            logger.warning(
                "schema_strategy_failed",
                table=table,
                strategy=strategy.name,
                missing_type=error.missing_type,
                error=str(error)
            )

        raise SchemaCreationError(table, ctx.errors)
