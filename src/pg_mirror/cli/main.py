"""
CLI 命令行入口 - 使用 Click 框架
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import click
from pydantic import BaseModel

from pg_mirror import __version__
from pg_mirror.config import ConfigError, load_config, save_config_template
from pg_mirror.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)

T = TypeVar("T")

config_option = click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=True),
    required=True,
    help="配置文件路径",
)


@click.group()
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    default="INFO",
    help="日志级别",
)
@click.option("--json-logs", is_flag=True, default=False, help="输出 JSON 日志")
@click.version_option(version=__version__, prog_name="pg-mirror")
@click.pass_context
def cli(ctx: click.Context, log_level: str, json_logs: bool) -> None:
    """
    PostgreSQL 备份同步引擎 CLI

    基于修改时间列轮询，把主库的表结构和数据同步到备库。
    """
    configure_logging(log_level=log_level, json_format=json_logs)

    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level


def _echo_json(payload: Any) -> None:
    if isinstance(payload, BaseModel):
        click.echo(payload.model_dump_json(indent=2))
    else:
        click.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _run_with_engine(config_path: str, action: Callable[[Any], Awaitable[T]]) -> T:
    """加载配置、创建引擎、执行操作后关闭连接"""
    from pg_mirror.core.engine import BackupEngine

    try:
        config = load_config(config_path)
    except ConfigError as e:
        click.echo(f"✗ 配置错误: {e}", err=True)
        sys.exit(1)

    async def _main() -> T:
        # 各操作自行连接，连接失败时也能返回结果对象
        engine = BackupEngine(config)
        try:
            return await action(engine)
        finally:
            await engine.close()

    try:
        return asyncio.run(_main())
    except Exception as e:
        click.echo(f"✗ 执行失败: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("output_path", type=click.Path(), default="backup.yaml")
def init(output_path: str) -> None:
    """
    生成配置文件模板

    示例:
        pg-mirror init backup.yaml
    """
    path = Path(output_path)

    if path.exists():
        click.confirm(f"文件 {output_path} 已存在，是否覆盖？", abort=True)

    save_config_template(output_path)
    click.echo(f"✓ 配置模板已生成: {output_path}")


@cli.command()
@click.argument("config_path", type=click.Path(exists=True))
def validate(config_path: str) -> None:
    """
    验证配置文件

    示例:
        pg-mirror validate backup.yaml
    """
    try:
        config = load_config(config_path)
    except ConfigError as e:
        click.echo(f"✗ 配置错误: {e}", err=True)
        sys.exit(1)

    click.echo("✓ 配置验证通过")
    click.echo(f"  主库: {config.primary.dsn_display()}")
    click.echo(f"  备库: {config.backup.dsn_display()}")
    click.echo(f"  增量同步: {'启用' if config.change_detection.enabled else '禁用'}"
               f" (每 {config.change_detection.interval_seconds:g} 秒)")
    click.echo(f"  全量备份: {config.full_backup.hourly_cron} / 强制 {config.full_backup.daily_forced_cron}")


@cli.command()
@config_option
def run(config_path: str) -> None:
    """
    启动定时任务，直到 Ctrl+C

    示例:
        pg-mirror run -c backup.yaml
    """
    from pg_mirror.core.engine import BackupEngine

    try:
        config = load_config(config_path)
    except ConfigError as e:
        click.echo(f"✗ 配置错误: {e}", err=True)
        sys.exit(1)

    engine = BackupEngine(config)
    click.echo("PostgreSQL 备份同步引擎")
    click.echo("=" * 40)
    click.echo(f"主库: {config.primary.dsn_display()}")
    click.echo(f"备库: {config.backup.dsn_display()}")
    click.echo("按 Ctrl+C 停止...")

    try:
        asyncio.run(engine.run_forever())
    except KeyboardInterrupt:
        click.echo("\n✓ 已停止")
    except Exception as e:
        click.echo(f"✗ 运行失败: {e}", err=True)
        sys.exit(1)


@cli.command()
@config_option
@click.option("--table", "-t", help="只备份指定表")
@click.option("--force", is_flag=True, default=False, help="重建表结构并重新加载数据")
def backup(config_path: str, table: Optional[str], force: bool) -> None:
    """
    立即执行全量备份

    示例:
        pg-mirror backup -c backup.yaml
        pg-mirror backup -c backup.yaml --table accounts --force
    """
    if table:
        result = _run_with_engine(config_path, lambda e: e.trigger_table_backup(table, force=force))
    else:
        result = _run_with_engine(config_path, lambda e: e.trigger_full_backup(force=force))

    _echo_json(result)
    if not result.success:
        sys.exit(1)


@cli.command()
@config_option
@click.argument("table")
def sync(config_path: str, table: str) -> None:
    """
    忽略水位强制同步单表

    示例:
        pg-mirror sync -c backup.yaml accounts
    """
    result = _run_with_engine(config_path, lambda e: e.force_sync_table(table))
    _echo_json(result)
    if not result.success:
        sys.exit(1)


@cli.command()
@config_option
def cycle(config_path: str) -> None:
    """
    执行一个增量同步周期

    示例:
        pg-mirror cycle -c backup.yaml
    """
    result = _run_with_engine(config_path, lambda e: e.run_detection_cycle())
    _echo_json(result)
    if not result.success:
        sys.exit(1)


@cli.command()
@config_option
def status(config_path: str) -> None:
    """
    查看备份覆盖情况和增量同步状态

    示例:
        pg-mirror status -c backup.yaml
    """
    async def _status(engine: Any) -> dict:
        report = await engine.get_backup_status()
        return {
            "backup": report.model_dump(mode="json"),
            "change_detection": await engine.get_cdc_status(),
        }

    _echo_json(_run_with_engine(config_path, _status))


@cli.command()
@config_option
@click.option("--detailed", is_flag=True, default=False, help="包含备份日志和数据库大小")
def health(config_path: str, detailed: bool) -> None:
    """
    查看健康状态，error 时退出码为 1

    示例:
        pg-mirror health -c backup.yaml --detailed
    """
    if detailed:
        report = _run_with_engine(config_path, lambda e: e.detailed_report())
        _echo_json(report)
        failed = report["health"]["status"] == "error"
    else:
        snapshot = _run_with_engine(config_path, lambda e: e.get_health())
        _echo_json(snapshot)
        failed = snapshot.status.value == "error"

    if failed:
        sys.exit(1)


if __name__ == "__main__":
    cli()
