"""
告警通知模块 - 健康状态异常时通知运维
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import aiohttp
import click

from pg_mirror.models.health import HealthSnapshot, HealthStatus
from pg_mirror.utils.logging import get_logger

logger = get_logger(__name__)

_LEVEL_COLORS = {
    "info": "cyan",
    "warning": "yellow",
    "error": "red",
}


class Notifier(ABC):
    """通知器抽象基类"""

    @abstractmethod
    async def notify(self, level: str, title: str, message: str) -> None:
        """
        发送通知

        参数:
            level: 级别 (info/warning/error)
            title: 标题
            message: 消息内容
        """
        raise NotImplementedError


class ConsoleNotifier(Notifier):
    """控制台通知器 - 输出到 stderr"""

    def __init__(self, use_colors: bool = True):
        self.use_colors = use_colors

    async def notify(self, level: str, title: str, message: str) -> None:
        header = f"[{level.upper()}] {title}"
        if self.use_colors:
            header = click.style(header, fg=_LEVEL_COLORS.get(level))
        click.echo(header, err=True)
        click.echo(f"  {message}", err=True)


class WebhookNotifier(Notifier):
    """Webhook 通知器 - HTTP POST JSON"""

    def __init__(
        self,
        webhook_url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 10.0
    ):
        self.webhook_url = webhook_url
        self.headers = headers or {}
        self.timeout = timeout

    async def notify(self, level: str, title: str, message: str) -> None:
        payload = {
            "level": level,
            "title": title,
            "message": message,
            "source": "pg-mirror",
        }
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json=payload,
                    headers=self.headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as response:
                    if response.status >= 400:
                        logger.warning(
                            "webhook_notification_failed",
                            status=response.status
                        )
        except Exception as e:
            logger.error("webhook_notification_error", error=str(e))


class NotifierManager:
    """通知管理器 - 广播到所有渠道，单个渠道失败不影响其他渠道"""

    def __init__(self, notifiers: Optional[List[Notifier]] = None):
        self._notifiers: List[Notifier] = list(notifiers or [])

    @property
    def notifiers(self) -> List[Notifier]:
        return list(self._notifiers)

    def add_notifier(self, notifier: Notifier) -> None:
        self._notifiers.append(notifier)

    def remove_notifier(self, notifier: Notifier) -> None:
        if notifier in self._notifiers:
            self._notifiers.remove(notifier)

    async def notify(self, level: str, title: str, message: str) -> None:
        for notifier in self._notifiers:
            try:
                await notifier.notify(level, title, message)
            except Exception as e:
                logger.error(
                    "notification_failed",
                    notifier_type=type(notifier).__name__,
                    error=str(e)
                )

    async def notify_health(self, snapshot: HealthSnapshot) -> bool:
        """
        健康状态为 error 时发送告警

        返回:
            是否发送了告警
        """
        if snapshot.status != HealthStatus.ERROR:
            return False

        message = "; ".join(snapshot.errors) or "unknown"
        await self.notify(
            "error",
            f"Backup health is {snapshot.status.value}",
            f"{message} (coverage {snapshot.coverage_percentage}%, "
            f"{snapshot.backed_up_tables}/{snapshot.total_tables} tables)"
        )
        return True


def build_notifier_manager(webhook_url: Optional[str] = None) -> NotifierManager:
    """
    构建通知管理器：默认输出到控制台，配置了 webhook 时同时发送

    参数:
        webhook_url: Webhook URL（可选）
    """
    manager = NotifierManager([ConsoleNotifier()])
    if webhook_url:
        manager.add_notifier(WebhookNotifier(webhook_url))
    return manager
