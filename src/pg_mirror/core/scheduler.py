"""
任务调度 - 固定间隔 / cron 定时任务，每个任务同一时刻只运行一次
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from croniter import croniter

from pg_mirror.models.position import CycleState
from pg_mirror.utils.logging import get_logger

logger = get_logger(__name__)

JobFunc = Callable[[], Awaitable[Any]]


class CycleGuard:
    """
    周期守卫

    任务仍在运行时到来的触发直接跳过，不排队。
    状态由调度器持有，不使用模块级全局变量。
    """

    def __init__(self, name: str):
        self.name = name
        self.state = CycleState.IDLE
        self.skipped = 0
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self.state == CycleState.RUNNING

    async def run(self, func: JobFunc) -> Tuple[bool, Any]:
        """
        在守卫内执行

        返回:
            (是否执行, 返回值)；跳过时返回 (False, None)
        """
        if self.is_running or self._lock.locked():
            self.skipped += 1
            logger.info("job_skipped_still_running", job=self.name, skipped=self.skipped)
            return False, None

        async with self._lock:
            self.state = CycleState.RUNNING
            try:
                return True, await func()
            finally:
                self.state = CycleState.IDLE


class ScheduledJob:
    """
    定时任务

    属性:
        name: 任务名
        func: 无参协程函数
        interval_seconds: 固定间隔（与 cron 二选一）
        cron: cron 表达式
    """

    def __init__(
        self,
        name: str,
        func: JobFunc,
        interval_seconds: Optional[float] = None,
        cron: Optional[str] = None
    ):
        if (interval_seconds is None) == (cron is None):
            raise ValueError("interval_seconds 和 cron 必须且只能指定一个")
        if cron is not None and not croniter.is_valid(cron):
            raise ValueError(f"无效的 cron 表达式: {cron}")

        self.name = name
        self.func = func
        self.interval_seconds = interval_seconds
        self.cron = cron
        self.guard = CycleGuard(name)
        self.runs = 0
        self.last_run: Optional[datetime] = None

    def next_delay(self, now: Optional[datetime] = None) -> float:
        """距下一次触发的秒数"""
        if self.interval_seconds is not None:
            return float(self.interval_seconds)
        now = now or datetime.now(timezone.utc).astimezone()
        next_fire = croniter(self.cron, now).get_next(datetime)
        return max((next_fire - now).total_seconds(), 0.0)


class JobScheduler:
    """
    异步任务调度器

    每个任务一个循环 task；任务函数的异常在这里记录，不会中断调度。

    示例:
        ```python
        scheduler = JobScheduler()
        scheduler.add_interval_job("cdc", detector.run_cycle, 30)
        scheduler.add_cron_job("full_backup", engine.hourly_backup, "0 * * * *")
        scheduler.start()
        ```
    """

    def __init__(self):
        self._jobs: Dict[str, ScheduledJob] = {}
        self._tasks: List[asyncio.Task] = []
        self._inflight: Set[asyncio.Task] = set()
        self._running = False

    @property
    def jobs(self) -> List[ScheduledJob]:
        return list(self._jobs.values())

    def is_running(self) -> bool:
        return self._running

    def get_job(self, name: str) -> ScheduledJob:
        return self._jobs[name]

    def add_interval_job(self, name: str, func: JobFunc, seconds: float) -> ScheduledJob:
        return self._add(ScheduledJob(name, func, interval_seconds=seconds))

    def add_cron_job(self, name: str, func: JobFunc, cron: str) -> ScheduledJob:
        return self._add(ScheduledJob(name, func, cron=cron))

    def _add(self, job: ScheduledJob) -> ScheduledJob:
        if job.name in self._jobs:
            raise ValueError(f"任务已存在: {job.name}")
        self._jobs[job.name] = job
        return job

    def start(self) -> None:
        """为每个任务启动循环"""
        if self._running:
            raise RuntimeError("调度器已在运行")
        self._running = True
        for job in self._jobs.values():
            self._tasks.append(asyncio.create_task(self._loop(job), name=f"job:{job.name}"))
        logger.info("scheduler_started", jobs=[j.name for j in self._jobs.values()])

    async def stop(self) -> None:
        """取消所有任务循环并等待退出"""
        if not self._running:
            return
        self._running = False
        pending = self._tasks + list(self._inflight)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        logger.info("scheduler_stopped")

    async def run_job(self, name: str) -> Tuple[bool, Any]:
        """立即执行一次任务（同样受守卫约束）"""
        job = self._jobs[name]
        return await job.guard.run(lambda: self._invoke(job))

    async def _loop(self, job: ScheduledJob) -> None:
        while self._running:
            await asyncio.sleep(job.next_delay())
            if not self._running:
                break
            # 不等待本次执行结束，下一次触发交给守卫判断
            task = asyncio.create_task(job.guard.run(lambda: self._invoke(job)))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _invoke(self, job: ScheduledJob) -> Any:
        job.runs += 1
        job.last_run = datetime.now(timezone.utc)
        try:
            return await job.func()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("job_failed", job=job.name, error=str(e), exc_info=e)
            return None

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "jobs": [
                {
                    "name": job.name,
                    "interval_seconds": job.interval_seconds,
                    "cron": job.cron,
                    "state": job.guard.state.value,
                    "runs": job.runs,
                    "skipped": job.guard.skipped,
                    "last_run": job.last_run.isoformat() if job.last_run else None,
                }
                for job in self._jobs.values()
            ],
        }
