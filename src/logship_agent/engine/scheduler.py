"""
刷新调度器

周期性地触发每个组件的刷新-上传周期，也支持配置变更时按需触发。
同一组件同时最多一个刷新在执行，执行期间的触发合并为一次后续刷新。
"""

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from typing import Any

from loguru import logger

from logship_agent.domain.errors import ConfigurationError

RefreshHandler = Callable[[str], Awaitable[Any]]


class RefreshScheduler:
    """
    刷新调度器

    特性：
    - 定时器只负责触发，不等待刷新完成
    - 按组件合并触发（执行中再次触发只追加一次后续刷新）
    - 信号量限制同时执行的刷新数
    """

    def __init__(
        self,
        handler: RefreshHandler,
        interval: float,
        max_concurrent: int = 4,
    ):
        self._validate_interval(interval)
        if max_concurrent <= 0:
            raise ConfigurationError(
                f"并发上限必须为正数: {max_concurrent}",
                config_key="max_concurrent_refreshes",
            )

        self._handler = handler
        self._interval = interval
        self._max_concurrent = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)

        self._components: set[str] = set()
        self._tasks: dict[str, asyncio.Task] = {}
        self._pending: set[str] = set()

        self._running = False
        self._timer_task: asyncio.Task | None = None

    @staticmethod
    def _validate_interval(interval: float) -> None:
        if interval <= 0:
            raise ConfigurationError(
                f"上传间隔必须为正数: {interval}",
                config_key="periodicUploadIntervalSec",
            )

    # ==================== 生命周期 ====================

    async def start(self) -> None:
        """启动调度器（立即触发一轮）"""
        if self._running:
            return
        self._running = True
        self.trigger_all()
        self._timer_task = asyncio.create_task(self._timer_loop())
        logger.info(
            f"刷新调度器已启动 (interval={self._interval}s, "
            f"max_concurrent={self._max_concurrent})"
        )

    async def stop(self) -> None:
        """停止调度器并取消所有执行中的刷新"""
        self._running = False
        if self._timer_task:
            self._timer_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._timer_task
            self._timer_task = None

        tasks = list(self._tasks.values())
        self._pending.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        logger.info("刷新调度器已停止")

    # ==================== 组件管理 ====================

    def add(self, component: str) -> None:
        """注册组件（下一次定时触发时生效）"""
        self._components.add(component)

    async def remove(self, component: str) -> bool:
        """
        注销组件

        执行中的刷新会被取消；检查点写入是原子替换，取消不会留下半写状态。

        Returns:
            组件之前是否已注册
        """
        existed = component in self._components
        self._components.discard(component)
        self._pending.discard(component)

        task = self._tasks.get(component)
        if task and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.pop(component, None)
        return existed

    def trigger(self, component: str) -> bool:
        """
        触发一次刷新

        Returns:
            是否启动了新的刷新；执行中合并或组件未注册时返回 False
        """
        if component not in self._components:
            logger.debug(f"[{component}] 组件未注册，忽略触发")
            return False

        task = self._tasks.get(component)
        if task and not task.done():
            self._pending.add(component)
            return False

        self._tasks[component] = asyncio.create_task(
            self._run(component), name=f"refresh:{component}"
        )
        return True

    def trigger_all(self) -> int:
        """触发所有已注册组件，返回新启动的刷新数"""
        return sum(1 for component in sorted(self._components) if self.trigger(component))

    async def update_interval(self, interval: float) -> None:
        """更新上传间隔（下一次定时等待生效）"""
        self._validate_interval(interval)
        if interval != self._interval:
            logger.info(f"上传间隔已更新: {self._interval}s -> {interval}s")
        self._interval = interval

    async def join(self) -> None:
        """等待当前所有刷新（含合并的后续刷新）结束"""
        while True:
            tasks = [t for t in self._tasks.values() if not t.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    # ==================== 内部实现 ====================

    async def _run(self, component: str) -> None:
        current = asyncio.current_task()
        try:
            while True:
                self._pending.discard(component)
                async with self._semaphore:
                    try:
                        await self._handler(component)
                    except asyncio.CancelledError:
                        raise
                    except Exception as e:
                        logger.error(f"[{component}] 刷新异常: {e}")

                if component not in self._pending or component not in self._components:
                    break
                logger.debug(f"[{component}] 执行合并的后续刷新")
        finally:
            if self._tasks.get(component) is current:
                del self._tasks[component]

    async def _timer_loop(self) -> None:
        """定时触发循环"""
        while self._running:
            try:
                await asyncio.sleep(self._interval)
                if not self._running:
                    break
                self.trigger_all()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"定时触发循环异常: {e}")

    # ==================== 状态 ====================

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def components(self) -> list[str]:
        return sorted(self._components)

    @property
    def in_flight(self) -> list[str]:
        """执行中的组件"""
        return sorted(c for c, t in self._tasks.items() if not t.done())

    def is_pending(self, component: str) -> bool:
        """是否有合并的后续刷新"""
        return component in self._pending
