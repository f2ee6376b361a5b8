"""
领域事件

检查点恢复、配额超限、文件删除等可观测事件，
供外部观测方订阅，避免引擎直接依赖告警实现。
"""

import contextlib
import inspect
from dataclasses import dataclass, field
from datetime import datetime

from loguru import logger


@dataclass
class DomainEvent:
    """领域事件基类"""

    timestamp: datetime = field(default_factory=datetime.now, kw_only=True)


@dataclass
class CheckpointCorrupted(DomainEvent):
    """检查点记录损坏，已重置为 0"""

    component: str = ""
    record_path: str = ""
    error: str = ""


@dataclass
class CheckpointReset(DomainEvent):
    """检查点被重置或退役"""

    component: str = ""
    path: str = ""
    file_key: str = ""
    reason: str = ""    # name_reused / truncated / content_replaced / expired


@dataclass
class BatchAcknowledged(DomainEvent):
    """一批记录上传成功且检查点已推进"""

    component: str = ""
    path: str = ""
    records: int = 0
    offset: int = 0


@dataclass
class LogFilesDeleted(DomainEvent):
    """回收删除了已上传的轮转文件"""

    component: str = ""
    paths: list[str] = field(default_factory=list)
    bytes_freed: int = 0


@dataclass
class RetentionBudgetExceeded(DomainEvent):
    """删除全部可删文件后仍超出配额"""

    component: str = ""
    total_bytes: int = 0
    ceiling: int = 0
    disk_free_bytes: int | None = None


@dataclass
class ComponentRefreshFailed(DomainEvent):
    """组件刷新周期失败"""

    component: str = ""
    error_code: str = ""
    message: str = ""
    retryable: bool = True


class EventBus:
    """
    事件总线

    用于在组件之间发布和订阅领域事件。
    支持同步和异步回调，处理器异常只记录不传播。
    """

    def __init__(self):
        self._handlers: dict[type, list] = {}

    def subscribe(self, event_type: type, handler):
        """
        订阅事件

        Args:
            event_type: 事件类型
            handler: 事件处理函数（同步或异步）
        """
        if event_type not in self._handlers:
            self._handlers[event_type] = []
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: type, handler):
        """取消订阅"""
        if event_type in self._handlers:
            with contextlib.suppress(ValueError):
                self._handlers[event_type].remove(handler)

    async def publish(self, event: DomainEvent):
        """发布事件（同步和异步处理器都会被调用）"""
        event_type = type(event)
        handlers = list(self._handlers.get(event_type, []))

        for handler in handlers:
            try:
                if inspect.iscoroutinefunction(handler):
                    await handler(event)
                else:
                    handler(event)
            except Exception as e:
                logger.error(f"事件处理器异常 {event_type.__name__}: {e}")

    def publish_sync(self, event: DomainEvent):
        """
        同步发布事件（仅调用同步处理器）

        引擎核心运行在线程池中，只能走这条路径。
        """
        event_type = type(event)
        handlers = list(self._handlers.get(event_type, []))

        for handler in handlers:
            try:
                if not inspect.iscoroutinefunction(handler):
                    handler(event)
            except Exception as e:
                logger.error(f"事件处理器异常 {event_type.__name__}: {e}")


# 全局事件总线实例
event_bus = EventBus()
