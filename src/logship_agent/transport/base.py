"""
传输层抽象基类

定义日志批次上传的统一接口。
上传成功是推进检查点和允许回收的唯一前提。
"""

from abc import ABC, abstractmethod

from logship_agent.domain.models import UploadBatch


class UploadTransport(ABC):
    """
    上传传输层抽象基类

    实现方负责把一批记录投递到远端存储，
    只有在远端确认后才返回 True。
    """

    def __init__(self):
        self._running = False

    @property
    def is_running(self) -> bool:
        """是否运行中"""
        return self._running

    # ==================== 生命周期 ====================

    async def start(self) -> bool:
        """
        启动传输层

        Returns:
            是否启动成功
        """
        self._running = True
        return True

    async def stop(self) -> None:
        """停止传输层"""
        self._running = False

    # ==================== 上传 ====================

    @abstractmethod
    async def upload(self, batch: UploadBatch) -> bool:
        """
        上传一批记录

        Args:
            batch: 同一文件、连续字节区间的记录批次

        Returns:
            远端是否确认接收
        """
        pass
