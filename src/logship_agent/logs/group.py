"""
日志文件组

单个组件在一次刷新周期内的一致快照：
有序的文件列表、活跃文件、每个文件的未读字节区间。
"""

import os
import re
from collections.abc import Iterator
from datetime import datetime
from pathlib import Path

from loguru import logger

from logship_agent.domain.errors import ConfigurationError
from logship_agent.domain.models import (
    Checkpoint,
    ComponentLogConfiguration,
    LogFile,
    UnreadRange,
)
from logship_agent.logs.checkpoint import CheckpointStore
from logship_agent.logs.matcher import FileMatcher
from logship_agent.logs.resolver import ActiveFileResolver
from logship_agent.utils.time import to_timestamp


class LogFileGroup:
    """
    组件日志文件组

    成员按创建时间从旧到新排列，最多一个活跃文件。
    给定相同的文件系统和检查点状态，结果确定。
    """

    def __init__(
        self,
        config: ComponentLogConfiguration,
        files: list[LogFile],
        active_file: LogFile | None,
        checkpoint: Checkpoint,
        total_bytes: int = 0,
    ):
        self._config = config
        self._files = list(files)
        self._active_file = active_file
        self._checkpoint = checkpoint
        self._total_bytes = total_bytes

    @classmethod
    def create(
        cls,
        config: ComponentLogConfiguration,
        not_before: datetime | float | None,
        work_dir: str | os.PathLike,
        *,
        store: CheckpointStore | None = None,
        matcher: FileMatcher | None = None,
        resolver: ActiveFileResolver | None = None,
    ) -> "LogFileGroup":
        """
        构建文件组

        Args:
            config: 组件配置快照
            not_before: 最后修改早于该时间的文件不纳入；None 或 EPOCH 表示不过滤
            work_dir: 工作目录（检查点存放处）
            store: 共享的检查点存储，默认按 work_dir 新建
            matcher: 文件匹配器
            resolver: 活跃文件判定器

        Raises:
            ConfigurationError: 目录路径或正则非法
        """
        cls._validate(config)

        store = store or CheckpointStore(work_dir)
        matcher = matcher or FileMatcher()
        resolver = resolver or ActiveFileResolver()

        matched = matcher.match(config.directory_path, config.file_name_pattern)
        total_bytes = sum(f.size for f in matched)

        cutoff = to_timestamp(not_before)
        candidates = matched
        if cutoff is not None:
            candidates = [f for f in matched if f.modified_at >= cutoff]
            skipped = len(matched) - len(candidates)
            if skipped:
                logger.debug(f"[{config.name}] 跳过 {skipped} 个早于起始时间的文件")

        resolution = resolver.resolve(candidates)
        checkpoint = store.reconcile(config.name, matched)

        logger.debug(
            f"[{config.name}] 文件组已刷新: files={len(resolution.files)}, "
            f"active={resolution.active.name if resolution.active else None}, "
            f"excluded={len(resolution.excluded)}, total_bytes={total_bytes}"
        )
        for file in [*resolution.files, *resolution.excluded]:
            logger.debug(
                f"[{config.name}] {file.name}: role={resolution.role_of(file).value}, size={file.size}"
            )

        return cls(
            config=config,
            files=resolution.files,
            active_file=resolution.active,
            checkpoint=checkpoint,
            total_bytes=total_bytes,
        )

    @staticmethod
    def _validate(config: ComponentLogConfiguration) -> None:
        if not isinstance(config.file_name_pattern, re.Pattern):
            raise ConfigurationError(
                f"文件名正则未编译: {config.file_name_pattern!r}",
                component=config.name,
                config_key="file_name_pattern",
            )
        directory = Path(config.directory_path)
        if directory.exists() and not directory.is_dir():
            raise ConfigurationError(
                f"日志路径不是目录: {directory}",
                component=config.name,
                config_key="directory_path",
            )

    # ==================== 查询接口 ====================

    @property
    def component(self) -> str:
        return self._config.name

    @property
    def config(self) -> ComponentLogConfiguration:
        return self._config

    @property
    def active_file(self) -> LogFile | None:
        return self._active_file

    @property
    def checkpoint(self) -> Checkpoint:
        return self._checkpoint

    @property
    def total_bytes(self) -> int:
        """组件匹配到的全部文件占用（含本轮排除的文件）"""
        return self._total_bytes

    def get_log_files(self) -> list[LogFile]:
        """文件列表（旧 → 新）"""
        return list(self._files)

    def is_active_file(self, file: LogFile | str | os.PathLike) -> bool:
        """
        判断是否活跃文件

        传入 LogFile 时比较身份，传入路径时比较路径。
        """
        if self._active_file is None:
            return False
        if isinstance(file, LogFile):
            return (
                file.device == self._active_file.device
                and file.inode == self._active_file.inode
                and Path(file.path) == Path(self._active_file.path)
            )
        return Path(file) == Path(self._active_file.path)

    def unread_range(self, file: LogFile) -> UnreadRange | None:
        """
        文件的未读区间

        检查点偏移到快照大小；不是组成员时返回 None。
        """
        member = self._find(file)
        if member is None:
            return None
        start = min(self._checkpoint.offset_for(member), member.size)
        return UnreadRange(
            file=member,
            start=start,
            end=member.size,
            is_active=self.is_active_file(member),
        )

    def iter_unread(self) -> Iterator[UnreadRange]:
        """按从旧到新迭代非空的未读区间"""
        for file in self._files:
            rng = self.unread_range(file)
            if rng is not None and not rng.is_empty:
                yield rng

    def is_fully_uploaded(self, file: LogFile) -> bool:
        """已关闭且全部字节已确认"""
        member = self._find(file)
        if member is None or self.is_active_file(member):
            return False
        return self._checkpoint.offset_for(member) >= member.size

    def _find(self, file: LogFile) -> LogFile | None:
        for member in self._files:
            if member.file_key == file.file_key:
                return member
        return None

    def __len__(self) -> int:
        return len(self._files)

    def __iter__(self) -> Iterator[LogFile]:
        return iter(self._files)

    def __repr__(self) -> str:
        active = self._active_file.name if self._active_file else None
        return (
            f"LogFileGroup(component={self.component!r}, files={len(self._files)}, "
            f"active={active!r})"
        )
