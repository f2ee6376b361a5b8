"""
磁盘配额回收

上传确认后回收组件日志占用的磁盘空间。
仅删除已关闭且全部字节已确认上传的轮转文件，从最旧的开始；
活跃文件和未读字节永不删除。
"""

import os
from dataclasses import dataclass, field

import psutil
from loguru import logger

from logship_agent.domain.errors import RetentionOverBudget, TransientIOError
from logship_agent.domain.events import (
    EventBus,
    LogFilesDeleted,
    RetentionBudgetExceeded,
    event_bus as default_event_bus,
)
from logship_agent.domain.models import LogFile, RetentionState
from logship_agent.logs.checkpoint import CheckpointStore
from logship_agent.logs.group import LogFileGroup


@dataclass
class ReclaimResult:
    """回收结果"""
    component: str
    files_deleted: int = 0
    bytes_freed: int = 0
    deleted_paths: list = field(default_factory=list)
    errors: list = field(default_factory=list)
    skipped_changed: int = 0  # 删除前复核发现已变化而跳过的文件数
    state: RetentionState | None = None

    @property
    def over_budget(self) -> bool:
        return any(isinstance(e, RetentionOverBudget) for e in self.errors)


class RetentionEnforcer:
    """
    配额回收器

    - 配置 delete_log_file_after_upload 时，确认后立即删除所有已上传的备份
    - 配置了磁盘上限时，从最旧的已上传备份开始删除，直到不超过上限
    - 删除全部可删文件后仍超限只上报，不视为故障
    - 未配置上限且不删除时不做任何事
    """

    def __init__(
        self,
        store: CheckpointStore,
        event_bus: EventBus | None = None,
    ):
        self._store = store
        self._event_bus = event_bus or default_event_bus

    def compute_state(self, group: LogFileGroup) -> RetentionState:
        """计算配额状态（可删除顺序：旧 → 新）"""
        eligible = [f for f in group.get_log_files() if group.is_fully_uploaded(f)]
        return RetentionState(
            total_bytes=group.total_bytes,
            ceiling=group.config.disk_space_limit,
            deletion_order=eligible,
        )

    def reclaim(self, group: LogFileGroup) -> ReclaimResult:
        """
        执行回收

        Args:
            group: 本轮文件组（检查点为最新工作副本）

        Returns:
            回收结果
        """
        config = group.config
        result = ReclaimResult(component=group.component)

        if config.disk_space_limit is None and not config.delete_log_file_after_upload:
            return result

        state = self.compute_state(group)
        result.state = state
        ceiling = state.ceiling

        for file in state.deletion_order:
            if not config.delete_log_file_after_upload and not state.over_budget:
                break
            released = self._delete(group.component, file, result)
            state.total_bytes -= released

        # 已删除的文件不再可删
        deleted = set(result.deleted_paths)
        state.deletion_order = [f for f in state.deletion_order if str(f.path) not in deleted]

        if result.deleted_paths:
            logger.info(
                f"[{group.component}] 日志回收完成: "
                f"deleted={result.files_deleted}, "
                f"freed={self._format_bytes(result.bytes_freed)}, "
                f"usage={self._format_bytes(state.total_bytes)}"
            )
            self._event_bus.publish_sync(LogFilesDeleted(
                component=group.component,
                paths=list(result.deleted_paths),
                bytes_freed=result.bytes_freed,
            ))

        if ceiling is not None and state.total_bytes > ceiling:
            self._report_over_budget(group, state, result)

        return result

    def _delete(self, component: str, file: LogFile, result: ReclaimResult) -> int:
        """
        删除单个文件

        Returns:
            从占用中扣除的字节数
        """
        try:
            current = LogFile.from_path(file.path)
        except FileNotFoundError:
            # 已被外部删除
            self._store.forget(component, file)
            return file.size
        except OSError as e:
            result.errors.append(TransientIOError(
                f"删除前复核失败: {file.path}: {e}",
                path=str(file.path),
                operation="stat",
            ))
            logger.warning(f"[{component}] 删除前复核失败 {file.path}: {e}")
            return 0

        if not current.same_identity(file) or current.size != file.size:
            result.skipped_changed += 1
            logger.debug(f"[{component}] 文件在回收前已变化，跳过: {file.path}")
            return 0

        try:
            os.remove(file.path)
        except FileNotFoundError:
            self._store.forget(component, file)
            return file.size
        except OSError as e:
            result.errors.append(TransientIOError(
                f"删除日志文件失败: {file.path}: {e}",
                path=str(file.path),
                operation="delete",
            ))
            logger.warning(f"[{component}] 删除日志文件失败 {file.path}: {e}")
            return 0

        self._store.forget(component, file)
        result.files_deleted += 1
        result.bytes_freed += file.size
        result.deleted_paths.append(str(file.path))
        logger.debug(f"[{component}] 已删除已上传日志: {file.path} ({self._format_bytes(file.size)})")
        return file.size

    def _report_over_budget(
        self,
        group: LogFileGroup,
        state: RetentionState,
        result: ReclaimResult,
    ) -> None:
        ceiling = state.ceiling or 0
        error = RetentionOverBudget(
            f"删除全部已上传文件后仍超出磁盘配额: "
            f"usage={self._format_bytes(state.total_bytes)}, "
            f"limit={self._format_bytes(ceiling)}",
            component=group.component,
            total_bytes=state.total_bytes,
            ceiling=ceiling,
        )
        result.errors.append(error)
        logger.warning(f"[{group.component}] {error.message}")

        self._event_bus.publish_sync(RetentionBudgetExceeded(
            component=group.component,
            total_bytes=state.total_bytes,
            ceiling=ceiling,
            disk_free_bytes=self._disk_free(group),
        ))

    @staticmethod
    def _disk_free(group: LogFileGroup) -> int | None:
        try:
            return psutil.disk_usage(str(group.config.directory_path)).free
        except OSError:
            return None

    @staticmethod
    def _format_bytes(size: float) -> str:
        """
        格式化字节大小

        Args:
            size: 字节大小

        Returns:
            格式化后的字符串
        """
        for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
            if size < 1024:
                return f"{size:.1f}{unit}"
            size /= 1024
        return f"{size:.1f}PB"
