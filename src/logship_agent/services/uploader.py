"""
日志上传服务

每个组件一个刷新周期：
刷新文件组 -> 组装记录 -> 分批上传 -> 确认后推进检查点 -> 配额回收。

阻塞的文件系统操作全部放到线程池执行，不阻塞调度器。
"""

import asyncio
import functools
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from logship_agent.config import AgentConfig, parse_component_configurations
from logship_agent.domain.errors import ConfigurationError, LogShipError, UploadError
from logship_agent.domain.events import (
    BatchAcknowledged,
    ComponentRefreshFailed,
    EventBus,
    event_bus as default_event_bus,
)
from logship_agent.domain.models import (
    ComponentLogConfiguration,
    LogRecord,
    UnreadRange,
    UploadBatch,
)
from logship_agent.engine.scheduler import RefreshScheduler
from logship_agent.logs.assembler import RecordAssembler
from logship_agent.logs.checkpoint import CheckpointStore
from logship_agent.logs.group import LogFileGroup
from logship_agent.logs.retention import ReclaimResult, RetentionEnforcer
from logship_agent.transport.base import UploadTransport
from logship_agent.utils.exceptions import get_error_code, is_retryable, map_exception
from logship_agent.utils.time import now_iso


@dataclass
class CycleResult:
    """单次刷新周期结果"""
    component: str
    started_at: str = field(default_factory=now_iso)
    files_processed: int = 0
    batches_uploaded: int = 0
    records_uploaded: int = 0
    bytes_uploaded: int = 0
    skipped: bool = False
    error: LogShipError | None = None
    reclaim: ReclaimResult | None = None

    @property
    def success(self) -> bool:
        return self.error is None and not self.skipped

    def to_dict(self) -> dict[str, Any]:
        return {
            "component": self.component,
            "started_at": self.started_at,
            "files_processed": self.files_processed,
            "batches_uploaded": self.batches_uploaded,
            "records_uploaded": self.records_uploaded,
            "bytes_uploaded": self.bytes_uploaded,
            "skipped": self.skipped,
            "error": self.error.to_dict() if self.error else None,
            "files_deleted": self.reclaim.files_deleted if self.reclaim else 0,
            "bytes_freed": self.reclaim.bytes_freed if self.reclaim else 0,
        }


class LogUploaderService:
    """
    日志上传服务

    - 组件配置由外部下发，配置变化时重新注册并立即触发
    - 配置错误的组件在配置变更前跳过
    - IO 错误和上传失败只记录，下一周期重试
    """

    def __init__(
        self,
        config: AgentConfig,
        transport: UploadTransport,
        *,
        store: CheckpointStore | None = None,
        enforcer: RetentionEnforcer | None = None,
        event_bus: EventBus | None = None,
    ):
        self._config = config
        self._transport = transport
        self._event_bus = event_bus or default_event_bus
        self._store = store or CheckpointStore(
            config.work_dir,
            grace_seconds=config.checkpoint_grace_seconds,
            event_bus=self._event_bus,
        )
        self._enforcer = enforcer or RetentionEnforcer(self._store, event_bus=self._event_bus)
        self._scheduler = RefreshScheduler(
            self.process_component,
            interval=config.periodic_upload_interval_sec,
            max_concurrent=config.max_concurrent_refreshes,
        )

        self._configs: dict[str, ComponentLogConfiguration] = {}
        self._config_errors: dict[str, ConfigurationError] = {}
        self._last_results: dict[str, CycleResult] = {}
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def scheduler(self) -> RefreshScheduler:
        return self._scheduler

    @property
    def store(self) -> CheckpointStore:
        return self._store

    # ==================== 生命周期 ====================

    async def start(self) -> None:
        """启动上传服务"""
        if self._running:
            logger.warning("日志上传服务已在运行")
            return

        if not await self._transport.start():
            raise UploadError("传输层启动失败", retryable=True)

        self._config.ensure_directories()
        if self._config.logs_uploader_configuration:
            await self.apply_configuration(self._config.logs_uploader_configuration)

        await self._scheduler.start()
        self._running = True
        logger.info(
            f"日志上传服务已启动: work_dir={self._config.work_dir}, "
            f"components={len(self._configs)}"
        )

    async def stop(self) -> None:
        """停止上传服务"""
        self._running = False
        await self._scheduler.stop()
        await self._transport.stop()
        logger.info("日志上传服务已停止")

    # ==================== 配置变更 ====================

    async def apply_configuration(self, raw: dict[str, Any]) -> None:
        """
        应用配置方下发的原始配置

        Args:
            raw: 原始配置映射（periodicUploadIntervalSec 等）
        """
        parsed = parse_component_configurations(raw, self._config.effective_logs_root)
        await self._scheduler.update_interval(parsed.periodic_upload_interval_sec)
        await self.update_configurations(parsed.configs, parsed.errors)

    async def update_configurations(
        self,
        configs: dict[str, ComponentLogConfiguration],
        errors: dict[str, ConfigurationError] | None = None,
    ) -> None:
        """
        配置变更通知

        新增或变化的组件重新注册并触发；删除的组件取消刷新并移除。
        """
        errors = errors or {}

        for name in sorted(set(self._configs) | set(self._config_errors)):
            if name in configs or name in errors:
                continue
            await self._scheduler.remove(name)
            self._configs.pop(name, None)
            self._config_errors.pop(name, None)
            self._last_results.pop(name, None)
            self._store.release(name)
            logger.info(f"[{name}] 组件日志配置已移除")

        for name, error in errors.items():
            if name in self._configs:
                await self._scheduler.remove(name)
                self._configs.pop(name)
            self._config_errors[name] = error
            logger.error(f"[{name}] 组件日志配置非法: {error.message}")

        for name, component_config in configs.items():
            previous = self._configs.get(name)
            if previous == component_config:
                continue

            self._configs[name] = component_config
            self._config_errors.pop(name, None)
            self._scheduler.add(name)
            logger.info(
                f"[{name}] 组件日志配置已{'更新' if previous else '注册'}: "
                f"dir={component_config.directory_path}, "
                f"pattern={component_config.file_name_pattern.pattern}"
            )
            if self._scheduler.is_running:
                self._scheduler.trigger(name)

    # ==================== 刷新周期 ====================

    async def process_component(self, name: str) -> CycleResult:
        """
        执行单个组件的一次刷新周期

        Args:
            name: 组件名

        Returns:
            CycleResult
        """
        result = CycleResult(component=name)
        config = self._configs.get(name)

        if config is None or name in self._config_errors:
            result.skipped = True
            logger.debug(f"[{name}] 组件未配置或配置错误，跳过刷新")
            return result

        try:
            group = await self._create_group(config)
            await self._upload_group(group, result)

            # 上传推进了检查点，回收前重新快照
            group = await self._create_group(config)
            result.reclaim = await self._run_blocking(self._enforcer.reclaim, group)

        except asyncio.CancelledError:
            raise
        except ConfigurationError as e:
            self._config_errors[name] = e
            result.error = e
            logger.error(f"[{name}] 组件配置错误，配置变更前不再刷新: {e.message}")
            await self._publish_failure(name, e)
        except Exception as e:
            error = map_exception(e)
            result.error = error
            if isinstance(e, LogShipError):
                logger.warning(f"[{name}] 刷新周期中断，下一周期重试: {error.message}")
            else:
                logger.error(f"[{name}] 刷新周期异常: {e}")
            await self._publish_failure(name, error)

        self._last_results[name] = result
        if result.batches_uploaded or (result.reclaim and result.reclaim.files_deleted):
            logger.info(
                f"[{name}] 刷新周期完成: files={result.files_processed}, "
                f"batches={result.batches_uploaded}, records={result.records_uploaded}, "
                f"bytes={result.bytes_uploaded}"
            )
        return result

    async def _create_group(self, config: ComponentLogConfiguration) -> LogFileGroup:
        return await self._run_blocking(
            LogFileGroup.create,
            config,
            self._config.not_before,
            self._config.work_dir,
            store=self._store,
        )

    async def _upload_group(self, group: LogFileGroup, result: CycleResult) -> None:
        """按从旧到新上传所有未读区间，任一批次失败即中止本周期"""
        assembler = RecordAssembler(
            group.config.multiline_start_pattern,
            max_record_bytes=self._config.max_record_bytes,
        )

        for rng in group.iter_unread():
            result.files_processed += 1
            acked = group.checkpoint.records_for(rng.file)
            pending: list[LogRecord] = []
            pending_bytes = 0

            async for record in assembler.aiter_records(rng):
                pending.append(record)
                pending_bytes += record.size
                if (
                    len(pending) >= self._config.max_batch_records
                    or pending_bytes >= self._config.max_batch_bytes
                ):
                    acked = await self._ship(group, rng, pending, acked, result)
                    pending = []
                    pending_bytes = 0

            if pending:
                await self._ship(group, rng, pending, acked, result)

    async def _ship(
        self,
        group: LogFileGroup,
        rng: UnreadRange,
        records: list[LogRecord],
        acked: int,
        result: CycleResult,
    ) -> int:
        """
        上传一批记录并推进检查点

        Returns:
            推进后的累计记录数

        Raises:
            UploadError: 传输层返回失败或抛出异常
        """
        batch = UploadBatch(
            component=group.component,
            file=rng.file,
            records=records,
            min_log_level=group.config.min_log_level,
        )

        try:
            ok = await self._transport.upload(batch)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise UploadError(
                f"上传失败: {rng.file.path}: {e}",
                component=group.component,
            ) from e
        if not ok:
            raise UploadError(
                f"传输层未确认批次: {rng.file.path} "
                f"[{batch.start_offset}, {batch.end_offset})",
                component=group.component,
            )

        acked += len(batch)
        await self._run_blocking(
            self._store.advance,
            group.component,
            rng.file,
            batch.end_offset,
            acked,
        )

        result.batches_uploaded += 1
        result.records_uploaded += len(batch)
        result.bytes_uploaded += batch.byte_size

        await self._event_bus.publish(BatchAcknowledged(
            component=group.component,
            path=str(rng.file.path),
            records=len(batch),
            offset=batch.end_offset,
        ))
        return acked

    async def _publish_failure(self, name: str, error: Exception) -> None:
        await self._event_bus.publish(ComponentRefreshFailed(
            component=name,
            error_code=get_error_code(error),
            message=str(error),
            retryable=is_retryable(error),
        ))

    @staticmethod
    async def _run_blocking(func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    # ==================== 状态 ====================

    def get_status(self) -> dict[str, Any]:
        """获取服务状态"""
        in_flight = set(self._scheduler.in_flight)
        components: dict[str, Any] = {}

        for name in sorted(set(self._configs) | set(self._config_errors)):
            error = self._config_errors.get(name)
            last = self._last_results.get(name)
            components[name] = {
                "configured": name in self._configs,
                "config_error": error.to_dict() if error else None,
                "in_flight": name in in_flight,
                "last_cycle": last.to_dict() if last else None,
            }

        return {
            "running": self._running,
            "interval_sec": self._scheduler.interval,
            "work_dir": self._config.work_dir,
            "components": components,
        }
