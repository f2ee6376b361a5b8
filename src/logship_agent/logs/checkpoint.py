"""
检查点存储

持久化每个组件、每个文件身份的已确认偏移，跨进程重启和文件轮转有效。

目录结构: {work_dir}/checkpoints/{quote(component)}/{file_key}.json

特点：
- 每个 (组件, 文件) 一条记录，临时文件 + fsync + os.replace 原子替换
- advance 返回即已落盘；崩溃最多导致未确认区间重发（至少一次）
- 损坏记录重置为 0（宁可重发，不跳过）
"""

import json
import os
import threading
import time
from pathlib import Path
from urllib.parse import quote

from loguru import logger

from logship_agent.domain.errors import CheckpointCorruption
from logship_agent.domain.events import (
    CheckpointCorrupted,
    CheckpointReset,
    EventBus,
    event_bus as default_event_bus,
)
from logship_agent.domain.models import Checkpoint, FileCheckpoint, LogFile

RECORD_SUFFIX = ".json"
TMP_SUFFIX = ".tmp"

# 文件消失后检查点的保留时间（秒）
DEFAULT_GRACE_SECONDS = 3600


class CheckpointStore:
    """
    检查点存储

    本存储独占持久化偏移；LogFileGroup 只持有本轮工作副本。
    同一组件的写入在进程内串行。
    """

    def __init__(
        self,
        work_dir: str | os.PathLike,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        event_bus: EventBus | None = None,
    ):
        self._root = Path(work_dir) / "checkpoints"
        self._grace_seconds = grace_seconds
        self._event_bus = event_bus or default_event_bus

        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    @property
    def grace_seconds(self) -> float:
        return self._grace_seconds

    def component_dir(self, component: str) -> Path:
        """组件检查点目录（组件名做 URL 编码，避免路径穿越）"""
        return self._root / quote(component, safe="")

    # ==================== 公共接口 ====================

    def load(self, component: str) -> Checkpoint:
        """
        加载组件检查点

        损坏记录被删除并视为 offset 0。
        """
        with self._lock_for(component):
            return self._load_locked(component)

    def advance(
        self,
        component: str,
        file: LogFile,
        new_offset: int,
        record_boundary: int,
    ) -> FileCheckpoint:
        """
        推进检查点（返回即已持久化）

        Args:
            component: 组件名
            file: 文件身份
            new_offset: 新的已确认偏移（必须位于记录边界）
            record_boundary: 已确认的累计记录数

        Returns:
            持久化后的 FileCheckpoint

        Raises:
            ValueError: 偏移超出文件快照范围
        """
        if new_offset < 0 or new_offset > file.size:
            raise ValueError(
                f"偏移越界: offset={new_offset}, size={file.size}, path={file.path}"
            )

        with self._lock_for(component):
            record_path = self._record_path(component, file.file_key)
            existing = self._read_record(component, record_path)

            if existing and new_offset < existing.offset:
                logger.warning(
                    f"[{component}] 忽略检查点回退: {file.path} "
                    f"{existing.offset} -> {new_offset}"
                )
                return existing

            entry = FileCheckpoint(
                file_key=file.file_key,
                path=str(file.path),
                offset=new_offset,
                records=max(record_boundary, existing.records if existing else 0),
                file_size=file.size,
                updated_at=time.time(),
                missing_since=None,
                tail_digest=file.digest_before(new_offset),
            )
            self._write_record(record_path, entry)

        logger.debug(
            f"[{component}] 检查点已推进: {file.name} offset={new_offset} records={entry.records}"
        )
        return entry

    def forget(self, component: str, file: LogFile | str) -> bool:
        """
        删除文件检查点

        Args:
            file: LogFile 或 file_key

        Returns:
            是否删除了记录
        """
        file_key = file.file_key if isinstance(file, LogFile) else file
        with self._lock_for(component):
            return self._remove_record(self._record_path(component, file_key))

    def reconcile(
        self,
        component: str,
        files: list[LogFile],
        now: float | None = None,
    ) -> Checkpoint:
        """
        将持久化检查点与当前文件身份对账

        - 身份仍存在：路径变化（改名轮转）时更新路径；文件缩小时重置为 0
        - 身份消失且同路径出现新身份：文件名被轮转复用，立即退役
        - 身份消失且路径无文件：标记 missing_since，超过保留时间后退役

        Returns:
            对账后的检查点工作副本
        """
        now = time.time() if now is None else now
        current = {f.file_key: f for f in files}
        paths = {str(f.path) for f in files}

        with self._lock_for(component):
            checkpoint = self._load_locked(component)

            for file_key, entry in list(checkpoint.entries.items()):
                record_path = self._record_path(component, file_key)
                file = current.get(file_key)

                if file is not None:
                    changed = False
                    reason = None
                    if file.size < entry.offset:
                        logger.warning(
                            f"[{component}] 文件缩小，检查点重置为 0: "
                            f"{file.path} ({file.size} < {entry.offset})"
                        )
                        reason = "truncated"
                    elif self._content_replaced(file, entry):
                        logger.warning(
                            f"[{component}] 已确认内容被替换，检查点重置为 0: "
                            f"{file.path} (offset={entry.offset})"
                        )
                        reason = "content_replaced"
                    if reason is not None:
                        self._publish(CheckpointReset(
                            component=component,
                            path=str(file.path),
                            file_key=file_key,
                            reason=reason,
                        ))
                        entry.offset = 0
                        entry.records = 0
                        entry.tail_digest = None
                        changed = True
                    if entry.path != str(file.path):
                        logger.debug(f"[{component}] 文件已改名: {entry.path} -> {file.path}")
                        entry.path = str(file.path)
                        changed = True
                    if entry.missing_since is not None:
                        entry.missing_since = None
                        changed = True
                    if changed:
                        entry.updated_at = now
                        self._write_record(record_path, entry)
                    continue

                if entry.path in paths:
                    logger.info(f"[{component}] 文件名被轮转复用，旧检查点退役: {entry.path}")
                    self._retire(component, checkpoint, record_path, entry, "name_reused")
                    continue

                if entry.missing_since is None:
                    entry.missing_since = now
                    self._write_record(record_path, entry)
                elif now - entry.missing_since >= self._grace_seconds:
                    logger.info(f"[{component}] 文件已消失超过保留时间，检查点退役: {entry.path}")
                    self._retire(component, checkpoint, record_path, entry, "expired")

            return checkpoint

    def release(self, component: str) -> bool:
        """
        释放组件的进程内锁（组件被移除时调用，持久化记录保留）

        Returns:
            是否存在该组件的锁
        """
        with self._locks_guard:
            return self._locks.pop(component, None) is not None

    # ==================== 内部方法 ====================

    @staticmethod
    def _content_replaced(file: LogFile, entry: FileCheckpoint) -> bool:
        """同一身份下 offset 之前的字节发生变化（copytruncate 或 inode 复用后头部相同）"""
        if entry.tail_digest is None or entry.offset <= 0:
            return False
        digest = file.digest_before(entry.offset)
        return digest is not None and digest != entry.tail_digest

    def _lock_for(self, component: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(component)
            if lock is None:
                lock = self._locks[component] = threading.Lock()
            return lock

    def _record_path(self, component: str, file_key: str) -> Path:
        return self.component_dir(component) / f"{file_key}{RECORD_SUFFIX}"

    def _load_locked(self, component: str) -> Checkpoint:
        checkpoint = Checkpoint(component=component)
        comp_dir = self.component_dir(component)
        if not comp_dir.is_dir():
            return checkpoint

        for path in sorted(comp_dir.iterdir()):
            if path.name.endswith(TMP_SUFFIX):
                # 崩溃残留的临时文件
                self._remove_record(path)
                continue
            if not path.name.endswith(RECORD_SUFFIX):
                continue

            entry = self._read_record(component, path)
            if entry is not None:
                checkpoint.entries[entry.file_key] = entry

        return checkpoint

    def _read_record(self, component: str, path: Path) -> FileCheckpoint | None:
        """读取单条记录，损坏时删除并返回 None"""
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            entry = FileCheckpoint.from_dict(data)
            if f"{entry.file_key}{RECORD_SUFFIX}" != path.name:
                raise ValueError(f"file_key 与文件名不一致: {entry.file_key}")
            return entry
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as e:
            error = CheckpointCorruption(
                f"检查点记录损坏，重置为 0: {path}: {e}",
                component=component,
                record_path=str(path),
            )
            logger.warning(f"[{component}] {error.message}")
            self._publish(CheckpointCorrupted(
                component=component,
                record_path=str(path),
                error=str(e),
            ))
            self._remove_record(path)
            return None

    def _write_record(self, path: Path, entry: FileCheckpoint) -> None:
        """原子写入：临时文件 fsync 后 replace，再 fsync 目录"""
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + TMP_SUFFIX)

        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(json.dumps(entry.to_dict(), indent=2))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            self._remove_record(tmp_path)
            raise

        self._fsync_dir(path.parent)

    def _retire(
        self,
        component: str,
        checkpoint: Checkpoint,
        record_path: Path,
        entry: FileCheckpoint,
        reason: str,
    ) -> None:
        self._remove_record(record_path)
        checkpoint.entries.pop(entry.file_key, None)
        self._publish(CheckpointReset(
            component=component,
            path=entry.path,
            file_key=entry.file_key,
            reason=reason,
        ))

    def _remove_record(self, path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        self._fsync_dir(path.parent)
        return True

    @staticmethod
    def _fsync_dir(directory: Path) -> None:
        """fsync 目录项（Windows 不支持打开目录，跳过）"""
        if os.name == "nt":
            return
        fd = os.open(str(directory), os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)

    def _publish(self, event) -> None:
        self._event_bus.publish_sync(event)
