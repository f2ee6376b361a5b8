"""
日志上传域模型定义

LogFile 是一次刷新周期内的文件身份快照，不持有文件内容。
检查点以 file_key（设备号 + inode + 头部摘要）为键，
不依赖对象引用相等。
"""

import hashlib
import os
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from logship_agent.domain.enums import LogLevel

# 身份摘要读取的头部字节数
HEAD_BYTES = 1024

# 检查点校验已确认内容时读取的偏移前字节数
TAIL_BYTES = 1024


@dataclass(frozen=True)
class ComponentLogConfiguration:
    """
    组件日志配置快照

    由外部配置方提供，单个刷新周期内不可变。
    """

    name: str
    directory_path: Path
    file_name_pattern: re.Pattern
    multiline_start_pattern: re.Pattern | None = None
    min_log_level: LogLevel = LogLevel.INFO
    disk_space_limit: int | None = None    # 字节，None 表示不限制
    delete_log_file_after_upload: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "directory_path": str(self.directory_path),
            "file_name_pattern": self.file_name_pattern.pattern,
            "multiline_start_pattern": (
                self.multiline_start_pattern.pattern if self.multiline_start_pattern else None
            ),
            "min_log_level": self.min_log_level.value,
            "disk_space_limit": self.disk_space_limit,
            "delete_log_file_after_upload": self.delete_log_file_after_upload,
        }


@dataclass(frozen=True)
class LogFile:
    """
    日志文件身份

    path + 创建时间 + 设备/inode + 头部摘要 + 当前大小。
    用于区分增长（同身份，更大）、轮转复用文件名（同路径，新身份）、删除（身份消失）。
    """

    path: Path
    size: int
    created_ns: int
    modified_ns: int
    device: int
    inode: int
    head_digest: str

    @classmethod
    def from_path(cls, path: str | os.PathLike) -> "LogFile":
        """
        对文件做一次 stat 和头部读取

        Raises:
            FileNotFoundError: 文件在 stat/读取之间消失
            OSError: 其它 IO 错误
        """
        path = Path(path)
        with open(path, "rb") as f:
            st = os.fstat(f.fileno())
            head = f.read(HEAD_BYTES)

        return cls(
            path=path,
            size=st.st_size,
            created_ns=_creation_ns(st),
            modified_ns=st.st_mtime_ns,
            device=st.st_dev,
            inode=st.st_ino,
            head_digest=hashlib.sha256(head).hexdigest(),
        )

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def created_at(self) -> float:
        """创建时间（秒）"""
        return self.created_ns / 1_000_000_000

    @property
    def modified_at(self) -> float:
        """最后修改时间（秒）"""
        return self.modified_ns / 1_000_000_000

    @property
    def file_key(self) -> str:
        """跨轮转稳定的代理键"""
        return f"{self.device:x}-{self.inode:x}-{self.head_digest[:16]}"

    def same_identity(self, other: "LogFile") -> bool:
        return self.file_key == other.file_key

    def read_bytes(self, start: int = 0, end: int | None = None) -> bytes | None:
        """
        读取 [start, end) 字节，end 默认为快照大小

        路径已不存在或已指向其它 inode 时返回 None。
        """
        end = self.size if end is None else end
        try:
            with open(self.path, "rb") as f:
                st = os.fstat(f.fileno())
                if (st.st_dev, st.st_ino) != (self.device, self.inode):
                    return None
                if end <= start:
                    return b""
                f.seek(start)
                return f.read(end - start)
        except FileNotFoundError:
            return None

    def digest_before(self, offset: int, length: int = TAIL_BYTES) -> str | None:
        """offset 之前至多 length 字节的摘要，用于确认已上传内容未被替换"""
        if offset <= 0:
            return None
        data = self.read_bytes(max(0, offset - length), offset)
        if data is None or len(data) < min(offset, length):
            return None
        return hashlib.sha256(data).hexdigest()[:16]


def _creation_ns(st: os.stat_result) -> int:
    """平台提供 birthtime 时使用，否则退化为 mtime"""
    birth_ns = getattr(st, "st_birthtime_ns", None)
    if birth_ns is not None:
        return birth_ns
    birth = getattr(st, "st_birthtime", None)
    if birth is not None:
        return int(birth * 1_000_000_000)
    return st.st_mtime_ns


@dataclass(frozen=True)
class UnreadRange:
    """单个文件中尚未确认上传的字节区间 [start, end)"""

    file: LogFile
    start: int
    end: int
    is_active: bool

    @property
    def length(self) -> int:
        return max(0, self.end - self.start)

    @property
    def is_empty(self) -> bool:
        return self.length == 0


@dataclass(frozen=True)
class LogRecord:
    """逻辑日志记录（多行模式下可跨多个物理行）"""

    start_offset: int
    end_offset: int
    data: bytes
    line_count: int = 1
    truncated: bool = False

    @property
    def size(self) -> int:
        return self.end_offset - self.start_offset

    @property
    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace").rstrip("\r\n")


@dataclass
class FileCheckpoint:
    """单个文件的持久化检查点"""

    file_key: str
    path: str
    offset: int = 0
    records: int = 0
    file_size: int = 0
    updated_at: float = field(default_factory=time.time)
    missing_since: float | None = None
    tail_digest: str | None = None    # offset 之前 TAIL_BYTES 字节的摘要

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_key": self.file_key,
            "path": self.path,
            "offset": self.offset,
            "records": self.records,
            "file_size": self.file_size,
            "updated_at": self.updated_at,
            "missing_since": self.missing_since,
            "tail_digest": self.tail_digest,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FileCheckpoint":
        offset = int(data["offset"])
        records = int(data.get("records", 0))
        if offset < 0 or records < 0:
            raise ValueError(f"负数偏移: offset={offset}, records={records}")
        return cls(
            file_key=str(data["file_key"]),
            path=str(data["path"]),
            offset=offset,
            records=records,
            file_size=int(data.get("file_size", 0)),
            updated_at=float(data.get("updated_at", time.time())),
            missing_since=data.get("missing_since"),
            tail_digest=data.get("tail_digest"),
        )


@dataclass
class Checkpoint:
    """组件检查点（本轮工作副本）"""

    component: str
    entries: dict[str, FileCheckpoint] = field(default_factory=dict)

    def get(self, file: LogFile) -> FileCheckpoint | None:
        return self.entries.get(file.file_key)

    def offset_for(self, file: LogFile) -> int:
        entry = self.entries.get(file.file_key)
        return entry.offset if entry else 0

    def records_for(self, file: LogFile) -> int:
        entry = self.entries.get(file.file_key)
        return entry.records if entry else 0

    def __len__(self) -> int:
        return len(self.entries)


@dataclass
class RetentionState:
    """磁盘配额状态，每次回收时重新计算"""

    total_bytes: int
    ceiling: int | None
    deletion_order: list[LogFile] = field(default_factory=list)

    @property
    def over_budget(self) -> bool:
        return self.ceiling is not None and self.total_bytes > self.ceiling

    @property
    def excess_bytes(self) -> int:
        if self.ceiling is None:
            return 0
        return max(0, self.total_bytes - self.ceiling)


@dataclass
class UploadBatch:
    """交给传输层的一批记录（同一文件、连续区间）"""

    component: str
    file: LogFile
    records: list[LogRecord]
    min_log_level: LogLevel = LogLevel.INFO

    @property
    def start_offset(self) -> int:
        return self.records[0].start_offset if self.records else 0

    @property
    def end_offset(self) -> int:
        return self.records[-1].end_offset if self.records else 0

    @property
    def byte_size(self) -> int:
        return sum(r.size for r in self.records)

    def __len__(self) -> int:
        return len(self.records)
