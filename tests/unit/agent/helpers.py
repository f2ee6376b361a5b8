"""日志上传代理测试辅助函数"""

import os
import re
import time
from pathlib import Path

from logship_agent.domain.events import EventBus
from logship_agent.domain.models import ComponentLogConfiguration


def write_log(
    path: Path,
    content: bytes | None = None,
    size: int | None = None,
    mtime: float | None = None,
) -> Path:
    """
    写入测试日志文件

    content 为空时按 size 生成带换行的文本行（每个文件头部唯一）。
    """
    if content is None:
        size = size or 0
        header = f"# {path.name} {time.time_ns()}\n".encode()
        body = bytearray(header)
        line = b"0123456789abcdefghijklmnopqrstuvwxyz\n"
        while len(body) < size:
            body.extend(line)
        content = bytes(body[:size])
        if content and not content.endswith(b"\n"):
            content = content[:-1] + b"\n"

    path.write_bytes(content)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def write_sparse(path: Path, size: int, mtime: float | None = None) -> Path:
    """写入大文件（头部一行 + 稀疏填充）"""
    with open(path, "wb") as f:
        f.write(f"# {path.name} {time.time_ns()}\n".encode())
        f.truncate(size)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def make_config(
    directory: Path,
    name: str = "app",
    pattern: str = r"^app\.log\w*",
    **kwargs,
) -> ComponentLogConfiguration:
    return ComponentLogConfiguration(
        name=name,
        directory_path=Path(directory),
        file_name_pattern=re.compile(pattern),
        **kwargs,
    )


class EventRecorder:
    """记录事件总线上发布的事件"""

    def __init__(self, bus: EventBus, *event_types: type):
        self.events: list = []
        for event_type in event_types:
            bus.subscribe(event_type, self.events.append)

    def of(self, event_type: type) -> list:
        return [e for e in self.events if isinstance(e, event_type)]


