"""
记录组装

把未读字节区间转换为惰性、可从任意已确认偏移重启的逻辑记录序列。

- 无多行模式：一行即一条记录
- 多行模式：匹配起始正则的行开始新记录，其余行追加到当前记录
- 活跃文件末尾的未完成记录不输出（后续可能还有续行）
"""

import os
import re
from collections.abc import AsyncIterator, Iterator

import aiofiles

from logship_agent.domain.errors import TransientIOError
from logship_agent.domain.models import LogRecord, UnreadRange

DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_MAX_RECORD_BYTES = 256 * 1024


class _RecordParser:
    """
    增量记录解析器（同步/异步读取共用）

    偏移均为文件内绝对偏移。
    """

    def __init__(
        self,
        start_offset: int,
        pattern: re.Pattern | None,
        max_record_bytes: int,
    ):
        self._pattern = pattern
        self._max = max_record_bytes

        # 尚未以换行结束的残行
        self._carry = b""
        self._carry_start = start_offset

        # 多行模式下正在累积的记录
        self._lines: list[bytes] = []
        self._record_start = start_offset
        self._record_size = 0

    def feed(self, chunk: bytes) -> Iterator[LogRecord]:
        data = self._carry + chunk
        base = self._carry_start
        pos = 0

        while True:
            nl = data.find(b"\n", pos)
            if nl < 0:
                break
            yield from self._on_line(base + pos, data[pos:nl + 1])
            pos = nl + 1

        self._carry = data[pos:]
        self._carry_start = base + pos

        # 超长残行强制切分，限制内存
        while len(self._carry) > self._max:
            piece = self._carry[:self._max]
            yield from self._flush()
            yield LogRecord(
                start_offset=self._carry_start,
                end_offset=self._carry_start + len(piece),
                data=piece,
                truncated=True,
            )
            self._carry = self._carry[self._max:]
            self._carry_start += len(piece)

    def finish(self, final: bool) -> Iterator[LogRecord]:
        """
        结束输入

        Args:
            final: 文件已关闭（轮转备份）时为 True，残行和最后一条记录都输出
        """
        if not final:
            return
        if self._carry:
            carry, start = self._carry, self._carry_start
            self._carry = b""
            self._carry_start = start + len(carry)
            yield from self._on_line(start, carry)
        yield from self._flush()

    def _on_line(self, line_start: int, line: bytes) -> Iterator[LogRecord]:
        if len(line) > self._max:
            yield from self._flush()
            for i in range(0, len(line), self._max):
                piece = line[i:i + self._max]
                yield LogRecord(
                    start_offset=line_start + i,
                    end_offset=line_start + i + len(piece),
                    data=piece,
                    truncated=True,
                )
            return

        if self._pattern is None:
            yield LogRecord(
                start_offset=line_start,
                end_offset=line_start + len(line),
                data=line,
            )
            return

        if self._lines and self._is_start_line(line):
            yield from self._flush()
        elif self._lines and self._record_size + len(line) > self._max:
            yield from self._flush(truncated=True)

        if not self._lines:
            self._record_start = line_start
        self._lines.append(line)
        self._record_size += len(line)

    def _flush(self, truncated: bool = False) -> Iterator[LogRecord]:
        if not self._lines:
            return
        data = b"".join(self._lines)
        record = LogRecord(
            start_offset=self._record_start,
            end_offset=self._record_start + len(data),
            data=data,
            line_count=len(self._lines),
            truncated=truncated,
        )
        self._lines = []
        self._record_start = record.end_offset
        self._record_size = 0
        yield record

    def _is_start_line(self, line: bytes) -> bool:
        text = line.decode("utf-8", errors="replace").rstrip("\r\n")
        return self._pattern.match(text) is not None


class RecordAssembler:
    """
    记录组装器

    分块读取 [start, end)，不一次性物化整个文件。
    所有输出记录的 end_offset 都落在完整记录边界上，可直接用于推进检查点。
    """

    def __init__(
        self,
        multiline_start_pattern: re.Pattern | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_record_bytes: int = DEFAULT_MAX_RECORD_BYTES,
    ):
        if chunk_size <= 0 or max_record_bytes <= 0:
            raise ValueError("chunk_size 和 max_record_bytes 必须为正数")
        self._pattern = multiline_start_pattern
        self._chunk_size = chunk_size
        self._max_record_bytes = max_record_bytes

    @property
    def multiline_start_pattern(self) -> re.Pattern | None:
        return self._pattern

    def iter_records(self, rng: UnreadRange) -> Iterator[LogRecord]:
        """
        迭代区间内的完整记录

        Raises:
            TransientIOError: 文件消失或已被替换
        """
        if rng.is_empty:
            return

        parser = _RecordParser(rng.start, self._pattern, self._max_record_bytes)
        remaining = rng.length

        try:
            with open(rng.file.path, "rb") as f:
                self._check_identity(rng, os.fstat(f.fileno()))
                f.seek(rng.start)
                while remaining > 0:
                    chunk = f.read(min(self._chunk_size, remaining))
                    if not chunk:
                        break
                    remaining -= len(chunk)
                    yield from parser.feed(chunk)
        except FileNotFoundError as e:
            raise TransientIOError(
                f"读取时文件已消失: {rng.file.path}",
                path=str(rng.file.path),
                operation="read",
            ) from e
        except PermissionError as e:
            raise TransientIOError(
                f"读取文件无权限: {rng.file.path}",
                path=str(rng.file.path),
                operation="read",
            ) from e

        # 短读说明文件在快照之后被截断，不能当作已关闭
        yield from parser.finish(final=not rng.is_active and remaining == 0)

    async def aiter_records(self, rng: UnreadRange) -> AsyncIterator[LogRecord]:
        """iter_records 的异步版本"""
        if rng.is_empty:
            return

        parser = _RecordParser(rng.start, self._pattern, self._max_record_bytes)
        remaining = rng.length

        try:
            async with aiofiles.open(rng.file.path, "rb") as f:
                self._check_identity(rng, os.fstat(f.fileno()))
                await f.seek(rng.start)
                while remaining > 0:
                    chunk = await f.read(min(self._chunk_size, remaining))
                    if not chunk:
                        break
                    remaining -= len(chunk)
                    for record in parser.feed(chunk):
                        yield record
        except (FileNotFoundError, PermissionError) as e:
            raise TransientIOError(
                f"读取文件失败: {rng.file.path}: {e}",
                path=str(rng.file.path),
                operation="read",
            ) from e

        for record in parser.finish(final=not rng.is_active and remaining == 0):
            yield record

    @staticmethod
    def _check_identity(rng: UnreadRange, st: os.stat_result) -> None:
        """路径已指向新文件（快照后发生轮转）时放弃本轮"""
        if st.st_dev != rng.file.device or st.st_ino != rng.file.inode:
            raise TransientIOError(
                f"文件已被轮转替换: {rng.file.path}",
                path=str(rng.file.path),
                operation="read",
            )
