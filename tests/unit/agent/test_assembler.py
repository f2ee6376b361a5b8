"""
记录组装测试
"""

import os
import re

import pytest
from helpers import write_log

from logship_agent.domain.errors import TransientIOError
from logship_agent.domain.models import LogFile, UnreadRange
from logship_agent.logs.assembler import RecordAssembler

STACK_TRACE = (
    b"2024-01-01 10:00:00 ERROR boom\n"
    b"  at com.example.Foo.bar(Foo.java:10)\n"
    b"  at com.example.Main.main(Main.java:3)\n"
    b"2024-01-01 10:00:01 INFO recovered\n"
)


def _range(path, start=0, end=None, is_active=False) -> UnreadRange:
    file = LogFile.from_path(path)
    return UnreadRange(
        file=file,
        start=start,
        end=file.size if end is None else end,
        is_active=is_active,
    )


class TestSingleLineRecords:
    """单行模式测试"""

    def test_one_record_per_line(self, log_dir):
        """每行一条记录，偏移连续"""
        path = write_log(log_dir / "app.log.1", b"a\nbb\nccc\n")

        records = list(RecordAssembler().iter_records(_range(path)))

        assert [r.data for r in records] == [b"a\n", b"bb\n", b"ccc\n"]
        assert [(r.start_offset, r.end_offset) for r in records] == [(0, 2), (2, 5), (5, 9)]
        assert records[1].text == "bb"

    def test_closed_file_emits_trailing_partial_line(self, log_dir):
        """已关闭文件末尾无换行的行也输出"""
        path = write_log(log_dir / "app.log.1", b"a\nb\npart")

        records = list(RecordAssembler().iter_records(_range(path)))

        assert [r.data for r in records] == [b"a\n", b"b\n", b"part"]
        assert records[-1].end_offset == 8

    def test_active_file_withholds_partial_line(self, log_dir):
        """活跃文件末尾的残行不输出"""
        path = write_log(log_dir / "app.log", b"a\nb\npart")

        records = list(RecordAssembler().iter_records(_range(path, is_active=True)))

        assert [r.data for r in records] == [b"a\n", b"b\n"]
        assert records[-1].end_offset == 4

    def test_restart_from_checkpoint_offset(self, log_dir):
        """从已确认偏移重启得到剩余记录"""
        path = write_log(log_dir / "app.log.1", b"a\nbb\nccc\n")

        records = list(RecordAssembler().iter_records(_range(path, start=2)))

        assert [r.data for r in records] == [b"bb\n", b"ccc\n"]
        assert records[0].start_offset == 2

    def test_empty_range(self, log_dir):
        """空区间无记录"""
        path = write_log(log_dir / "app.log.1", b"a\n")

        records = list(RecordAssembler().iter_records(_range(path, start=2)))

        assert records == []

    def test_chunk_boundaries_do_not_change_records(self, log_dir):
        """分块大小不影响记录切分"""
        content = b"".join(f"line {i}\n".encode() for i in range(200))
        path = write_log(log_dir / "app.log.1", content)

        small = list(RecordAssembler(chunk_size=3).iter_records(_range(path)))
        large = list(RecordAssembler().iter_records(_range(path)))

        assert small == large
        assert len(small) == 200

    def test_oversized_line_is_split(self, log_dir):
        """超长行强制切分并标记截断"""
        path = write_log(log_dir / "app.log.1", b"x" * 24 + b"\nok\n")

        records = list(RecordAssembler(max_record_bytes=10).iter_records(_range(path)))

        assert [len(r.data) for r in records] == [10, 10, 5, 3]
        assert [r.truncated for r in records] == [True, True, True, False]
        assert b"".join(r.data for r in records) == path.read_bytes()


class TestMultiLineRecords:
    """多行模式测试"""

    def test_continuation_lines_join_record(self, log_dir):
        """非起始行追加到上一条记录"""
        path = write_log(log_dir / "app.log.1", STACK_TRACE)
        assembler = RecordAssembler(multiline_start_pattern=re.compile(r"\d{4}-\d{2}-\d{2}"))

        records = list(assembler.iter_records(_range(path)))

        assert len(records) == 2
        assert records[0].line_count == 3
        assert records[0].text.endswith("(Main.java:3)")
        assert records[1].line_count == 1
        assert records[1].start_offset == records[0].end_offset

    def test_start_pattern_is_anchored_at_line_start(self, log_dir):
        """起始正则从行首匹配"""
        content = b"2024-01-01 a\n  see 2024-01-02\n2024-01-03 b\n"
        path = write_log(log_dir / "app.log.1", content)
        assembler = RecordAssembler(multiline_start_pattern=re.compile(r"\d{4}-"))

        records = list(assembler.iter_records(_range(path)))

        assert [r.line_count for r in records] == [2, 1]

    def test_active_file_withholds_last_record(self, log_dir):
        """活跃文件的最后一条记录可能还有续行，不输出"""
        path = write_log(log_dir / "app.log", STACK_TRACE)
        assembler = RecordAssembler(multiline_start_pattern=re.compile(r"\d{4}-"))

        records = list(assembler.iter_records(_range(path, is_active=True)))

        assert len(records) == 1
        assert records[0].line_count == 3

    def test_oversized_record_is_split(self, log_dir):
        """多行记录超过上限时切分"""
        content = b"2024 start\n" + b"  continuation\n" * 10
        path = write_log(log_dir / "app.log.1", content)
        assembler = RecordAssembler(
            multiline_start_pattern=re.compile(r"\d{4}"),
            max_record_bytes=40,
        )

        records = list(assembler.iter_records(_range(path)))

        assert len(records) > 1
        assert all(r.size <= 40 for r in records)
        assert records[0].truncated
        assert b"".join(r.data for r in records) == content


class TestIdentityAndIO:
    """读取时的身份校验与 IO 错误"""

    def test_replaced_file_raises(self, log_dir):
        """路径已指向新文件时放弃"""
        path = write_log(log_dir / "app.log", b"old\n" * 400)
        rng = _range(path)

        replacement = write_log(log_dir / "app.log.new", b"new\n" * 400)
        os.replace(replacement, path)

        with pytest.raises(TransientIOError):
            list(RecordAssembler().iter_records(rng))

    def test_vanished_file_raises(self, log_dir):
        """文件消失时抛出瞬时错误"""
        path = write_log(log_dir / "app.log.1", b"a\n")
        rng = _range(path)
        path.unlink()

        with pytest.raises(TransientIOError) as exc_info:
            list(RecordAssembler().iter_records(rng))
        assert exc_info.value.operation == "read"

    def test_short_read_is_not_final(self, log_dir):
        """快照后文件被截断时，残行不当作完整记录"""
        path = write_log(log_dir / "app.log.1", b"a\nb\nc")
        rng = _range(path)
        os.truncate(path, 3)

        records = list(RecordAssembler().iter_records(rng))

        assert [r.data for r in records] == [b"a\n"]


class TestAsyncRecords:
    """异步读取测试"""

    @pytest.mark.asyncio
    async def test_async_matches_sync(self, log_dir):
        """异步读取与同步读取结果一致"""
        path = write_log(log_dir / "app.log.1", STACK_TRACE * 50)
        assembler = RecordAssembler(
            multiline_start_pattern=re.compile(r"\d{4}-"),
            chunk_size=100,
        )
        rng = _range(path)

        sync_records = list(assembler.iter_records(rng))
        async_records = [r async for r in assembler.aiter_records(rng)]

        assert async_records == sync_records
        assert len(async_records) == 100

    @pytest.mark.asyncio
    async def test_async_replaced_file_raises(self, log_dir):
        """异步读取同样校验身份"""
        path = write_log(log_dir / "app.log", b"old\n" * 400)
        rng = _range(path)
        replacement = write_log(log_dir / "app.log.new", b"new\n" * 400)
        os.replace(replacement, path)

        with pytest.raises(TransientIOError):
            async for _ in RecordAssembler().aiter_records(rng):
                pass
