"""
日志文件组与轮转检查点引擎

提供：
- 文件匹配与轮转代际排序
- 活跃文件判定
- 多行记录组装
- 检查点持久化与轮转对账
- 磁盘配额回收
"""

from logship_agent.logs.assembler import RecordAssembler
from logship_agent.logs.checkpoint import CheckpointStore
from logship_agent.logs.group import LogFileGroup
from logship_agent.logs.matcher import FileMatcher
from logship_agent.logs.resolver import (
    MIN_VALID_LOG_FILE_SIZE,
    ActiveFileResolver,
    Resolution,
)
from logship_agent.logs.retention import ReclaimResult, RetentionEnforcer

__all__ = [
    # Matcher
    "FileMatcher",
    # Resolver
    "ActiveFileResolver",
    "Resolution",
    "MIN_VALID_LOG_FILE_SIZE",
    # Assembler
    "RecordAssembler",
    # Checkpoint
    "CheckpointStore",
    # Group
    "LogFileGroup",
    # Retention
    "RetentionEnforcer",
    "ReclaimResult",
]
