"""
工具模块
"""

from logship_agent.utils.exceptions import get_error_code, is_retryable, map_exception
from logship_agent.utils.time import EPOCH, now_iso, parse_iso, to_timestamp

__all__ = [
    "map_exception",
    "is_retryable",
    "get_error_code",
    "EPOCH",
    "now_iso",
    "parse_iso",
    "to_timestamp",
]
