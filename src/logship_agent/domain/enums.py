"""
日志上传域枚举定义
"""

from enum import Enum


class LogLevel(str, Enum):
    """日志级别（由上传方用于过滤）"""

    TRACE = "TRACE"
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"

    @classmethod
    def parse(cls, value: str) -> "LogLevel":
        """解析级别字符串，WARNING 视为 WARN"""
        normalized = str(value).strip().upper()
        if normalized == "WARNING":
            normalized = "WARN"
        return cls(normalized)


class DiskSpaceUnit(str, Enum):
    """磁盘空间限制单位"""

    KB = "KB"
    MB = "MB"
    GB = "GB"

    @property
    def multiplier(self) -> int:
        return {
            DiskSpaceUnit.KB: 1024,
            DiskSpaceUnit.MB: 1024 ** 2,
            DiskSpaceUnit.GB: 1024 ** 3,
        }[self]


class FileRole(str, Enum):
    """文件在轮转组中的角色"""

    ACTIVE = "active"            # 正在写入
    ROTATED = "rotated"          # 已轮转关闭，内容不再变化
    EXCLUDED = "excluded"        # 活跃文件但不足最小有效大小，本轮排除
