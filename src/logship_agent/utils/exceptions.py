"""
异常工具
"""

import re

from logship_agent.domain.errors import (
    ConfigurationError,
    LogShipError,
    TransientIOError,
    UploadError,
)


def map_exception(e: Exception) -> LogShipError:
    """将标准异常映射为 LogShipError"""
    if isinstance(e, LogShipError):
        return e

    if isinstance(e, re.error):
        return ConfigurationError(str(e))

    # ConnectionError/TimeoutError 是 OSError 子类，需先判断
    if isinstance(e, (ConnectionError, TimeoutError)):
        return UploadError(str(e), retryable=True)

    if isinstance(e, OSError):
        return TransientIOError(
            str(e),
            path=getattr(e, "filename", None),
        )

    return LogShipError(str(e))


def is_retryable(e: Exception) -> bool:
    """判断异常是否可在下一轮重试（配置错误需外部修正）"""
    mapped = map_exception(e)
    if isinstance(mapped, ConfigurationError):
        return False
    return getattr(mapped, "retryable", True)


def get_error_code(e: Exception) -> str:
    """获取错误码"""
    if isinstance(e, LogShipError):
        return e.code
    return "UNKNOWN_ERROR"
