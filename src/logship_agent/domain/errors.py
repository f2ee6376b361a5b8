"""
日志上传域错误定义
"""

from typing import Any


class LogShipError(Exception):
    """日志上传基础错误"""

    def __init__(
        self,
        message: str,
        code: str = "LOGSHIP_ERROR",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(LogShipError):
    """配置错误（正则非法、路径非法等），组件需等待配置修正"""

    def __init__(
        self,
        message: str,
        component: str | None = None,
        config_key: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code="CONFIGURATION_ERROR", details=details)
        self.component = component
        self.config_key = config_key


class TransientIOError(LogShipError):
    """瞬时 IO 错误（文件读取中途消失、权限竞争），下一轮重试"""

    def __init__(
        self,
        message: str,
        path: str | None = None,
        operation: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code="TRANSIENT_IO_ERROR", details=details)
        self.path = path
        self.operation = operation
        self.retryable = True


class CheckpointCorruption(LogShipError):
    """检查点记录损坏，恢复为 offset 0"""

    def __init__(
        self,
        message: str,
        component: str | None = None,
        record_path: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code="CHECKPOINT_CORRUPTION", details=details)
        self.component = component
        self.record_path = record_path


class RetentionOverBudget(LogShipError):
    """删除全部可删文件后仍超出磁盘配额"""

    def __init__(
        self,
        message: str,
        component: str | None = None,
        total_bytes: int = 0,
        ceiling: int = 0,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code="RETENTION_OVER_BUDGET", details=details)
        self.component = component
        self.total_bytes = total_bytes
        self.ceiling = ceiling


class UploadError(LogShipError):
    """上传失败（传输层返回失败或抛出异常）"""

    def __init__(
        self,
        message: str,
        component: str | None = None,
        retryable: bool = True,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code="UPLOAD_ERROR", details=details)
        self.component = component
        self.retryable = retryable
