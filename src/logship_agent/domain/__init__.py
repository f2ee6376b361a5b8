"""
日志上传域层

包含枚举、错误、模型和领域事件。
"""

from logship_agent.domain.enums import DiskSpaceUnit, FileRole, LogLevel
from logship_agent.domain.errors import (
    CheckpointCorruption,
    ConfigurationError,
    LogShipError,
    RetentionOverBudget,
    TransientIOError,
    UploadError,
)
from logship_agent.domain.events import (
    BatchAcknowledged,
    CheckpointCorrupted,
    CheckpointReset,
    ComponentRefreshFailed,
    DomainEvent,
    EventBus,
    LogFilesDeleted,
    RetentionBudgetExceeded,
    event_bus,
)
from logship_agent.domain.models import (
    HEAD_BYTES,
    Checkpoint,
    ComponentLogConfiguration,
    FileCheckpoint,
    LogFile,
    LogRecord,
    RetentionState,
    UnreadRange,
    UploadBatch,
)

__all__ = [
    # 枚举
    "DiskSpaceUnit",
    "FileRole",
    "LogLevel",
    # 错误
    "LogShipError",
    "ConfigurationError",
    "TransientIOError",
    "CheckpointCorruption",
    "RetentionOverBudget",
    "UploadError",
    # 事件
    "DomainEvent",
    "EventBus",
    "event_bus",
    "CheckpointCorrupted",
    "CheckpointReset",
    "BatchAcknowledged",
    "LogFilesDeleted",
    "RetentionBudgetExceeded",
    "ComponentRefreshFailed",
    # 模型
    "HEAD_BYTES",
    "ComponentLogConfiguration",
    "LogFile",
    "UnreadRange",
    "LogRecord",
    "FileCheckpoint",
    "Checkpoint",
    "RetentionState",
    "UploadBatch",
]
