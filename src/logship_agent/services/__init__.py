"""
服务模块
"""

from logship_agent.services.uploader import CycleResult, LogUploaderService

__all__ = [
    "LogUploaderService",
    "CycleResult",
]
