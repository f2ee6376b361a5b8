"""
传输层模块
"""

from logship_agent.transport.base import UploadTransport

__all__ = [
    "UploadTransport",
]
