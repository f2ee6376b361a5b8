"""
调度引擎模块
"""

from logship_agent.engine.scheduler import RefreshHandler, RefreshScheduler

__all__ = [
    "RefreshScheduler",
    "RefreshHandler",
]
