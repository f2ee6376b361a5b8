"""
LogShip Agent 日志上传代理

负责把组件写在本地磁盘上的日志可靠地交给上传方：
- 日志文件组与轮转代际识别
- 多行记录组装
- 崩溃安全的上传检查点
- 按组件的磁盘配额回收
"""

__version__ = "0.1.0"

# 导出子模块
from logship_agent import domain, engine, logs, services, transport

__all__ = [
    "__version__",
    # 子模块
    "domain",
    "logs",
    "engine",
    "transport",
    "services",
]
