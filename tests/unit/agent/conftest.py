"""日志上传代理测试夹具"""

import pytest

from logship_agent.domain.events import EventBus


@pytest.fixture
def log_dir(tmp_path):
    """组件日志目录"""
    directory = tmp_path / "logs"
    directory.mkdir()
    return directory


@pytest.fixture
def work_dir(tmp_path):
    """工作目录（检查点存放处）"""
    directory = tmp_path / "work"
    directory.mkdir()
    return directory


@pytest.fixture
def bus():
    """独立事件总线，避免污染全局实例"""
    return EventBus()
