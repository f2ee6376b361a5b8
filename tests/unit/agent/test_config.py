"""
配置测试

代理配置（YAML + 环境变量）与组件日志配置解析。
"""

import re
from pathlib import Path

import pytest
import yaml

from logship_agent.config import (
    DEFAULT_PERIODIC_UPLOAD_INTERVAL_SEC,
    DEFAULT_SYSTEM_FILE_REGEX,
    SYSTEM_LOGS_COMPONENT_NAME,
    AgentConfig,
    init_agent_config,
    parse_component_configuration,
    parse_component_configurations,
)
from logship_agent.domain.enums import LogLevel
from logship_agent.domain.errors import ConfigurationError

KB = 1024
MB = 1024 * KB
GB = 1024 * MB


class TestComponentConfiguration:
    """组件日志配置解析测试"""

    def test_full_component_entry(self, tmp_path):
        """所有字段都解析"""
        raw = {
            "componentLogsConfigurationMap": {
                "UserComponentA": {
                    "logFileRegex": r"UserComponentA_\w+.log",
                    "logFileDirectoryPath": str(tmp_path / "custom"),
                    "multiLineStartPattern": r"\{'timestamp",
                    "minimumLogLevel": "DEBUG",
                    "diskSpaceLimit": "10",
                    "diskSpaceLimitUnit": "GB",
                    "deleteLogFileAfterCloudUpload": "true",
                },
            },
        }

        parsed = parse_component_configurations(raw, tmp_path)
        config = parsed.configs["UserComponentA"]

        assert parsed.errors == {}
        assert config.file_name_pattern.pattern == r"UserComponentA_\w+.log"
        assert config.directory_path == tmp_path / "custom"
        assert config.multiline_start_pattern.pattern == r"\{'timestamp"
        assert config.min_log_level == LogLevel.DEBUG
        assert config.disk_space_limit == 10 * GB
        assert config.delete_log_file_after_upload is True

    def test_defaults(self, tmp_path):
        """缺省字段使用默认值"""
        parsed = parse_component_configurations(
            {"componentLogsConfigurationMap": {"UserComponentA": {}}},
            tmp_path,
        )
        config = parsed.configs["UserComponentA"]

        assert config.file_name_pattern.pattern == r"^UserComponentA\w*.log"
        assert config.directory_path == Path(tmp_path)
        assert config.multiline_start_pattern is None
        assert config.min_log_level == LogLevel.INFO
        assert config.disk_space_limit is None
        assert config.delete_log_file_after_upload is False
        assert parsed.periodic_upload_interval_sec == DEFAULT_PERIODIC_UPLOAD_INTERVAL_SEC

    def test_default_regex_escapes_name(self, tmp_path):
        """默认正则对组件名转义"""
        config = parse_component_configuration("com.example.App", {}, tmp_path)

        assert config.file_name_pattern.search("com.example.App.log")
        assert not config.file_name_pattern.search("comXexampleXApp.log")

    @pytest.mark.parametrize(
        "unit, expected",
        [(None, 10 * KB), ("KB", 10 * KB), ("mb", 10 * MB), ("GB", 10 * GB)],
    )
    def test_disk_space_units(self, tmp_path, unit, expected):
        """磁盘限制单位换算，默认 KB"""
        raw = {"diskSpaceLimit": 10}
        if unit:
            raw["diskSpaceLimitUnit"] = unit

        config = parse_component_configuration("app", raw, tmp_path)

        assert config.disk_space_limit == expected

    @pytest.mark.parametrize(
        "raw, key",
        [
            ({"logFileRegex": "[unclosed"}, "logFileRegex"),
            ({"multiLineStartPattern": "(unclosed"}, "multiLineStartPattern"),
            ({"diskSpaceLimit": "-1"}, "diskSpaceLimit"),
            ({"diskSpaceLimit": "ten"}, "diskSpaceLimit"),
            ({"diskSpaceLimit": "10", "diskSpaceLimitUnit": "TB"}, "diskSpaceLimitUnit"),
        ],
    )
    def test_invalid_entry_raises(self, tmp_path, raw, key):
        """非法配置抛出配置错误"""
        with pytest.raises(ConfigurationError) as exc_info:
            parse_component_configuration("app", raw, tmp_path)

        assert exc_info.value.component == "app"
        assert exc_info.value.config_key == key

    def test_invalid_component_isolated(self, tmp_path):
        """单个组件配置非法不影响其他组件"""
        raw = {
            "componentLogsConfigurationMap": {
                "good": {},
                "bad": {"logFileRegex": "[unclosed"},
                "not_a_map": "oops",
            },
        }

        parsed = parse_component_configurations(raw, tmp_path)

        assert list(parsed.configs) == ["good"]
        assert sorted(parsed.errors) == ["bad", "not_a_map"]

    def test_invalid_level_falls_back_to_info(self, tmp_path):
        """非法日志级别使用 INFO"""
        config = parse_component_configuration("app", {"minimumLogLevel": "VERBOSE"}, tmp_path)
        assert config.min_log_level == LogLevel.INFO

    def test_warning_level_alias(self, tmp_path):
        config = parse_component_configuration("app", {"minimumLogLevel": "warning"}, tmp_path)
        assert config.min_log_level == LogLevel.WARN

    def test_list_form(self, tmp_path):
        """兼容列表格式的组件配置"""
        raw = {
            "componentLogsConfiguration": [
                {"componentName": "UserComponentB", "minimumLogLevel": "ERROR"},
                {"minimumLogLevel": "ERROR"},
            ],
        }

        parsed = parse_component_configurations(raw, tmp_path)

        assert list(parsed.configs) == ["UserComponentB"]
        assert parsed.configs["UserComponentB"].min_log_level == LogLevel.ERROR


class TestSystemConfiguration:
    """系统日志配置测试"""

    def test_system_component_when_enabled(self, tmp_path):
        """开启上传时生成系统组件"""
        raw = {
            "systemLogsConfiguration": {
                "uploadToCloudWatch": "true",
                "minimumLogLevel": "INFO",
                "diskSpaceLimit": "25",
                "diskSpaceLimitUnit": "MB",
                "deleteLogFileAfterCloudUpload": "false",
            },
        }

        parsed = parse_component_configurations(raw, tmp_path)
        system = parsed.configs[SYSTEM_LOGS_COMPONENT_NAME]

        assert system.file_name_pattern.pattern == DEFAULT_SYSTEM_FILE_REGEX
        assert system.directory_path == Path(tmp_path)
        assert system.disk_space_limit == 25 * MB
        assert system.delete_log_file_after_upload is False

    @pytest.mark.parametrize("flag", ["false", False, None])
    def test_system_component_absent_when_disabled(self, tmp_path, flag):
        """未开启上传时无系统组件"""
        raw = {"systemLogsConfiguration": {"uploadToCloudWatch": flag}}

        parsed = parse_component_configurations(raw, tmp_path)

        assert SYSTEM_LOGS_COMPONENT_NAME not in parsed.configs

    def test_system_directory_not_configurable(self, tmp_path):
        """系统日志目录固定为日志根目录"""
        raw = {
            "systemLogsConfiguration": {
                "uploadToCloudWatch": True,
                "logFileDirectoryPath": "/somewhere/else",
            },
        }

        parsed = parse_component_configurations(raw, tmp_path)

        assert parsed.configs[SYSTEM_LOGS_COMPONENT_NAME].directory_path == Path(tmp_path)


class TestUploadInterval:
    """上传间隔测试"""

    @pytest.mark.parametrize(
        "value, expected",
        [("60", 60), (120, 120), ("abc", 300), (0, 300), (-5, 300), (None, 300)],
    )
    def test_interval(self, tmp_path, value, expected):
        raw = {"periodicUploadIntervalSec": value}
        assert parse_component_configurations(raw, tmp_path).periodic_upload_interval_sec == expected


class TestAgentConfig:
    """代理配置测试"""

    @pytest.fixture(autouse=True)
    def _clean_env(self, monkeypatch):
        for key in (
            "LOGSHIP_DATA_DIR",
            "LOGSHIP_LOGS_ROOT",
            "LOGSHIP_PERIODIC_UPLOAD_INTERVAL_SEC",
            "LOGSHIP_MAX_CONCURRENT_REFRESHES",
            "LOGSHIP_UPLOAD_NOT_BEFORE",
        ):
            monkeypatch.delenv(key, raising=False)

    def test_defaults(self, tmp_path):
        config = AgentConfig(data_dir=str(tmp_path))

        assert config.work_dir == str(tmp_path / "work")
        assert config.effective_logs_root == str(tmp_path / "logs")
        assert config.periodic_upload_interval_sec == 300
        assert config.not_before is None

    def test_merge_priority(self, tmp_path, monkeypatch):
        """配置文件 < 环境变量 < 显式参数"""
        config_file = tmp_path / "agent_config.yaml"
        config_file.write_text(
            yaml.dump({
                "data_dir": str(tmp_path / "data"),
                "periodic_upload_interval_sec": 10,
                "max_concurrent_refreshes": 2,
                "max_batch_records": 50,
            }),
            encoding="utf-8",
        )
        monkeypatch.setenv("LOGSHIP_PERIODIC_UPLOAD_INTERVAL_SEC", "20")
        monkeypatch.setenv("LOGSHIP_MAX_CONCURRENT_REFRESHES", "3")

        config = init_agent_config(config_file, max_concurrent_refreshes=8)

        assert config.data_dir == str(tmp_path / "data")
        assert config.periodic_upload_interval_sec == 20
        assert config.max_concurrent_refreshes == 8
        assert config.max_batch_records == 50
        assert Path(config.work_dir).is_dir()

    def test_invalid_interval_uses_default(self, tmp_path):
        config = init_agent_config(
            tmp_path / "missing.yaml",
            data_dir=str(tmp_path),
            periodic_upload_interval_sec=0,
        )
        assert config.periodic_upload_interval_sec == DEFAULT_PERIODIC_UPLOAD_INTERVAL_SEC

    def test_not_before(self, tmp_path):
        config = AgentConfig(data_dir=str(tmp_path), upload_not_before="2024-01-01T00:00:00Z")
        assert config.not_before.year == 2024
        assert config.not_before.tzinfo is not None

    def test_save_and_load(self, tmp_path):
        """保存后重新加载"""
        path = tmp_path / "agent_config.yaml"
        original = AgentConfig(
            data_dir=str(tmp_path),
            periodic_upload_interval_sec=42,
            logs_uploader_configuration={"componentLogsConfigurationMap": {"app": {}}},
        )

        original.save_to_file(path)
        loaded = AgentConfig.load_from_file(path)

        assert loaded == original

    def test_unknown_keys_ignored(self, tmp_path):
        path = tmp_path / "agent_config.yaml"
        path.write_text(yaml.dump({"data_dir": str(tmp_path), "bogus": 1}), encoding="utf-8")

        config = AgentConfig.load_from_file(path)

        assert config.data_dir == str(tmp_path)

    @pytest.mark.asyncio
    async def test_load_async(self, tmp_path):
        path = tmp_path / "agent_config.yaml"
        path.write_text(yaml.dump({"periodic_upload_interval_sec": 15}), encoding="utf-8")

        config = await AgentConfig.load_from_file_async(path)

        assert config.periodic_upload_interval_sec == 15

    @pytest.mark.asyncio
    async def test_load_async_missing_file(self, tmp_path):
        config = await AgentConfig.load_from_file_async(tmp_path / "missing.yaml")
        assert config.periodic_upload_interval_sec == DEFAULT_PERIODIC_UPLOAD_INTERVAL_SEC


def test_pattern_objects_are_compiled(tmp_path):
    config = parse_component_configuration("app", {}, tmp_path)
    assert isinstance(config.file_name_pattern, re.Pattern)
