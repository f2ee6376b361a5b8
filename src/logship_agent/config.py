"""
日志上传代理配置模块

提供代理配置管理（YAML 文件 + 环境变量），
以及把配置方下发的原始映射解析为组件日志配置快照。
"""

import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import aiofiles
import yaml
from dotenv import load_dotenv
from loguru import logger

from logship_agent.domain.enums import DiskSpaceUnit, LogLevel
from logship_agent.domain.errors import ConfigurationError
from logship_agent.domain.models import ComponentLogConfiguration
from logship_agent.utils.time import parse_iso

# 运行时数据根目录
DATA_ROOT = Path(os.getenv("LOGSHIP_ROOT") or Path.cwd() / "data" / "logship")

# 代理配置文件路径
AGENT_CONFIG_FILE = DATA_ROOT / "agent_config.yaml"

# 配置方下发的键名
PERIODIC_UPLOAD_INTERVAL_KEY = "periodicUploadIntervalSec"
SYSTEM_LOGS_CONFIG_KEY = "systemLogsConfiguration"
COMPONENT_LOGS_CONFIG_MAP_KEY = "componentLogsConfigurationMap"
COMPONENT_LOGS_CONFIG_LIST_KEY = "componentLogsConfiguration"
COMPONENT_NAME_KEY = "componentName"
UPLOAD_TO_CLOUD_KEY = "uploadToCloudWatch"
MIN_LOG_LEVEL_KEY = "minimumLogLevel"
DISK_SPACE_LIMIT_KEY = "diskSpaceLimit"
DISK_SPACE_LIMIT_UNIT_KEY = "diskSpaceLimitUnit"
DELETE_AFTER_UPLOAD_KEY = "deleteLogFileAfterCloudUpload"
FILE_REGEX_KEY = "logFileRegex"
FILE_DIRECTORY_PATH_KEY = "logFileDirectoryPath"
MULTILINE_PATTERN_KEY = "multiLineStartPattern"

SYSTEM_LOGS_COMPONENT_NAME = "System"
DEFAULT_SYSTEM_FILE_REGEX = r"^logship\w*\.log"
DEFAULT_PERIODIC_UPLOAD_INTERVAL_SEC = 300
DEFAULT_DISK_SPACE_UNIT = DiskSpaceUnit.KB

_ENV_LOADED = False


def _load_env_file() -> None:
    """加载 .env 环境变量（仅一次）"""
    global _ENV_LOADED
    if _ENV_LOADED:
        return
    _ENV_LOADED = True

    env_path = Path.cwd() / ".env"
    if env_path.exists():
        load_dotenv(env_path, override=False)


def _get_env_value(*keys: str) -> str | None:
    """按优先顺序读取环境变量"""
    for key in keys:
        value = os.getenv(key)
        if value is not None and value != "":
            return value
    return None


def _get_env_int(*keys: str) -> int | None:
    value = _get_env_value(*keys)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _load_env_config() -> dict[str, Any]:
    """读取环境变量配置"""
    env_config: dict[str, Any] = {}

    data_dir = _get_env_value("LOGSHIP_DATA_DIR")
    if data_dir:
        env_config["data_dir"] = data_dir

    logs_root = _get_env_value("LOGSHIP_LOGS_ROOT")
    if logs_root:
        env_config["logs_root"] = logs_root

    interval = _get_env_int("LOGSHIP_PERIODIC_UPLOAD_INTERVAL_SEC")
    if interval is not None:
        env_config["periodic_upload_interval_sec"] = interval

    max_concurrent = _get_env_int("LOGSHIP_MAX_CONCURRENT_REFRESHES")
    if max_concurrent is not None:
        env_config["max_concurrent_refreshes"] = max_concurrent

    not_before = _get_env_value("LOGSHIP_UPLOAD_NOT_BEFORE")
    if not_before:
        env_config["upload_not_before"] = not_before

    return env_config


def _normalize_path(path_value: str) -> str:
    """将路径标准化为绝对路径（相对路径基于当前目录）"""
    expanded = os.path.expandvars(os.path.expanduser(str(path_value))).strip()
    if not expanded:
        return expanded
    return str(Path(expanded).absolute())


@dataclass
class AgentConfig:
    """
    代理配置类
    """

    # 存储配置
    data_dir: str = field(default_factory=lambda: str(DATA_ROOT))
    logs_root: str = ""  # 组件默认日志目录（空=data_dir/logs）

    # 调度配置
    periodic_upload_interval_sec: int = DEFAULT_PERIODIC_UPLOAD_INTERVAL_SEC
    max_concurrent_refreshes: int = 4  # 并行刷新的组件数上限

    # 检查点配置
    checkpoint_grace_seconds: int = 3600  # 文件消失后检查点保留时间

    # 首次运行时跳过更早的历史日志（ISO 时间，空=不过滤）
    upload_not_before: str = ""

    # 批量配置
    max_batch_records: int = 10000
    max_batch_bytes: int = 1024 * 1024
    max_record_bytes: int = 256 * 1024

    # 配置方下发的原始组件日志配置
    logs_uploader_configuration: dict[str, Any] = field(default_factory=dict)

    @property
    def work_dir(self) -> str:
        """工作目录（检查点存放处）"""
        return os.path.join(self.data_dir, "work")

    @property
    def effective_logs_root(self) -> str:
        """组件默认日志目录"""
        return self.logs_root or os.path.join(self.data_dir, "logs")

    @property
    def not_before(self) -> datetime | None:
        return parse_iso(self.upload_not_before)

    def ensure_directories(self):
        """确保存储目录存在"""
        os.makedirs(self.work_dir, exist_ok=True)

    def to_dict(self) -> dict[str, Any]:
        """转换为字典"""
        return {
            "data_dir": self.data_dir,
            "logs_root": self.logs_root,
            "periodic_upload_interval_sec": self.periodic_upload_interval_sec,
            "max_concurrent_refreshes": self.max_concurrent_refreshes,
            "checkpoint_grace_seconds": self.checkpoint_grace_seconds,
            "upload_not_before": self.upload_not_before,
            "max_batch_records": self.max_batch_records,
            "max_batch_bytes": self.max_batch_bytes,
            "max_record_bytes": self.max_record_bytes,
            "logs_uploader_configuration": self.logs_uploader_configuration,
        }

    def save_to_file(self, path: Path | None = None) -> None:
        """保存配置到文件"""
        path = path or AGENT_CONFIG_FILE
        os.makedirs(path.parent, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(self.to_dict(), f, allow_unicode=True, default_flow_style=False)

    @classmethod
    def load_from_file(cls, path: Path | None = None) -> "AgentConfig":
        """从文件加载配置（同步版本，用于启动时）"""
        path = path or AGENT_CONFIG_FILE
        if not path.exists():
            return cls()

        try:
            with open(path, encoding="utf-8") as f:
                config_data = yaml.safe_load(f) or {}
            return cls._from_mapping(config_data)
        except Exception as e:
            logger.warning("加载配置文件失败: {}", e)
            return cls()

    @classmethod
    async def load_from_file_async(cls, path: Path | None = None) -> "AgentConfig":
        """从文件加载配置（异步版本，用于运行时重载）"""
        path = path or AGENT_CONFIG_FILE
        if not path.exists():
            return cls()

        try:
            async with aiofiles.open(path, encoding="utf-8") as f:
                content = await f.read()
            config_data = yaml.safe_load(content) or {}
            return cls._from_mapping(config_data)
        except Exception as e:
            logger.warning("异步加载配置文件失败: {}", e)
            return cls()

    @classmethod
    def _from_mapping(cls, data: dict[str, Any]) -> "AgentConfig":
        known = cls.__dataclass_fields__.keys()
        unknown = [k for k in data if k not in known]
        if unknown:
            logger.warning("忽略未知配置项: {}", unknown)
        return cls(**{k: v for k, v in data.items() if k in known and v is not None})


def init_agent_config(config_file: Path | None = None, **kwargs) -> AgentConfig:
    """
    初始化代理配置

    合并优先级：配置文件 < 环境变量 < 显式参数

    Args:
        config_file: 配置文件路径
        **kwargs: 显式覆盖的配置项

    Returns:
        初始化后的代理配置
    """
    _load_env_file()

    path = config_file or AGENT_CONFIG_FILE
    file_config: dict[str, Any] = {}
    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                file_config = yaml.safe_load(f) or {}
            logger.info("已加载配置文件: {}", path)
        except Exception as e:
            logger.warning("加载配置文件失败: {}", e)

    merged_config = {**file_config, **_load_env_config(), **kwargs}

    for key in ("data_dir", "logs_root"):
        if merged_config.get(key):
            merged_config[key] = _normalize_path(str(merged_config[key]))

    config = AgentConfig._from_mapping(merged_config)
    if config.periodic_upload_interval_sec <= 0:
        logger.warning(
            "上传间隔非法，使用默认值: {} -> {}",
            config.periodic_upload_interval_sec,
            DEFAULT_PERIODIC_UPLOAD_INTERVAL_SEC,
        )
        config.periodic_upload_interval_sec = DEFAULT_PERIODIC_UPLOAD_INTERVAL_SEC

    config.ensure_directories()
    return config


# ==================== 组件日志配置解析 ====================


@dataclass
class ParsedComponentConfigs:
    """组件配置解析结果"""
    configs: dict[str, ComponentLogConfiguration] = field(default_factory=dict)
    errors: dict[str, ConfigurationError] = field(default_factory=dict)
    periodic_upload_interval_sec: int = DEFAULT_PERIODIC_UPLOAD_INTERVAL_SEC


def parse_component_configurations(
    raw: dict[str, Any] | None,
    logs_root: str | os.PathLike,
) -> ParsedComponentConfigs:
    """
    解析配置方下发的原始映射

    单个组件配置非法只影响该组件，记录在 errors 中。

    Args:
        raw: 原始配置映射
        logs_root: 组件默认日志目录

    Returns:
        ParsedComponentConfigs
    """
    raw = raw or {}
    result = ParsedComponentConfigs(
        periodic_upload_interval_sec=_parse_interval(raw.get(PERIODIC_UPLOAD_INTERVAL_KEY)),
    )

    system_raw = raw.get(SYSTEM_LOGS_CONFIG_KEY) or {}
    if _parse_bool(system_raw.get(UPLOAD_TO_CLOUD_KEY), default=False):
        _collect(result, SYSTEM_LOGS_COMPONENT_NAME, system_raw, logs_root, system=True)

    for name, component_raw in _iter_component_entries(raw):
        _collect(result, name, component_raw, logs_root, system=False)

    if result.errors:
        logger.warning(f"组件日志配置存在错误: {sorted(result.errors)}")
    return result


def parse_component_configuration(
    name: str,
    raw: dict[str, Any],
    logs_root: str | os.PathLike,
    system: bool = False,
) -> ComponentLogConfiguration:
    """
    解析单个组件配置

    Raises:
        ConfigurationError: 正则非法、磁盘限制非法
    """
    if system:
        default_regex = DEFAULT_SYSTEM_FILE_REGEX
    else:
        default_regex = "^" + re.escape(name) + r"\w*.log"

    file_regex = raw.get(FILE_REGEX_KEY) or default_regex
    multiline_raw = raw.get(MULTILINE_PATTERN_KEY)

    directory = raw.get(FILE_DIRECTORY_PATH_KEY) if not system else None
    directory_path = Path(directory) if directory else Path(logs_root)

    return ComponentLogConfiguration(
        name=name,
        directory_path=directory_path,
        file_name_pattern=_compile(name, FILE_REGEX_KEY, file_regex),
        multiline_start_pattern=(
            _compile(name, MULTILINE_PATTERN_KEY, multiline_raw) if multiline_raw else None
        ),
        min_log_level=_parse_level(name, raw.get(MIN_LOG_LEVEL_KEY)),
        disk_space_limit=_parse_disk_space_limit(
            name,
            raw.get(DISK_SPACE_LIMIT_KEY),
            raw.get(DISK_SPACE_LIMIT_UNIT_KEY),
        ),
        delete_log_file_after_upload=_parse_bool(raw.get(DELETE_AFTER_UPLOAD_KEY), default=False),
    )


def _collect(
    result: ParsedComponentConfigs,
    name: str,
    raw: Any,
    logs_root: str | os.PathLike,
    system: bool,
) -> None:
    if not isinstance(raw, dict):
        result.errors[name] = ConfigurationError(
            f"组件配置必须是映射: {name}", component=name
        )
        return
    try:
        result.configs[name] = parse_component_configuration(name, raw, logs_root, system=system)
    except ConfigurationError as e:
        result.errors[name] = e


def _iter_component_entries(raw: dict[str, Any]):
    """兼容映射和列表两种组件配置格式"""
    config_map = raw.get(COMPONENT_LOGS_CONFIG_MAP_KEY) or {}
    if isinstance(config_map, dict):
        yield from config_map.items()

    config_list = raw.get(COMPONENT_LOGS_CONFIG_LIST_KEY) or []
    if isinstance(config_list, list):
        for item in config_list:
            if isinstance(item, dict) and item.get(COMPONENT_NAME_KEY):
                yield item[COMPONENT_NAME_KEY], item


def _compile(name: str, key: str, pattern: Any) -> re.Pattern:
    try:
        return re.compile(str(pattern))
    except re.error as e:
        raise ConfigurationError(
            f"正则非法 {key}={pattern!r}: {e}",
            component=name,
            config_key=key,
        ) from e


def _parse_level(name: str, value: Any) -> LogLevel:
    if value is None or value == "":
        return LogLevel.INFO
    try:
        return LogLevel.parse(value)
    except ValueError:
        logger.warning(f"[{name}] 日志级别非法，使用 INFO: {value!r}")
        return LogLevel.INFO


def _parse_disk_space_limit(name: str, value: Any, unit: Any) -> int | None:
    if value is None or value == "":
        return None

    try:
        limit = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"磁盘空间限制非法: {value!r}",
            component=name,
            config_key=DISK_SPACE_LIMIT_KEY,
        ) from e
    if limit < 0:
        raise ConfigurationError(
            f"磁盘空间限制不能为负数: {limit}",
            component=name,
            config_key=DISK_SPACE_LIMIT_KEY,
        )

    try:
        disk_unit = DiskSpaceUnit(str(unit).upper()) if unit else DEFAULT_DISK_SPACE_UNIT
    except ValueError as e:
        raise ConfigurationError(
            f"磁盘空间单位非法: {unit!r}",
            component=name,
            config_key=DISK_SPACE_LIMIT_UNIT_KEY,
        ) from e

    return limit * disk_unit.multiplier


def _parse_interval(value: Any) -> int:
    if value is None or value == "":
        return DEFAULT_PERIODIC_UPLOAD_INTERVAL_SEC
    try:
        interval = int(value)
    except (TypeError, ValueError):
        interval = 0
    if interval <= 0:
        logger.warning(f"上传间隔非法，使用默认值: {value!r}")
        return DEFAULT_PERIODIC_UPLOAD_INTERVAL_SEC
    return interval


def _parse_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")
