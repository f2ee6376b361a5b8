"""
日志文件匹配

列出目录，按文件名正则过滤，返回文件身份快照。
目录不存在或不可读返回空列表：组件可能尚未开始写日志。
"""

import os
import re
from pathlib import Path

from loguru import logger

from logship_agent.domain.models import LogFile


class FileMatcher:
    """
    文件匹配器

    只做只读的 stat 和头部读取。
    列表与 stat 之间被删除的文件视为不存在。
    """

    def match(self, directory: str | os.PathLike, pattern: re.Pattern) -> list[LogFile]:
        """
        匹配目录下的日志文件

        Args:
            directory: 日志目录
            pattern: 已编译的文件名正则（对文件名做 search）

        Returns:
            LogFile 列表（未排序）
        """
        directory = Path(directory)
        files: list[LogFile] = []

        try:
            entries = list(os.scandir(directory))
        except FileNotFoundError:
            logger.debug(f"日志目录不存在: {directory}")
            return files
        except NotADirectoryError:
            logger.warning(f"日志路径不是目录: {directory}")
            return files
        except PermissionError as e:
            logger.warning(f"日志目录不可读 {directory}: {e}")
            return files
        except OSError as e:
            logger.warning(f"扫描日志目录失败 {directory}: {e}")
            return files

        for entry in entries:
            if not pattern.search(entry.name):
                continue

            try:
                if not entry.is_file(follow_symlinks=True):
                    continue
                files.append(LogFile.from_path(entry.path))
            except FileNotFoundError:
                # 列表之后被轮转删除
                logger.debug(f"文件已消失，跳过: {entry.path}")
            except OSError as e:
                logger.warning(f"读取文件信息失败，跳过 {entry.path}: {e}")

        return files
