"""
活跃文件判定

创建时间最新的文件视为正在写入的活跃文件，其余为已关闭的轮转备份。
"""

from dataclasses import dataclass, field

from loguru import logger

from logship_agent.domain.enums import FileRole
from logship_agent.domain.models import HEAD_BYTES, LogFile

# 活跃文件最小有效大小（与身份摘要的头部长度一致）
MIN_VALID_LOG_FILE_SIZE = HEAD_BYTES


def sort_key(file: LogFile) -> tuple[int, int, str]:
    """
    轮转代际排序键（旧 → 新）

    创建时间相同时，文件名较短者更新（test.log 比 test.log.1 新），
    仍相同则按路径字典序。
    """
    return (file.created_ns, -len(file.name), str(file.path))


@dataclass
class Resolution:
    """判定结果"""

    files: list[LogFile] = field(default_factory=list)       # 组成员，旧 → 新
    active: LogFile | None = None
    excluded: list[LogFile] = field(default_factory=list)    # 本轮排除的文件

    def role_of(self, file: LogFile) -> FileRole:
        if any(f.same_identity(file) for f in self.excluded):
            return FileRole.EXCLUDED
        if self.active is not None and self.active.same_identity(file):
            return FileRole.ACTIVE
        return FileRole.ROTATED


class ActiveFileResolver:
    """
    活跃文件判定器

    - 轮转备份内容已定，不论大小都纳入
    - 活跃文件小于最小有效大小时整体排除：刚创建的文件多半还没有完整记录
    """

    def __init__(self, min_valid_size: int = MIN_VALID_LOG_FILE_SIZE):
        # 小于头部长度的活跃文件每次追加都会换 file_key
        if min_valid_size < HEAD_BYTES:
            raise ValueError(
                f"最小有效大小不能小于身份头部长度: {min_valid_size} < {HEAD_BYTES}"
            )
        self._min_valid_size = min_valid_size

    @property
    def min_valid_size(self) -> int:
        return self._min_valid_size

    def resolve(self, files: list[LogFile]) -> Resolution:
        """
        判定活跃文件

        Args:
            files: 匹配到的文件（任意顺序）

        Returns:
            Resolution
        """
        ordered = sorted(files, key=sort_key)
        if not ordered:
            return Resolution()

        newest = ordered[-1]
        if newest.size < self._min_valid_size:
            logger.debug(
                f"活跃文件不足最小有效大小，本轮排除: "
                f"{newest.path} ({newest.size} < {self._min_valid_size})"
            )
            return Resolution(files=ordered[:-1], active=None, excluded=[newest])

        return Resolution(files=ordered, active=newest)
