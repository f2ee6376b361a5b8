"""
时间工具
"""

from datetime import UTC, datetime

# 不做时间过滤时使用的起点
EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def now_iso() -> str:
    """当前时间 ISO 格式"""
    return datetime.now(UTC).isoformat()


def parse_iso(s: str) -> datetime | None:
    """解析 ISO 格式时间"""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None


def to_timestamp(value: datetime | float | int | None) -> float | None:
    """
    将时间点统一为 epoch 秒

    None 或不晚于 EPOCH 的时间返回 None（表示不过滤）。
    无时区的 datetime 按 UTC 处理。
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        if value <= EPOCH:
            return None
        return value.timestamp()
    ts = float(value)
    return ts if ts > 0 else None
