"""
工具函数模块
"""

import random
import re
import string
import uuid
from typing import Optional
from datetime import datetime, timezone


def utcnow() -> datetime:
    """当前UTC时间（不带时区信息，与数据库中的存储保持一致）"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(timestamp: Optional[datetime]) -> Optional[datetime]:
    """统一为不带时区的UTC时间；PostgreSQL 读回的是带时区的值，SQLite 读回的不带"""
    if timestamp is not None and timestamp.tzinfo is not None:
        return timestamp.astimezone(timezone.utc).replace(tzinfo=None)
    return timestamp


def format_timestamp_with_timezone(timestamp: Optional[datetime]) -> Optional[str]:
    """格式化时间戳，确保包含UTC时区标识符"""
    if not timestamp:
        return None
    timestamp = to_utc_naive(timestamp)
    # 确保发送给前端的时间戳包含'Z'后缀，表示这是UTC时间
    return timestamp.isoformat() + 'Z'


def epoch_ms(timestamp: Optional[datetime] = None) -> int:
    """转换为毫秒时间戳（UTC）"""
    timestamp = to_utc_naive(timestamp) or utcnow()
    return int(timestamp.replace(tzinfo=timezone.utc).timestamp() * 1000)


def generate_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex}"


def generate_room_code(length: int = 6) -> str:
    """生成6位大写字母数字房间码"""
    alphabet = string.ascii_uppercase + string.digits
    return "".join(random.choice(alphabet) for _ in range(length))


def slugify(value: str) -> str:
    return re.sub(r"\s+", "-", value.strip().lower())
