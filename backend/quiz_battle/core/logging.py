"""
日志配置
"""

import sys
from loguru import logger

from quiz_battle.core.config import settings


def setup_logging(level: str = None) -> None:
    """重置loguru输出到stderr，并按配置设置日志级别"""
    logger.remove()
    logger.add(
        sys.stderr,
        level=(level or settings.LOG_LEVEL).upper(),
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | {name}:{line} - {message}",
        backtrace=False,
        diagnose=settings.is_development,
    )
