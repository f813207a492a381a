"""
应用配置模块
"""

from typing import List, Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """应用设置"""

    # 基础设置
    APP_NAME: str = "Quiz Battle"
    VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, production, test
    LOG_LEVEL: str = "INFO"

    # 服务器设置
    HOST: str = "0.0.0.0"
    PORT: int = 8001
    CORS_ORIGINS: List[str] = ["http://localhost:3000"]

    # 数据库设置
    DATABASE_URL: str = "sqlite:///./quiz_battle.db"

    # AI出题/评分服务（OpenAI兼容接口）
    AI_API_URL: Optional[str] = None
    AI_API_KEY: Optional[str] = None
    AI_MODEL_ID: Optional[str] = None
    AI_TIMEOUT: int = 60

    # 对战设置
    BATTLE_USE_AI: bool = True          # 开放题房间优先使用AI出题
    BATTLE_AUTO_ADVANCE: bool = True    # 所有在线玩家作答后自动结束本轮
    ANSWER_GRACE_MS: int = 3000         # 容忍客户端时钟漂移
    PRESENCE_OFFLINE_THRESHOLD_SEC: int = 12

    # 会话Cookie
    SESSION_COOKIE_NAME: str = "battle_session_id"
    SESSION_COOKIE_MAX_AGE: int = 60 * 60 * 24 * 30  # 30天

    @property
    def ai_enabled(self) -> bool:
        return bool(self.AI_API_URL and self.AI_MODEL_ID)

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    class Config:
        env_file = ".env"
        case_sensitive = True

# 全局设置实例
settings = Settings()
