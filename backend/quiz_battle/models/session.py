"""
会话数据模型
"""

from sqlalchemy import Column, String, DateTime
from sqlalchemy.sql import func
from quiz_battle.core.database import Base

class BattleSession(Base):
    """浏览器会话表（通过指纹长期识别同一玩家）"""
    __tablename__ = "battle_sessions"

    id = Column(String(64), primary_key=True, index=True)
    display_name = Column(String(100), nullable=False)
    fingerprint_hash = Column(String(200), nullable=False, unique=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    last_active_at = Column(DateTime(timezone=True), server_default=func.now())
