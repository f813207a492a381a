"""
队伍数据模型
"""

from sqlalchemy import Column, Integer, String, ForeignKey
from sqlalchemy.orm import relationship
from quiz_battle.core.database import Base

class Team(Base):
    """队伍表（团队模式下每个房间固定红蓝两队）"""
    __tablename__ = "battle_teams"

    id = Column(Integer, primary_key=True, index=True)
    room_id = Column(String(64), ForeignKey("battle_rooms.id"), nullable=False, index=True)
    team_name = Column(String(50), nullable=False)
    team_color = Column(String(10), nullable=False)
    team_order = Column(Integer, nullable=False, default=0)
    total_score = Column(Integer, nullable=False, default=0)

    # 关系
    room = relationship("Room", back_populates="teams")
