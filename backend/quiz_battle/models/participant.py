"""
参与者数据模型
"""

from sqlalchemy import Column, Integer, String, ForeignKey, Boolean, DateTime, UniqueConstraint
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from quiz_battle.core.database import Base

class Participant(Base):
    """房间参与者表（房间+会话唯一）"""
    __tablename__ = "battle_room_participants"
    __table_args__ = (
        UniqueConstraint("room_id", "session_id", name="uq_participant_room_session"),
    )

    id = Column(Integer, primary_key=True, index=True)
    room_id = Column(String(64), ForeignKey("battle_rooms.id"), nullable=False, index=True)
    session_id = Column(String(64), ForeignKey("battle_sessions.id"), nullable=False)
    display_name = Column(String(100), nullable=False)   # 加入时的昵称快照
    is_host = Column(Boolean, nullable=False, default=False)
    connection_status = Column(String(10), nullable=False, default="online")  # online, offline
    is_ready = Column(Boolean, nullable=False, default=False)
    total_score = Column(Integer, nullable=False, default=0)
    team_id = Column(Integer, ForeignKey("battle_teams.id"), nullable=True)
    joined_at = Column(DateTime(timezone=True), server_default=func.now())
    last_seen_at = Column(DateTime(timezone=True), server_default=func.now())

    # 关系
    room = relationship("Room", back_populates="participants")
    team = relationship("Team")
