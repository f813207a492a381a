"""
对战房间数据模型
"""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from quiz_battle.core.database import Base

class Room(Base):
    """对战房间表"""
    __tablename__ = "battle_rooms"

    id = Column(String(64), primary_key=True, index=True)
    room_code = Column(String(12), nullable=False, unique=True, index=True)  # 可分享的短房间码
    host_session_id = Column(String(64), ForeignKey("battle_sessions.id"), nullable=False)
    topic = Column(String(200), nullable=True)
    category_id = Column(Integer, ForeignKey("quiz_categories.id"), nullable=True)
    language = Column(String(5), nullable=False, default="en")
    num_questions = Column(Integer, nullable=False, default=10)
    round_time_sec = Column(Integer, nullable=False, default=30)
    capacity = Column(Integer, nullable=True)
    question_type = Column(String(20), nullable=False, default="open-ended")  # open-ended, multiple-choice
    difficulty = Column(String(10), nullable=True)                            # easy, medium, hard
    battle_mode = Column(String(20), nullable=False, default="individual")    # individual, team
    status = Column(String(20), nullable=False, default="waiting")            # waiting, active, finished
    start_time = Column(DateTime(timezone=True), nullable=True)
    finished_reason = Column(String(50), nullable=True)
    winner_session_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # 关系
    participants = relationship("Participant", back_populates="room", order_by="Participant.id")
    teams = relationship("Team", back_populates="room", order_by="Team.team_order")
