"""
作答数据模型
"""

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Text, Boolean, UniqueConstraint
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from quiz_battle.core.database import Base

class Answer(Base):
    """作答表（每个会话每轮只能作答一次，写入后不可修改）"""
    __tablename__ = "battle_room_answers"
    __table_args__ = (
        UniqueConstraint("round_id", "session_id", name="uq_answer_round_session"),
    )

    id = Column(Integer, primary_key=True, index=True)
    room_id = Column(String(64), ForeignKey("battle_rooms.id"), nullable=False, index=True)
    round_id = Column(Integer, ForeignKey("battle_room_rounds.id"), nullable=False, index=True)
    session_id = Column(String(64), ForeignKey("battle_sessions.id"), nullable=False)
    answer_text = Column(Text, nullable=True)
    choice_id = Column(String(100), nullable=True)
    is_correct = Column(Boolean, nullable=True)
    time_ms = Column(Integer, nullable=True)       # 从揭晓到作答经过的毫秒数
    score_ai = Column(Integer, nullable=True)
    score_rule = Column(Integer, nullable=True)
    score_final = Column(Integer, nullable=False, default=0)
    feedback = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # 关系
    round = relationship("Round")
