"""
轮次数据模型
"""

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from quiz_battle.core.database import Base


class Round(Base):
    """对战轮次表"""
    __tablename__ = "battle_room_rounds"
    __table_args__ = (
        UniqueConstraint("room_id", "round_no", name="uq_round_room_round_no"),
    )

    id = Column(Integer, primary_key=True, index=True)
    room_id = Column(String(64), ForeignKey("battle_rooms.id"), nullable=False, index=True)
    round_no = Column(Integer, nullable=False)           # 轮次编号，从1开始
    status = Column(String(20), nullable=False, default="pending")  # pending, active, scoreboard, closed
    question_id = Column(Integer, ForeignKey("quiz_questions.id"), nullable=True)  # 题库题目
    question_json = Column(JSON, nullable=True)          # AI生成题目的快照
    revealed_at = Column(DateTime(timezone=True), nullable=True)
    deadline_at = Column(DateTime(timezone=True), nullable=True)

    # 关系
    room = relationship("Room")
    question = relationship("QuizQuestion")
