"""
题库数据模型
"""

from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, ForeignKey, JSON
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from quiz_battle.core.database import Base

class QuizCategory(Base):
    """题目分类表"""
    __tablename__ = "quiz_categories"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False, unique=True)

class QuizQuestion(Base):
    """预置题库表"""
    __tablename__ = "quiz_questions"

    id = Column(Integer, primary_key=True, index=True)
    prompt = Column(Text, nullable=False)
    difficulty = Column(Integer, nullable=False, default=2)  # 1-3
    rubric_json = Column(JSON, nullable=True)                # {"criteria": [...], "notes": "..."}
    language = Column(String(5), nullable=False, default="en")
    category_id = Column(Integer, ForeignKey("quiz_categories.id"), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # 关系
    category = relationship("QuizCategory")
