"""
对战相关的请求数据模式
"""

from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict, Field

class SessionCreate(BaseModel):
    """创建/刷新会话的请求模式"""
    display_name: str = Field(..., min_length=1, max_length=100, description="显示名称")
    fingerprint_hash: Optional[str] = Field(default=None, max_length=200, description="浏览器指纹")

class RoomCreate(BaseModel):
    """创建房间的请求模式"""
    model_config = ConfigDict(populate_by_name=True)

    topic: Optional[str] = Field(default=None, max_length=200)
    category_id: Optional[int] = Field(default=None, alias="categoryId")
    language: str = Field(default="en", pattern=r"^[a-z]{2}$", description="ISO 639-1 语言代码")
    num_questions: int = Field(default=10, alias="numQuestions", ge=1, le=20)
    round_time_sec: int = Field(default=30, alias="roundTimeSec", ge=5, le=600)
    capacity: Optional[int] = Field(default=None, ge=2, le=100)
    question_type: Literal["open-ended", "multiple-choice"] = Field(default="open-ended", alias="questionType")
    difficulty: Optional[Literal["easy", "medium", "hard"]] = None
    battle_mode: Literal["individual", "team"] = Field(default="individual", alias="battleMode")

class JoinRoom(BaseModel):
    """加入房间的请求模式"""
    model_config = ConfigDict(populate_by_name=True)

    display_name: Optional[str] = Field(default=None, alias="displayName", min_length=1, max_length=100)

class ReadyUpdate(BaseModel):
    """准备状态"""
    ready: bool

class PresenceUpdate(BaseModel):
    """在线状态"""
    status: Literal["online", "offline"]

class StartBattle(BaseModel):
    """开始对战"""
    model_config = ConfigDict(populate_by_name=True)

    use_ai: Optional[bool] = Field(default=None, alias="useAI")

class AnswerSubmit(BaseModel):
    """提交答案（开放题填写 answer_text，选择题填写 choice_id）"""
    answer_text: Optional[str] = Field(default=None, min_length=1, max_length=5000)
    choice_id: Optional[str] = Field(default=None, min_length=1, max_length=100)
