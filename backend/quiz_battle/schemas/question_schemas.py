"""
题目相关的数据模式

题目按类型区分为开放题和选择题两种变体，通过 type 字段判别。
"""

from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator

MAX_OPEN_PROMPT_WORDS = 25

class Rubric(BaseModel):
    """开放题评分参考"""
    criteria: Optional[List[str]] = None
    notes: Optional[str] = None

class Choice(BaseModel):
    """选择题选项"""
    id: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1)

class OpenEndedQuestion(BaseModel):
    """开放题"""
    type: Literal["open-ended"] = "open-ended"
    prompt: str
    difficulty: int = Field(default=2, ge=1, le=3)
    language: str = "en"
    category: Optional[str] = None
    rubric_json: Optional[Rubric] = None
    bank_id: Optional[int] = None  # 来自题库时的题目ID

class MultipleChoiceQuestion(BaseModel):
    """选择题"""
    type: Literal["multiple-choice"] = "multiple-choice"
    prompt: str
    difficulty: int = Field(default=2, ge=1, le=3)
    language: str = "en"
    category: Optional[str] = None
    choices: List[Choice]
    correctChoiceId: str

    def choice_text(self, choice_id: Optional[str]) -> Optional[str]:
        for choice in self.choices:
            if choice.id == choice_id:
                return choice.text
        return None

Question = Annotated[Union[OpenEndedQuestion, MultipleChoiceQuestion], Field(discriminator="type")]

question_adapter = TypeAdapter(Question)

# ---- AI生成结果的校验模式 ----

class GeneratedQuestion(BaseModel):
    """AI生成的开放题"""
    prompt: str = Field(..., min_length=10)
    difficulty: int = Field(default=2, ge=1, le=3)
    rubric_json: Optional[Rubric] = None
    language: str = Field(default="en", min_length=2, max_length=5)
    category: str = Field(default="general", min_length=1)

    @field_validator("prompt")
    @classmethod
    def prompt_is_concise(cls, value: str) -> str:
        if len(value.split()) > MAX_OPEN_PROMPT_WORDS:
            raise ValueError(f"Prompt must be concise (<= {MAX_OPEN_PROMPT_WORDS} words)")
        return value

class GeneratedMcqQuestion(BaseModel):
    """AI生成的选择题"""
    prompt: str = Field(..., min_length=10)
    difficulty: int = Field(default=2, ge=1, le=3)
    language: str = Field(default="en", min_length=2, max_length=5)
    category: str = Field(default="general", min_length=1)
    choices: List[Choice] = Field(..., min_length=3, max_length=6)
    correctChoiceId: str = Field(..., min_length=1)

class QuestionParams(BaseModel):
    """出题参数"""
    topic: Optional[str] = None
    category_name: Optional[str] = None
    category_id: Optional[int] = None
    language: str = "en"
    num: int = Field(default=10, ge=1)
    difficulty: Optional[int] = Field(default=None, ge=1, le=3)
    question_type: Literal["open-ended", "multiple-choice"] = "open-ended"
    seed: Optional[str] = None

    @property
    def category_label(self) -> str:
        return self.topic or self.category_name or (str(self.category_id) if self.category_id else None) or "general"
