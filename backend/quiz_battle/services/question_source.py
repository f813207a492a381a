"""
题目来源服务

题库（预置题目）与AI生成两种提供者实现同一个 generate(params) 接口，
由 QuestionSource 按房间题型决定使用哪一个。
"""

from datetime import date
from typing import List, Optional, Tuple

from loguru import logger
from pydantic import ValidationError
from sqlalchemy.orm import Session

from quiz_battle.core import errors
from quiz_battle.models.question import QuizCategory, QuizQuestion
from quiz_battle.models.room import Room
from quiz_battle.schemas.question_schemas import (
    MAX_OPEN_PROMPT_WORDS,
    Choice,
    GeneratedMcqQuestion,
    GeneratedQuestion,
    MultipleChoiceQuestion,
    OpenEndedQuestion,
    Question,
    QuestionParams,
    Rubric,
)
from quiz_battle.services.ai_service import AIService, AIServiceError


DIFFICULTY_LEVELS = {"easy": 1, "medium": 2, "hard": 3}
DIFFICULTY_LABELS = {1: "Easy", 2: "Medium", 3: "Hard"}
MAX_MCQ_CHOICES = 4
MIN_MCQ_CHOICES = 3


class QuestionGenerationError(Exception):
    """题目生成失败"""


def difficulty_to_level(value: Optional[str]) -> Optional[int]:
    return DIFFICULTY_LEVELS.get(value) if value else None


def bank_row_to_question(row: QuizQuestion) -> OpenEndedQuestion:
    rubric = Rubric.model_validate(row.rubric_json) if isinstance(row.rubric_json, dict) else None
    return OpenEndedQuestion(
        prompt=row.prompt,
        difficulty=row.difficulty or 2,
        language=row.language or "en",
        category=row.category.name if row.category else None,
        rubric_json=rubric,
        bank_id=row.id,
    )


def normalize_mcq(item: GeneratedMcqQuestion, params: QuestionParams) -> MultipleChoiceQuestion:
    """选项去重，并保证正确选项一定在最终列表里"""
    seen = set()
    deduped: List[Choice] = []
    for choice in item.choices:
        key = (choice.id, choice.text.strip().lower())
        if key in seen:
            continue
        seen.add(key)
        deduped.append(choice)

    has_correct = any(c.id == item.correctChoiceId for c in deduped[:MAX_MCQ_CHOICES])
    choices = deduped[:MAX_MCQ_CHOICES]
    if has_correct and len(choices) >= MIN_MCQ_CHOICES:
        correct_id = item.correctChoiceId
    else:
        # 找不到正确选项时退回第一个选项，避免出现没有正确答案的题目
        correct_id = choices[0].id if choices else item.correctChoiceId

    return MultipleChoiceQuestion(
        prompt=item.prompt,
        difficulty=params.difficulty or item.difficulty,
        language=params.language,
        category=params.category_label,
        choices=choices,
        correctChoiceId=correct_id,
    )


class BankQuestionProvider:
    """题库题目提供者"""

    def __init__(self, db: Session):
        self.db = db

    def _query(self, params: QuestionParams, with_difficulty: bool) -> List[QuizQuestion]:
        query = self.db.query(QuizQuestion).filter(
            QuizQuestion.is_active.is_(True),
            QuizQuestion.language == params.language,
        )
        if with_difficulty and params.difficulty is not None:
            query = query.filter(QuizQuestion.difficulty == params.difficulty)
        return query.order_by(QuizQuestion.created_at, QuizQuestion.id).limit(params.num).all()

    async def generate(self, params: QuestionParams) -> List[Question]:
        rows = self._query(params, with_difficulty=True)
        if not rows and params.difficulty is not None:
            # 数据稀疏时去掉难度条件重试一次，保证对战能开始
            logger.info(f"题库中没有难度为 {params.difficulty} 的题目，去掉难度条件重试")
            rows = self._query(params, with_difficulty=False)
        return [bank_row_to_question(row) for row in rows]


class AIQuestionProvider:
    """AI出题提供者"""

    def __init__(self, ai_service: Optional[AIService] = None):
        self.ai_service = ai_service or AIService()

    @property
    def available(self) -> bool:
        return self.ai_service.available

    def _build_prompt(self, params: QuestionParams) -> str:
        today = date.today()
        recency_start = max(today.year - 2, 2000)
        difficulty_label = DIFFICULTY_LABELS.get(params.difficulty, "Mixed (1-3)")
        if params.difficulty:
            difficulty_rule = f'- Set "difficulty" to {params.difficulty} for every question.'
        else:
            difficulty_rule = '- Vary "difficulty" across 1 (easy), 2 (medium) and 3 (hard).'

        if params.question_type == "multiple-choice":
            item_shape = (
                '{"prompt": string (1-2 sentences, under 45 words), "difficulty": 1-3, '
                '"language": string, "category": string, '
                '"choices": [{"id": "a", "text": string}, ... exactly 4 items with ids a/b/c/d], '
                '"correctChoiceId": string}'
            )
            extra = "- Distractors must be plausible and test common misconceptions."
        else:
            item_shape = (
                f'{{"prompt": string (one sentence, under {MAX_OPEN_PROMPT_WORDS} words), "difficulty": 1-3, '
                '"language": string, "category": string, '
                '"rubric_json": {"criteria": [string], "notes": string}}'
            )
            extra = "- Prompts must be answerable in a few sentences without running code."

        return (
            f"Generate exactly {params.num} {params.question_type} quiz questions.\n"
            f"Topic: {params.category_label}\n"
            f"Language: {params.language}\n"
            f"Seed: {params.seed or 'none'}\n"
            f"Current date: {today.isoformat()}; prefer context from {recency_start}-{today.year}.\n"
            f"Preferred difficulty: {difficulty_label}.\n"
            f"Rules:\n{difficulty_rule}\n{extra}\n"
            f"- Keep prompts diverse, unambiguous and free of unsafe content.\n"
            f'Reply as {{"questions": [{item_shape}, ...]}}'
        )

    @staticmethod
    def _extract_items(data) -> list:
        if isinstance(data, dict):
            data = data.get("questions", [])
        if not isinstance(data, list):
            raise QuestionGenerationError("AI response does not contain a question list")
        return data

    async def generate(self, params: QuestionParams) -> List[Question]:
        if not self.available:
            raise QuestionGenerationError("AI question generation is not configured")

        temperature = 0.7 if params.question_type == "multiple-choice" else 0.4
        try:
            data = await self.ai_service.chat_json(self._build_prompt(params), temperature=temperature)
        except AIServiceError as e:
            raise QuestionGenerationError(str(e)) from e

        items = self._extract_items(data)[:params.num]
        questions: List[Question] = []
        try:
            for raw in items:
                if params.question_type == "multiple-choice":
                    questions.append(normalize_mcq(GeneratedMcqQuestion.model_validate(raw), params))
                else:
                    item = GeneratedQuestion.model_validate(raw)
                    questions.append(OpenEndedQuestion(
                        prompt=item.prompt,
                        difficulty=params.difficulty or item.difficulty,
                        language=params.language,
                        category=params.category_label,
                        rubric_json=item.rubric_json,
                    ))
        except ValidationError as e:
            raise QuestionGenerationError(f"AI returned malformed questions: {e.error_count()} issue(s)") from e

        logger.info(f"🤖 AI生成了 {len(questions)} 道{params.question_type}题目")
        return questions


class QuestionSource:
    """按房间题型选择题目提供者"""

    def __init__(self, bank: BankQuestionProvider, ai: AIQuestionProvider):
        self.bank = bank
        self.ai = ai

    def build_params(self, db: Session, room: Room) -> QuestionParams:
        category_name = None
        if room.category_id:
            category = db.query(QuizCategory).filter(QuizCategory.id == room.category_id).first()
            category_name = category.name if category else None
        return QuestionParams(
            topic=room.topic,
            category_name=category_name,
            category_id=room.category_id,
            language=room.language,
            num=room.num_questions,
            difficulty=difficulty_to_level(room.difficulty),
            question_type=room.question_type,
            seed=f"{room.id}",
        )

    async def fetch(self, params: QuestionParams, prefer_ai: bool) -> Tuple[List[Question], str, Optional[str]]:
        """返回 (题目列表, 来源 ai/bank, AI错误信息)"""
        ai_error: Optional[str] = None

        if params.question_type == "multiple-choice":
            # 选择题没有题库回退
            try:
                questions = await self.ai.generate(params) if prefer_ai else []
            except QuestionGenerationError as e:
                logger.error(f"❌ 选择题生成失败: {e}")
                questions = []
            if not questions:
                raise errors.QUESTION_GENERATION_FAILED
            return questions, "ai", None

        if prefer_ai and self.ai.available:
            try:
                questions = await self.ai.generate(params)
                if questions:
                    return questions, "ai", None
            except QuestionGenerationError as e:
                logger.warning(f"⚠️ AI出题失败，回退到题库: {e}")
                ai_error = str(e)

        questions = await self.bank.generate(params)
        if not questions:
            raise errors.NO_QUESTIONS_AVAILABLE
        return questions, "bank", ai_error
