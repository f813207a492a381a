"""
题目来源测试
"""

import json

import httpx
import pytest

from quiz_battle.core.errors import BattleError
from quiz_battle.models.question import QuizQuestion
from quiz_battle.schemas.question_schemas import (
    Choice,
    GeneratedMcqQuestion,
    MultipleChoiceQuestion,
    OpenEndedQuestion,
    QuestionParams,
)
from quiz_battle.services.ai_service import AIService
from quiz_battle.services.question_source import (
    AIQuestionProvider,
    BankQuestionProvider,
    QuestionGenerationError,
    QuestionSource,
    difficulty_to_level,
    normalize_mcq,
)
from tests.conftest import offline_ai


def ai_provider(payload) -> AIQuestionProvider:
    content = payload if isinstance(payload, str) else json.dumps(payload)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})

    return AIQuestionProvider(AIService(
        api_url="http://ai.test/v1",
        model_id="quiz-model",
        api_key="",
        transport=httpx.MockTransport(handler),
    ))


def open_item(i: int) -> dict:
    return {
        "prompt": f"Why does caching layer number {i} improve latency?",
        "difficulty": 2,
        "rubric_json": {"criteria": ["latency"], "notes": "Mentions locality"},
    }


def mcq_item(**overrides) -> dict:
    item = {
        "prompt": "Which protocol secures HTTP traffic?",
        "difficulty": 1,
        "choices": [
            {"id": "a", "text": "FTP"},
            {"id": "b", "text": "TLS"},
            {"id": "c", "text": "SMTP"},
            {"id": "d", "text": "DNS"},
        ],
        "correctChoiceId": "b",
    }
    item.update(overrides)
    return item


class TestNormalizeMcq:
    """选择题规范化"""

    def test_keeps_valid_question(self):
        params = QuestionParams(topic="web", language="en", num=1, question_type="multiple-choice")

        question = normalize_mcq(GeneratedMcqQuestion.model_validate(mcq_item()), params)

        assert question.correctChoiceId == "b"
        assert question.category == "web"
        assert question.choice_text("b") == "TLS"

    def test_removes_duplicate_choices(self):
        choices = [
            {"id": "a", "text": "FTP"},
            {"id": "a", "text": "ftp "},
            {"id": "b", "text": "TLS"},
            {"id": "c", "text": "SMTP"},
        ]
        params = QuestionParams(num=1, question_type="multiple-choice")

        question = normalize_mcq(GeneratedMcqQuestion.model_validate(mcq_item(choices=choices)), params)

        assert [c.id for c in question.choices] == ["a", "b", "c"]

    def test_trims_to_four_choices_and_repairs_missing_correct(self):
        choices = [{"id": k, "text": f"Option {k}"} for k in "abcde"]
        params = QuestionParams(num=1, question_type="multiple-choice")

        question = normalize_mcq(
            GeneratedMcqQuestion.model_validate(mcq_item(choices=choices, correctChoiceId="e")), params
        )

        assert len(question.choices) == 4
        assert question.correctChoiceId == "a"

    def test_room_difficulty_wins(self):
        params = QuestionParams(num=1, difficulty=3, question_type="multiple-choice")

        question = normalize_mcq(GeneratedMcqQuestion.model_validate(mcq_item(difficulty=1)), params)

        assert question.difficulty == 3


class TestBankQuestionProvider:
    """题库出题"""

    @pytest.mark.asyncio
    async def test_filters_by_language_and_limit(self, db, seed_bank):
        db.add(QuizQuestion(prompt="Jelaskan konsep cache.", difficulty=2, language="id", category_id=seed_bank.id))
        db.commit()

        questions = await BankQuestionProvider(db).generate(QuestionParams(language="en", num=3))

        assert len(questions) == 3
        assert all(isinstance(q, OpenEndedQuestion) for q in questions)
        assert all(q.language == "en" for q in questions)
        assert questions[0].bank_id is not None
        assert questions[0].category == "tech"
        assert questions[0].rubric_json.notes == "Reference answer 1"

    @pytest.mark.asyncio
    async def test_retries_without_difficulty(self, db, seed_bank):
        questions = await BankQuestionProvider(db).generate(QuestionParams(language="en", num=2, difficulty=3))

        assert len(questions) == 2
        assert all(q.difficulty == 2 for q in questions)

    @pytest.mark.asyncio
    async def test_inactive_questions_are_skipped(self, db, seed_bank):
        db.query(QuizQuestion).update({"is_active": False})
        db.commit()

        assert await BankQuestionProvider(db).generate(QuestionParams(num=5)) == []


class TestAIQuestionProvider:
    """AI出题"""

    @pytest.mark.asyncio
    async def test_parses_open_ended_questions(self):
        provider = ai_provider({"questions": [open_item(1), open_item(2), open_item(3)]})

        questions = await provider.generate(QuestionParams(topic="caching", language="en", num=2))

        assert len(questions) == 2
        assert questions[0].category == "caching"
        assert questions[0].rubric_json.notes == "Mentions locality"
        assert questions[0].bank_id is None

    @pytest.mark.asyncio
    async def test_parses_fenced_mcq_list(self):
        provider = ai_provider("```json\n" + json.dumps([mcq_item()]) + "\n```")

        questions = await provider.generate(QuestionParams(num=1, question_type="multiple-choice"))

        assert isinstance(questions[0], MultipleChoiceQuestion)
        assert questions[0].correctChoiceId == "b"

    @pytest.mark.asyncio
    async def test_malformed_items_raise(self):
        provider = ai_provider({"questions": [{"prompt": "short"}]})

        with pytest.raises(QuestionGenerationError):
            await provider.generate(QuestionParams(num=1))

    @pytest.mark.asyncio
    async def test_non_json_reply_raises(self):
        provider = ai_provider("Sorry, I cannot help with that.")

        with pytest.raises(QuestionGenerationError):
            await provider.generate(QuestionParams(num=1))

    @pytest.mark.asyncio
    async def test_unconfigured_provider_raises(self):
        with pytest.raises(QuestionGenerationError):
            await AIQuestionProvider(offline_ai()).generate(QuestionParams(num=1))


class TestQuestionSource:
    """出题策略"""

    @pytest.mark.asyncio
    async def test_open_ended_prefers_ai(self, db, seed_bank):
        source = QuestionSource(BankQuestionProvider(db), ai_provider({"questions": [open_item(1)]}))

        questions, origin, ai_error = await source.fetch(QuestionParams(num=1), prefer_ai=True)

        assert origin == "ai"
        assert ai_error is None
        assert questions[0].bank_id is None

    @pytest.mark.asyncio
    async def test_open_ended_falls_back_to_bank_with_error(self, db, seed_bank):
        source = QuestionSource(BankQuestionProvider(db), ai_provider("not json"))

        questions, origin, ai_error = await source.fetch(QuestionParams(num=2), prefer_ai=True)

        assert origin == "bank"
        assert len(questions) == 2
        assert ai_error

    @pytest.mark.asyncio
    async def test_open_ended_without_ai_preference_uses_bank(self, db, seed_bank):
        source = QuestionSource(BankQuestionProvider(db), ai_provider({"questions": [open_item(1)]}))

        _, origin, ai_error = await source.fetch(QuestionParams(num=1), prefer_ai=False)

        assert origin == "bank"
        assert ai_error is None

    @pytest.mark.asyncio
    async def test_empty_bank_raises(self, db):
        source = QuestionSource(BankQuestionProvider(db), AIQuestionProvider(offline_ai()))

        with pytest.raises(BattleError) as exc_info:
            await source.fetch(QuestionParams(num=1), prefer_ai=True)

        assert exc_info.value.code == "NO_QUESTIONS_AVAILABLE"

    @pytest.mark.asyncio
    async def test_mcq_has_no_bank_fallback(self, db, seed_bank):
        source = QuestionSource(BankQuestionProvider(db), ai_provider("not json"))

        with pytest.raises(BattleError) as exc_info:
            await source.fetch(QuestionParams(num=1, question_type="multiple-choice"), prefer_ai=True)

        assert exc_info.value.code == "QUESTION_GENERATION_FAILED"
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_mcq_from_ai(self, db):
        source = QuestionSource(BankQuestionProvider(db), ai_provider({"questions": [mcq_item()]}))

        questions, origin, _ = await source.fetch(
            QuestionParams(num=1, question_type="multiple-choice"), prefer_ai=True
        )

        assert origin == "ai"
        assert questions[0].choices[1] == Choice(id="b", text="TLS")


def test_difficulty_levels():
    assert difficulty_to_level("easy") == 1
    assert difficulty_to_level("hard") == 3
    assert difficulty_to_level(None) is None
