"""
作答评分服务
"""

import hashlib
import math
import re
from collections import OrderedDict
from typing import List, Optional

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from quiz_battle.services.ai_service import AIService, AIServiceError


MCQ_BASE_SCORE = 60
MCQ_MAX_TIME_BONUS = 40
MAX_CACHE_SIZE = 1000


DIFFICULTY_MULTIPLIERS = {1: 1.0, 2: 1.1, 3: 1.2}

CATEGORY_KEYWORDS = {
    "tech": ["implementation", "architecture", "performance", "scalability", "security", "best practices"],
    "career": ["leadership", "collaboration", "problem-solving", "growth", "experience", "teamwork"],
    "fun": ["creativity", "personality", "storytelling", "uniqueness", "engagement", "authenticity"],
}


UNKNOWN_PATTERNS = [
    "gak tau", "ga tau", "nggak tau", "ngga tau", "tidak tahu", "gak tahu", "entahlah",
    "idk", "i don't know", "dont know", "no idea", "not sure", "dunno", "skip", "pass",
]


def score_mcq(correct: bool, time_ms: int, round_time_sec: Optional[int]) -> int:
    """选择题得分：答对60分基础分 + 最多40分速度奖励，答错0分"""
    if not correct:
        return 0
    t_max = max(1, (round_time_sec or 60) * 1000)
    elapsed = min(max(0, time_ms), t_max)
    bonus = math.floor((t_max - elapsed) / t_max * MCQ_MAX_TIME_BONUS)
    return max(0, min(100, MCQ_BASE_SCORE + bonus))


class ScoreResult(BaseModel):
    """开放题评分结果"""
    score: int = Field(..., ge=0, le=100)
    feedback: str = ""
    strengths: List[str] = []
    improvements: List[str] = []
    category: str = "average"  # excellent, good, average, poor
    source: str = "ai"         # ai, rule


def is_low_effort(answer: str) -> bool:
    """明确表示不知道，或者几乎是空白的回答"""
    trimmed = answer.strip()
    lower = trimmed.lower()
    if any(lower == p or p in lower for p in UNKNOWN_PATTERNS):
        return True
    very_short = len(trimmed.split()) < 2
    meaningless = len(trimmed) < 3 or re.fullmatch(r"[\s\-_.!?]*", trimmed) is not None
    return very_short and meaningless


def _zero_result(language: str, source: str) -> ScoreResult:
    if language == "id":
        return ScoreResult(
            score=0,
            feedback="Belum kejawab nih. Coba tulis jawaban singkat yang langsung ke poinnya ya.",
            improvements=["Jawab lebih spesifik ke pertanyaan", "Tambahkan 1-2 contoh kalau bisa"],
            category="poor",
            source=source,
        )
    return ScoreResult(
        score=0,
        feedback="No worries, try a short, direct answer to the question next time.",
        improvements=["Answer more specifically", "Add 1-2 examples if possible"],
        category="poor",
        source=source,
    )


def rule_based_score(answer: str, category: str, difficulty: int, language: str = "en") -> ScoreResult:
    """AI不可用时的规则评分"""
    if is_low_effort(answer):
        return _zero_result(language, "rule")

    lower = answer.lower()
    word_count = len(answer.split())
    sentences = len([s for s in re.split(r"[.!?]+", answer) if s.strip()])
    keywords = CATEGORY_KEYWORDS.get((category or "").lower(), CATEGORY_KEYWORDS["tech"])
    keyword_matches = sum(1 for k in keywords if k in lower)

    score = 25
    if word_count >= 100:
        score += 25
    elif word_count >= 50:
        score += 20
    elif word_count >= 30:
        score += 15
    elif word_count >= 15:
        score += 10
    elif word_count >= 3:
        score += 5
    elif word_count >= 1:
        score += 2

    score += min(20, keyword_matches * 5)
    if re.search(r"for example|such as|like|including", answer, re.IGNORECASE):
        score += 8
    if re.search(r"first|second|additionally|furthermore|however|therefore", answer, re.IGNORECASE):
        score += 8
    if word_count >= 20 and sentences >= 2:
        score += 9

    if keyword_matches == 0 and word_count < 3:
        score = min(score, 30)

    score = min(100, score + (max(1, difficulty) - 1) * 5)

    if score >= 85:
        bucket, feedback = "excellent", "Awesome! Clear, complete, and on point. Keep it up!"
    elif score >= 75:
        bucket, feedback = "good", "Nice! Solid understanding, add a bit more detail or examples."
    elif score >= 60:
        bucket, feedback = "average", "Not bad! The basics are there, add some detail and examples."
    else:
        bucket, feedback = "poor", "Not quite there. Be more direct and add detail plus examples."

    return ScoreResult(score=score, feedback=feedback, category=bucket, source="rule")


class AnswerScorer:
    """开放题评分器：优先AI评分，失败时回退到规则评分；相同输入返回相同分数"""

    def __init__(self, ai_service: Optional[AIService] = None, max_cache_size: int = MAX_CACHE_SIZE):
        self.ai_service = ai_service or AIService()
        self.max_cache_size = max_cache_size
        self._cache: "OrderedDict[str, ScoreResult]" = OrderedDict()

    @staticmethod
    def cache_key(question: str, answer: str, category: str, difficulty: int, language: str) -> str:
        content = f"{question}|{answer}|{category}|{difficulty}|{language}"
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    def _remember(self, key: str, result: ScoreResult) -> None:
        self._cache[key] = result
        while len(self._cache) > self.max_cache_size:
            self._cache.popitem(last=False)

    def _build_prompt(self, question: str, answer: str, category: str, difficulty: int,
                      language: str, rubric: Optional[dict]) -> str:
        return (
            "Score this quiz answer objectively from 0 to 100. Do not inflate for style.\n"
            "If the answer says 'I don't know', is off-topic or under 5 words, score 0-10.\n"
            "Identical answers must receive identical scores.\n"
            f"Question: {question}\n"
            f"Category: {category} (difficulty {difficulty})\n"
            f"Language for feedback: {language}\n"
            f"Rubric: {rubric or 'none'}\n"
            f"Answer: {answer}\n"
            'Reply as {"score": int, "feedback": string (2-4 friendly sentences), '
            '"strengths": [string], "improvements": [string], '
            '"category": "excellent"|"good"|"average"|"poor"}'
        )

    async def evaluate(self, question: str, answer: str, category: Optional[str] = None,
                       difficulty: int = 2, language: str = "en", rubric: Optional[dict] = None) -> ScoreResult:
        category = category or "tech"
        key = self.cache_key(question, answer, category, difficulty, language)
        if key in self._cache:
            return self._cache[key]

        if is_low_effort(answer):
            return _zero_result(language, "rule")

        if not self.ai_service.available:
            return rule_based_score(answer, category, difficulty, language)

        try:
            data = await self.ai_service.chat_json(
                self._build_prompt(question, answer, category, difficulty, language, rubric),
                temperature=0.1,
                max_tokens=600,
            )
            result = ScoreResult.model_validate({**data, "source": "ai"})
        except (AIServiceError, ValidationError, TypeError) as e:
            logger.warning(f"⚠️ AI评分失败，使用规则评分: {e}")
            return rule_based_score(answer, category, difficulty, language)

        multiplier = DIFFICULTY_MULTIPLIERS.get(difficulty, 1.0)
        result.score = min(100, max(0, round(result.score * multiplier)))
        self._remember(key, result)
        return result

    def clear_cache(self) -> None:
        self._cache.clear()

    def cache_stats(self) -> dict:
        return {"size": len(self._cache), "maxSize": self.max_cache_size}


_scorer: Optional[AnswerScorer] = None


def get_answer_scorer() -> AnswerScorer:
    """全局评分器（共享评分缓存）"""
    global _scorer
    if _scorer is None:
        _scorer = AnswerScorer()
    return _scorer
