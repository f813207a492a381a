"""
计分板服务

每轮计分板、累计排名（平分时按总用时升序）、团队排名，以及轮次结束事件里的题目/作答详情。
"""

from typing import Dict, Iterable, List, Optional

from loguru import logger
from pydantic import ValidationError
from sqlalchemy.orm import Session

from quiz_battle.models.answer import Answer
from quiz_battle.models.participant import Participant
from quiz_battle.models.room import Room
from quiz_battle.models.round_model import Round
from quiz_battle.models.team import Team
from quiz_battle.schemas.question_schemas import MultipleChoiceQuestion, Question, question_adapter
from quiz_battle.services.question_source import bank_row_to_question


UNAVAILABLE_PROMPT = "This question's prompt is unavailable."
SCORED_ROUND_STATUSES = ("scoreboard", "closed")


def build_round_scoreboard(participants: Iterable[Participant], answers: Iterable[Answer]) -> List[dict]:
    """本轮计分板：每位参与者的本轮得分和累计得分，按累计得分降序"""
    round_scores = {a.session_id: a.score_final or 0 for a in answers}
    scoreboard = []
    for participant in participants:
        round_score = round_scores.get(participant.session_id, 0)
        scoreboard.append({
            "participantId": participant.id,
            "sessionId": participant.session_id,
            "displayName": participant.display_name or "Player",
            "roundScore": round_score,
            # 还没有累计分记录时按本轮得分展示
            "totalScore": participant.total_score or round_score,
        })
    scoreboard.sort(key=lambda entry: entry["totalScore"] or 0, reverse=True)
    return scoreboard


def build_final_standings(participants: Iterable[Participant]) -> List[dict]:
    standings = [
        {
            "participantId": p.id,
            "sessionId": p.session_id,
            "displayName": p.display_name,
            "totalScore": p.total_score or 0,
            "isHost": bool(p.is_host),
        }
        for p in participants
    ]
    standings.sort(key=lambda entry: entry["totalScore"], reverse=True)
    return standings


def rank_cumulative(entries: List[dict]) -> List[dict]:
    """累计排名：得分降序，同分时总用时升序（用时为0的排在前面）"""
    return sorted(entries, key=lambda e: (-(e.get("totalScore") or 0), e.get("timeTotalMs") or 0))


def answer_progress(db: Session, room_id: str, round_obj: Round) -> dict:
    """统计当前轮次在线玩家的作答进度"""
    participants = (
        db.query(Participant)
        .filter(Participant.room_id == room_id)
        .order_by(Participant.display_name)
        .all()
    )
    answered = {
        row.session_id
        for row in db.query(Answer.session_id).filter(Answer.round_id == round_obj.id).all()
    }
    online = [p for p in participants if p.connection_status != "offline"]
    total_answered = sum(1 for p in online if p.session_id in answered)
    return {
        "participants": participants,
        "answered": answered,
        "totalAnswered": total_answered,
        "totalParticipants": len(online),
        "allAnswered": len(online) > 0 and total_answered == len(online),
    }


def resolve_question(db: Session, round_obj: Round) -> Optional[Question]:
    """解析轮次对应的题目：优先使用题目快照，其次题库题目"""
    if round_obj.question_json:
        try:
            return question_adapter.validate_python(round_obj.question_json)
        except ValidationError as e:
            logger.warning(f"⚠️ 轮次 {round_obj.id} 的题目快照无法解析: {e.error_count()} 个错误")
            return None
    if round_obj.question_id and round_obj.question is not None:
        return bank_row_to_question(round_obj.question)
    return None


def public_question_summary(question: Optional[Question]) -> Optional[dict]:
    """发给作答中玩家的题目摘要，不包含正确选项"""
    if question is None:
        return None
    summary = {
        "type": question.type,
        "prompt": question.prompt,
        "difficulty": question.difficulty,
        "language": question.language,
        "category": question.category,
    }
    if isinstance(question, MultipleChoiceQuestion):
        summary["choices"] = [{"id": c.id, "text": c.text} for c in question.choices]
    return summary


def _question_detail(question: Optional[Question]) -> dict:
    if question is None:
        return {"prompt": UNAVAILABLE_PROMPT, "type": "unknown"}

    rubric_notes = question.rubric_json.notes if getattr(question, "rubric_json", None) else None
    if isinstance(question, MultipleChoiceQuestion):
        return {
            "prompt": question.prompt,
            "type": "multiple-choice",
            "correctAnswer": question.choice_text(question.correctChoiceId),
            "choices": [
                {"id": c.id, "text": c.text, "isCorrect": c.id == question.correctChoiceId}
                for c in question.choices
            ],
            "rubricNotes": rubric_notes,
        }
    return {
        "prompt": question.prompt,
        "type": "open-ended",
        "correctAnswer": rubric_notes,
        "rubricNotes": rubric_notes,
    }


def build_scoreboard_details(db: Session, round_obj: Round) -> dict:
    """轮次结束事件的附加信息：题目详情与每个会话的作答"""
    answers = db.query(Answer).filter(Answer.round_id == round_obj.id).order_by(Answer.id).all()
    return {
        "question": _question_detail(resolve_question(db, round_obj)),
        "answers": [
            {
                "sessionId": a.session_id,
                "answerText": a.answer_text,
                "choiceId": a.choice_id,
                "isCorrect": a.is_correct if isinstance(a.is_correct, bool) else None,
            }
            for a in answers
        ],
    }


class ScoreboardService:
    """累计计分板查询"""

    def __init__(self, db: Session):
        self.db = db

    def _time_by_session(self, room_id: str) -> Dict[str, int]:
        totals: Dict[str, int] = {}
        for session_id, time_ms in self.db.query(Answer.session_id, Answer.time_ms).filter(Answer.room_id == room_id):
            totals[session_id] = totals.get(session_id, 0) + (time_ms or 0)
        return totals

    def team_standings(self, room: Room, participants: List[Participant]) -> List[dict]:
        """团队得分 = 队员在已结算轮次中的作答得分之和（与参与者累计分字段无关）"""
        teams = self.db.query(Team).filter(Team.room_id == room.id).order_by(Team.team_order).all()
        if not teams:
            return []

        rows = (
            self.db.query(Answer.session_id, Answer.score_final)
            .join(Round, Round.id == Answer.round_id)
            .filter(Answer.room_id == room.id, Round.status.in_(SCORED_ROUND_STATUSES))
            .all()
        )
        score_by_session: Dict[str, int] = {}
        for session_id, score in rows:
            score_by_session[session_id] = score_by_session.get(session_id, 0) + (score or 0)

        standings = []
        for team in teams:
            members = [p for p in participants if p.team_id == team.id]
            standings.append({
                "teamId": team.id,
                "teamName": team.team_name,
                "teamColor": team.team_color,
                "teamOrder": team.team_order,
                "totalScore": sum(score_by_session.get(p.session_id, 0) for p in members),
                "memberCount": len(members),
                "members": [p.id for p in members],
            })
        standings.sort(key=lambda t: (-t["totalScore"], t["teamOrder"]))
        return standings

    async def get_scoreboard(self, room: Room) -> dict:
        participants = self.db.query(Participant).filter(Participant.room_id == room.id).all()
        times = self._time_by_session(room.id)

        board = rank_cumulative([
            {
                "participantId": p.id,
                "sessionId": p.session_id,
                "displayName": p.display_name,
                "totalScore": p.total_score or 0,
                "timeTotalMs": times.get(p.session_id, 0),
                "teamId": p.team_id,
            }
            for p in participants
        ])

        result = {"scoreboard": board}
        if room.battle_mode == "team":
            result["teams"] = self.team_standings(room, participants)
        return result
