"""
API依赖注入

测试中通过 app.dependency_overrides 替换数据库、事件推送和题目来源。
"""

from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from quiz_battle.core.config import settings
from quiz_battle.core.database import get_db
from quiz_battle.services.ai_service import AIService
from quiz_battle.services.presence_service import PresenceService
from quiz_battle.services.question_source import AIQuestionProvider, BankQuestionProvider, QuestionSource
from quiz_battle.services.room_service import RoomService
from quiz_battle.services.round_service import RoundStateMachine
from quiz_battle.services.scoreboard_service import ScoreboardService
from quiz_battle.services.scoring_service import AnswerScorer, get_answer_scorer
from quiz_battle.services.session_service import SessionService
from quiz_battle.services.websocket_service import WebSocketManager, get_websocket_manager


def get_session_id(request: Request) -> Optional[str]:
    """从Cookie中读取对战会话ID"""
    return request.cookies.get(settings.SESSION_COOKIE_NAME)


def get_publisher() -> WebSocketManager:
    return get_websocket_manager()


def get_scorer() -> AnswerScorer:
    return get_answer_scorer()


def get_question_source(db: Session = Depends(get_db)) -> QuestionSource:
    return QuestionSource(BankQuestionProvider(db), AIQuestionProvider(AIService()))


def get_session_service(db: Session = Depends(get_db)) -> SessionService:
    return SessionService(db)


def get_room_service(
    db: Session = Depends(get_db),
    publisher: WebSocketManager = Depends(get_publisher),
) -> RoomService:
    return RoomService(db, publisher)


def get_scoreboard_service(db: Session = Depends(get_db)) -> ScoreboardService:
    return ScoreboardService(db)


def get_round_machine(
    db: Session = Depends(get_db),
    publisher: WebSocketManager = Depends(get_publisher),
    question_source: QuestionSource = Depends(get_question_source),
    scorer: AnswerScorer = Depends(get_scorer),
) -> RoundStateMachine:
    return RoundStateMachine(db, publisher=publisher, question_source=question_source, scorer=scorer)


def get_presence_service(
    db: Session = Depends(get_db),
    publisher: WebSocketManager = Depends(get_publisher),
    machine: RoundStateMachine = Depends(get_round_machine),
) -> PresenceService:
    return PresenceService(db, publisher=publisher, machine=machine)
