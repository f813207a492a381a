"""
测试公共夹具

- 内存SQLite（StaticPool，所有会话共用同一个连接）
- 记录事件而不推送的发布器
- 不调用外部AI的题目来源与评分器
"""

from typing import List, Optional

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from quiz_battle.api.deps import get_publisher, get_question_source, get_scorer
from quiz_battle.core.config import settings
from quiz_battle.core.database import Base, get_db, import_models
from quiz_battle.models.question import QuizCategory, QuizQuestion
from quiz_battle.schemas.question_schemas import Choice, MultipleChoiceQuestion, Rubric
from quiz_battle.services.ai_service import AIService
from quiz_battle.services.question_source import AIQuestionProvider, BankQuestionProvider, QuestionSource
from quiz_battle.services.scoring_service import AnswerScorer
from quiz_battle.services.websocket_service import WebSocketManager


# ============================================================================
# TEST DOUBLES
# ============================================================================

class RecordingPublisher(WebSocketManager):
    """记录所有发布的事件"""

    def __init__(self):
        super().__init__()
        self.events = []

    async def publish_battle_event(self, room_id, event, payload=None) -> bool:
        self.events.append((room_id, event, payload or {}))
        return True

    def names(self, room_id: Optional[str] = None) -> List[str]:
        return [e for r, e, _ in self.events if room_id is None or r == room_id]

    def payloads(self, event: str) -> List[dict]:
        return [p for _, e, p in self.events if e == event]


class StaticQuestionSource(QuestionSource):
    """返回固定题目的题目来源"""

    def __init__(self, questions, source: str = "ai", ai_error: Optional[str] = None):
        super().__init__(bank=None, ai=None)
        self.questions = questions
        self.source = source
        self.ai_error = ai_error
        self.calls = []

    async def fetch(self, params, prefer_ai):
        self.calls.append((params, prefer_ai))
        return self.questions[:params.num], self.source, self.ai_error


def offline_ai() -> AIService:
    """未配置的AI服务（available 为 False）"""
    return AIService(api_url="", model_id="", api_key="")


def mcq_questions(count: int = 3) -> List[MultipleChoiceQuestion]:
    return [
        MultipleChoiceQuestion(
            prompt=f"Which planet is number {i} from the sun?",
            difficulty=2,
            language="en",
            category="science",
            choices=[Choice(id=c, text=f"Planet {c.upper()}{i}") for c in "abcd"],
            correctChoiceId="b",
        )
        for i in range(1, count + 1)
    ]


class Player:
    """带会话Cookie的测试客户端"""

    def __init__(self, client: TestClient, name: str):
        self.client = client
        self.name = name
        response = client.post("/api/sessions", json={"display_name": name, "fingerprint_hash": f"fp-{name}"})
        assert response.status_code == 200, response.text
        self.session_id = response.json()["sessionId"]

    def post(self, path: str, json=None):
        return self.client.post(path, json=json if json is not None else {})

    def get(self, path: str):
        return self.client.get(path)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture(autouse=True)
def battle_settings(monkeypatch):
    """测试默认关闭AI出题和自动结束本轮，需要时在用例中单独打开"""
    monkeypatch.setattr(settings, "BATTLE_USE_AI", False)
    monkeypatch.setattr(settings, "BATTLE_AUTO_ADVANCE", False)
    monkeypatch.setattr(settings, "ENVIRONMENT", "test")


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    import_models()
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def scorer():
    return AnswerScorer(offline_ai())


@pytest.fixture
def app_overrides(session_factory, publisher, scorer):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    def override_question_source(db: Session = Depends(get_db)):
        return QuestionSource(BankQuestionProvider(db), AIQuestionProvider(offline_ai()))

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_publisher] = lambda: publisher
    app.dependency_overrides[get_scorer] = lambda: scorer
    app.dependency_overrides[get_question_source] = override_question_source
    yield app.dependency_overrides
    app.dependency_overrides.clear()


@pytest.fixture
def client(app_overrides):
    return TestClient(app)


@pytest.fixture
def make_player(app_overrides):
    def _make(name: str) -> Player:
        return Player(TestClient(app), name)
    return _make


@pytest.fixture
def use_question_source(app_overrides):
    """替换题目来源，例如固定的选择题"""
    def _use(source: QuestionSource) -> QuestionSource:
        app_overrides[get_question_source] = lambda: source
        return source
    return _use


@pytest.fixture
def seed_bank(db):
    """预置5道英文开放题（难度2）"""
    category = QuizCategory(name="tech")
    db.add(category)
    db.flush()
    for i in range(1, 6):
        db.add(QuizQuestion(
            prompt=f"Explain concept number {i} of software architecture.",
            difficulty=2,
            rubric_json=Rubric(criteria=["clarity"], notes=f"Reference answer {i}").model_dump(),
            language="en",
            category_id=category.id,
            is_active=True,
        ))
    db.commit()
    return category


@pytest.fixture
def battle_room(make_player, seed_bank):
    """房主 + 1名已准备的玩家，3道题的房间（尚未开始）"""
    def _create(num_questions: int = 3, capacity: Optional[int] = 4, question_type: str = "open-ended",
                round_time_sec: int = 30, guests: int = 1, battle_mode: str = "individual"):
        host = make_player("Host")
        body = {
            "numQuestions": num_questions,
            "roundTimeSec": round_time_sec,
            "questionType": question_type,
            "battleMode": battle_mode,
            "topic": "software",
        }
        if capacity is not None:
            body["capacity"] = capacity
        response = host.post("/api/rooms", body)
        assert response.status_code == 200, response.text
        room_id = response.json()["roomId"]
        assert host.post(f"/api/rooms/{room_id}/join").status_code == 200

        players = []
        for i in range(guests):
            guest = make_player(f"Guest{i + 1}")
            assert guest.post(f"/api/rooms/{room_id}/join").status_code == 200
            assert guest.post(f"/api/rooms/{room_id}/ready", {"ready": True}).status_code == 200
            players.append(guest)
        return room_id, host, players
    return _create


@pytest.fixture
def mcq_battle(battle_room, use_question_source):
    """已开始的选择题对战（正确选项为 b），第1轮已揭晓"""
    def _start(num_questions: int = 3, guests: int = 1):
        use_question_source(StaticQuestionSource(mcq_questions(num_questions)))
        room_id, host, players = battle_room(
            num_questions=num_questions, question_type="multiple-choice", guests=guests
        )
        response = host.post(f"/api/rooms/{room_id}/start")
        assert response.status_code == 200, response.text
        return room_id, host, players
    return _start
