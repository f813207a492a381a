"""
作答接口测试
"""

import asyncio
from datetime import timedelta

import pytest

from quiz_battle.core.config import settings
from quiz_battle.core.errors import BattleError
from quiz_battle.core.utils import utcnow
from quiz_battle.models.answer import Answer
from quiz_battle.models.participant import Participant
from quiz_battle.models.room import Room
from quiz_battle.models.round_model import Round
from quiz_battle.services.round_service import RoundStateMachine
from quiz_battle.services.scoring_service import AnswerScorer
from tests.conftest import offline_ai


class TestMultipleChoiceAnswers:
    """选择题作答"""

    def test_correct_answer_scores_time_bonus(self, mcq_battle, publisher, db):
        room_id, _, (guest,) = mcq_battle()

        response = guest.post(f"/api/rooms/{room_id}/rounds/1/answer", {"choice_id": "b"})

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert data["isCorrect"] is True
        assert 60 <= data["score"] <= 100
        assert data["timeMs"] >= 0
        assert data["autoClosed"] is False

        answer = db.query(Answer).filter(Answer.session_id == guest.session_id).one()
        assert answer.choice_id == "b"
        assert answer.score_final == data["score"]

        event = publisher.payloads("answer_received")[-1]
        assert event["sessionId"] == guest.session_id
        assert event["totalAnswered"] == 1
        assert event["totalParticipants"] == 2

    def test_wrong_answer_scores_zero(self, mcq_battle):
        room_id, _, (guest,) = mcq_battle()

        data = guest.post(f"/api/rooms/{room_id}/rounds/1/answer", {"choice_id": "c"}).json()

        assert data["isCorrect"] is False
        assert data["score"] == 0

    def test_unknown_choice_is_rejected(self, mcq_battle):
        room_id, _, (guest,) = mcq_battle()

        response = guest.post(f"/api/rooms/{room_id}/rounds/1/answer", {"choice_id": "z"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_missing_choice_is_rejected(self, mcq_battle):
        room_id, _, (guest,) = mcq_battle()

        response = guest.post(f"/api/rooms/{room_id}/rounds/1/answer", {"answer_text": "Planet B"})

        assert response.status_code == 400

    def test_second_answer_conflicts(self, mcq_battle, db):
        room_id, _, (guest,) = mcq_battle()
        guest.post(f"/api/rooms/{room_id}/rounds/1/answer", {"choice_id": "a"})

        response = guest.post(f"/api/rooms/{room_id}/rounds/1/answer", {"choice_id": "b"})

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "ROUND_ALREADY_ANSWERED"
        assert db.query(Answer).filter(Answer.session_id == guest.session_id).count() == 1

    def test_answer_after_deadline_and_grace(self, mcq_battle, db):
        room_id, _, (guest,) = mcq_battle()
        expired = utcnow() - timedelta(milliseconds=settings.ANSWER_GRACE_MS + 1000)
        db.query(Round).filter(Round.room_id == room_id, Round.round_no == 1).update({"deadline_at": expired})
        db.commit()

        response = guest.post(f"/api/rooms/{room_id}/rounds/1/answer", {"choice_id": "b"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "DEADLINE_PASSED"

    def test_answer_inside_grace_window_is_accepted(self, mcq_battle, db):
        room_id, _, (guest,) = mcq_battle()
        just_passed = utcnow() - timedelta(milliseconds=500)
        db.query(Round).filter(Round.room_id == room_id, Round.round_no == 1).update({"deadline_at": just_passed})
        db.commit()

        response = guest.post(f"/api/rooms/{room_id}/rounds/1/answer", {"choice_id": "b"})

        assert response.status_code == 200

    def test_pending_round_is_not_active(self, mcq_battle):
        room_id, _, (guest,) = mcq_battle()

        response = guest.post(f"/api/rooms/{room_id}/rounds/2/answer", {"choice_id": "b"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "ROUND_NOT_ACTIVE"

    def test_stranger_cannot_answer(self, mcq_battle, make_player):
        room_id, _, _ = mcq_battle()

        response = make_player("Stranger").post(f"/api/rooms/{room_id}/rounds/1/answer", {"choice_id": "b"})

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "NOT_PARTICIPANT"

    def test_waiting_room_rejects_answers(self, battle_room):
        room_id, _, (guest,) = battle_room()

        response = guest.post(f"/api/rooms/{room_id}/rounds/1/answer", {"answer_text": "hello"})

        assert response.json()["error"]["code"] == "ROOM_NOT_ACTIVE"


class TestAutoClose:
    """所有在线玩家作答后自动结束本轮"""

    def test_last_answer_closes_round(self, mcq_battle, monkeypatch, publisher, db):
        monkeypatch.setattr(settings, "BATTLE_AUTO_ADVANCE", True)
        room_id, host, (guest,) = mcq_battle()

        first = host.post(f"/api/rooms/{room_id}/rounds/1/answer", {"choice_id": "b"}).json()
        second = guest.post(f"/api/rooms/{room_id}/rounds/1/answer", {"choice_id": "b"}).json()

        assert first["autoClosed"] is False
        assert second["autoClosed"] is True
        db.expire_all()
        assert db.query(Round).filter(Round.room_id == room_id, Round.round_no == 1).one().status == "scoreboard"
        assert publisher.payloads("round_closed")[-1]["reason"] == "all_answered"

    def test_disabled_by_default_in_tests(self, mcq_battle, db):
        room_id, host, (guest,) = mcq_battle()
        host.post(f"/api/rooms/{room_id}/rounds/1/answer", {"choice_id": "b"})
        guest.post(f"/api/rooms/{room_id}/rounds/1/answer", {"choice_id": "b"})

        db.expire_all()
        assert db.query(Round).filter(Round.room_id == room_id, Round.round_no == 1).one().status == "active"


class TestOpenEndedAnswers:
    """开放题作答（AI不可用时使用规则评分）"""

    def test_rule_based_score_and_feedback(self, battle_room):
        room_id, host, (guest,) = battle_room()
        host.post(f"/api/rooms/{room_id}/start")

        data = guest.post(f"/api/rooms/{room_id}/rounds/1/answer", {
            "answer_text": "First, a layered architecture separates concerns. For example, the service layer "
                           "handles business rules while the data layer handles persistence and performance.",
        }).json()

        assert data["isCorrect"] is None
        assert 0 < data["score"] <= 100
        assert data["feedback"]

    def test_low_effort_answer_scores_zero(self, battle_room):
        room_id, host, (guest,) = battle_room()
        host.post(f"/api/rooms/{room_id}/start")

        data = guest.post(f"/api/rooms/{room_id}/rounds/1/answer", {"answer_text": "idk"}).json()

        assert data["score"] == 0

    def test_blank_answer_is_rejected(self, battle_room):
        room_id, host, (guest,) = battle_room()
        host.post(f"/api/rooms/{room_id}/start")

        response = guest.post(f"/api/rooms/{room_id}/rounds/1/answer", {"answer_text": "   "})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"


class GatedScorer(AnswerScorer):
    """评分时挂起，直到测试放行"""

    def __init__(self):
        super().__init__(offline_ai())
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def evaluate(self, *args, **kwargs):
        self.entered.set()
        await self.release.wait()
        return await super().evaluate(*args, **kwargs)


class TestAnswerDuringClose:
    """评分过程中本轮被结束"""

    def test_round_closed_while_scoring_rejects_answer(self, battle_room, session_factory, publisher, db):
        room_id, host, (guest,) = battle_room()
        host.post(f"/api/rooms/{room_id}/start")
        sessions = [session_factory(), session_factory()]

        async def answer_while_closing():
            scorer = GatedScorer()
            answering = RoundStateMachine(sessions[0], publisher=publisher, scorer=scorer)
            closing = RoundStateMachine(sessions[1], publisher=publisher, scorer=scorer)
            pending = asyncio.ensure_future(answering.submit_answer(
                room_id, 1, guest.session_id, answer_text="Caching keeps hot data close to the reader."
            ))
            await scorer.entered.wait()
            await closing.close_round(room_id, 1, host.session_id)
            scorer.release.set()
            with pytest.raises(BattleError) as exc_info:
                await pending
            return exc_info.value

        try:
            error = asyncio.run(answer_while_closing())
        finally:
            for s in sessions:
                s.close()

        assert error.code == "ROUND_NOT_ACTIVE"
        db.expire_all()
        assert db.query(Answer).filter(Answer.session_id == guest.session_id).count() == 0
        guest_row = db.query(Participant).filter(Participant.session_id == guest.session_id).one()
        assert guest_row.total_score == 0
        assert publisher.names(room_id).count("round_closed") == 1
        assert "answer_received" not in publisher.names(room_id)

    def test_insert_is_guarded_by_round_status(self, mcq_battle, session_factory, publisher, scorer, db):
        room_id, host, (guest,) = mcq_battle()
        session = session_factory()
        machine = RoundStateMachine(session, publisher=publisher, scorer=scorer)
        room = session.query(Room).filter(Room.id == room_id).one()
        participant = session.query(Participant).filter(Participant.session_id == guest.session_id).one()
        stale_round = session.query(Round).filter(Round.room_id == room_id, Round.round_no == 1).one()
        assert stale_round.status == "active"

        host.post(f"/api/rooms/{room_id}/rounds/1/close")
        scored = {"is_correct": True, "score_rule": 90, "score_final": 90, "choice_id": "b"}
        try:
            with pytest.raises(BattleError) as exc_info:
                machine._insert_answer(room, stale_round, participant, 1000, scored, utcnow())
        finally:
            session.close()

        assert exc_info.value.code == "ROUND_NOT_ACTIVE"
        db.expire_all()
        assert db.query(Answer).filter(Answer.session_id == guest.session_id).count() == 0


class TestAnswerStatus:
    """GET /api/rooms/{roomId}/answer-status"""

    def test_progress_and_all_answered_event(self, mcq_battle, publisher):
        room_id, host, (guest,) = mcq_battle()
        host.post(f"/api/rooms/{room_id}/rounds/1/answer", {"choice_id": "b"})

        partial = guest.get(f"/api/rooms/{room_id}/answer-status").json()
        assert partial["currentRound"] == 1
        assert partial["totalAnswered"] == 1
        assert partial["allAnswered"] is False
        answered = {p["display_name"]: p["has_answered"] for p in partial["participants"]}
        assert answered == {"Host": True, "Guest1": False}

        guest.post(f"/api/rooms/{room_id}/rounds/1/answer", {"choice_id": "a"})
        complete = guest.get(f"/api/rooms/{room_id}/answer-status").json()

        assert complete["allAnswered"] is True
        assert publisher.payloads("all_participants_answered")[-1]["totalAnswered"] == 2

    def test_no_active_round(self, battle_room):
        room_id, host, _ = battle_room()

        data = host.get(f"/api/rooms/{room_id}/answer-status").json()

        assert data == {"participants": [], "currentRound": None, "totalAnswered": 0}


class TestMyAnswers:
    """GET /api/rooms/{roomId}/my-answers"""

    def test_lists_every_round(self, mcq_battle):
        room_id, host, (guest,) = mcq_battle(num_questions=2)
        guest.post(f"/api/rooms/{room_id}/rounds/1/answer", {"choice_id": "b"})

        data = guest.get(f"/api/rooms/{room_id}/my-answers").json()

        assert data["roomId"] == room_id
        assert data["totalAnswers"] == 2
        answered, unanswered = data["answers"]
        assert answered["wasAnswered"] is True
        assert answered["answer"] == "Planet B1"
        assert answered["correctAnswer"] == "Planet B1"
        assert answered["isCorrect"] is True
        assert answered["score"] >= 60

        assert unanswered["wasAnswered"] is False
        assert unanswered["answer"] == "No answer submitted"
        assert unanswered["score"] == 0
        assert unanswered["isCorrect"] is False
        assert unanswered["id"].startswith("unanswered-")

    def test_requires_session(self, client):
        response = client.get("/api/rooms/room-x/my-answers")

        assert response.status_code == 401
