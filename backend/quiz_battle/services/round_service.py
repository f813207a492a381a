"""
对战轮次状态机

房间: waiting -> active -> finished
轮次: pending -> active -> scoreboard -> closed（只能前进）

所有状态迁移都以 UPDATE ... WHERE status = :expected 的条件更新实现，
以受影响行数判断本次调用是否真正完成了迁移；同一进程内同一房间的迁移再由 room_locks 串行化。
"""

from datetime import timedelta
from typing import List, Optional, Tuple

from loguru import logger
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from quiz_battle.core import errors
from quiz_battle.core.config import settings
from quiz_battle.core.utils import format_timestamp_with_timezone, to_utc_naive, utcnow
from quiz_battle.models.answer import Answer
from quiz_battle.models.participant import Participant
from quiz_battle.models.room import Room
from quiz_battle.models.round_model import Round
from quiz_battle.models.team import Team
from quiz_battle.schemas.question_schemas import MultipleChoiceQuestion, Question
from quiz_battle.services.question_source import AIQuestionProvider, BankQuestionProvider, QuestionSource
from quiz_battle.services.room_locks import room_locks
from quiz_battle.services.room_service import get_participant, get_room, require_host
from quiz_battle.services.scoreboard_service import (
    answer_progress,
    build_final_standings,
    build_round_scoreboard,
    build_scoreboard_details,
    resolve_question,
)
from quiz_battle.services.scoring_service import AnswerScorer, get_answer_scorer, score_mcq
from quiz_battle.services.websocket_service import WebSocketManager, get_websocket_manager


def deadline_passed(deadline_at, now) -> bool:
    """截止时间加宽限期后是否已过；未设置截止时间视为未过"""
    deadline_at = to_utc_naive(deadline_at)
    if deadline_at is None:
        return False
    return to_utc_naive(now) > deadline_at + timedelta(milliseconds=settings.ANSWER_GRACE_MS)


class RoundStateMachine:
    """对战轮次推进"""

    def __init__(
        self,
        db: Session,
        publisher: Optional[WebSocketManager] = None,
        question_source: Optional[QuestionSource] = None,
        scorer: Optional[AnswerScorer] = None,
    ):
        self.db = db
        self.publisher = publisher or get_websocket_manager()
        self.question_source = question_source or QuestionSource(BankQuestionProvider(db), AIQuestionProvider())
        self.scorer = scorer or get_answer_scorer()

    # ---- 查询辅助 ----

    def _get_round(self, room_id: str, round_no: int) -> Optional[Round]:
        return (
            self.db.query(Round)
            .filter(Round.room_id == room_id, Round.round_no == round_no)
            .populate_existing()
            .first()
        )

    def _participants(self, room_id: str) -> List[Participant]:
        return (
            self.db.query(Participant)
            .filter(Participant.room_id == room_id)
            .order_by(Participant.id)
            .populate_existing()
            .all()
        )

    def _count_rounds(self, room_id: str, statuses: Optional[Tuple[str, ...]] = None) -> int:
        query = self.db.query(func.count(Round.id)).filter(Round.room_id == room_id)
        if statuses:
            query = query.filter(Round.status.in_(statuses))
        return query.scalar() or 0

    @staticmethod
    def _new_round(room_id: str, round_no: int, question: Question) -> Round:
        bank_id = getattr(question, "bank_id", None)
        return Round(
            room_id=room_id,
            round_no=round_no,
            status="pending",
            question_id=bank_id,
            # 题库题目只保存引用，AI生成的题目保存快照
            question_json=None if bank_id else question.model_dump(mode="json"),
        )

    def _activate_round(self, room: Room, round_no: int, expected: Tuple[str, ...]):
        """条件揭晓轮次；成功返回 (revealed_at, deadline_at)，未命中返回 None"""
        now = utcnow()
        deadline = now + timedelta(seconds=room.round_time_sec)
        updated = (
            self.db.query(Round)
            .filter(Round.room_id == room.id, Round.round_no == round_no, Round.status.in_(expected))
            .update({"status": "active", "revealed_at": now, "deadline_at": deadline}, synchronize_session=False)
        )
        self.db.commit()
        if updated != 1:
            return None
        return now, deadline

    async def _publish_revealed(self, room_id: str, round_no: int, revealed_at, deadline_at, reason: str):
        await self.publisher.publish_battle_event(room_id, "round_revealed", {
            "roundNo": round_no,
            "revealedAt": format_timestamp_with_timezone(revealed_at),
            "deadlineAt": format_timestamp_with_timezone(deadline_at),
            "reason": reason,
        })

    # ---- 开始 ----

    async def start(self, room_id: str, session_id: Optional[str], use_ai: Optional[bool] = None) -> dict:
        """开始对战：出题、批量创建轮次、房间进入 active 并揭晓第一轮"""
        async with room_locks.hold(room_id):
            room = get_room(self.db, room_id)
            require_host(self.db, room, session_id, "start the battle")
            if room.status != "waiting":
                raise errors.ROOM_ALREADY_STARTED

            participants = self._participants(room.id)
            minimum = min(2, room.capacity or 2)
            if len(participants) < minimum:
                raise errors.insufficient_participants(minimum, len(participants))

            not_ready = [
                p.display_name
                for p in participants
                if not p.is_host
                and p.session_id != room.host_session_id
                and p.connection_status == "online"
                and not p.is_ready
            ]
            if not_ready:
                raise errors.participants_not_ready(not_ready)

            prefer_ai = settings.BATTLE_USE_AI if use_ai is None else use_ai
            params = self.question_source.build_params(self.db, room)
            questions, source, ai_error = await self.question_source.fetch(params, prefer_ai)

            for round_no, question in enumerate(questions, start=1):
                self.db.add(self._new_round(room.id, round_no, question))

            started = (
                self.db.query(Room)
                .filter(Room.id == room.id, Room.status == "waiting")
                .update({"status": "active", "start_time": utcnow()}, synchronize_session=False)
            )
            if started != 1:
                self.db.rollback()
                raise errors.ROOM_ALREADY_STARTED

            # 清空准备状态，便于再来一局
            self.db.query(Participant).filter(Participant.room_id == room.id).update(
                {"is_ready": False}, synchronize_session=False
            )
            self.db.commit()
            logger.info(f"🚀 房间 {room.id} 开始对战，共 {len(questions)} 轮（题目来源: {source}）")

            await self.publisher.publish_battle_event(room.id, "room_started", {
                "numRounds": len(questions),
                "roundTimeSec": room.round_time_sec,
                "questionType": room.question_type,
                "source": source,
            })

            # 第一轮揭晓失败不影响开始结果，房主可以手动揭晓
            try:
                revealed = self._activate_round(room, 1, ("pending",))
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"❌ 房间 {room.id} 第1轮自动揭晓失败: {e}")
                revealed = None
            if revealed:
                await self._publish_revealed(room.id, 1, *revealed, reason="battle_start")
            else:
                logger.warning(f"⚠️ 房间 {room.id} 第1轮仍处于 pending，需要手动揭晓")

            response = {
                "ok": True,
                "numRounds": len(questions),
                "roundTimeSec": room.round_time_sec,
                "source": source,
            }
            if ai_error:
                response["aiError"] = ai_error
            return response

    # ---- 揭晓 ----

    async def reveal(self, room_id: str, round_no: int, session_id: Optional[str]) -> dict:
        async with room_locks.hold(room_id):
            room = get_room(self.db, room_id)
            require_host(self.db, room, session_id, "reveal rounds")
            if room.status != "active":
                raise errors.ROOM_NOT_ACTIVE

            round_obj = self._get_round(room.id, round_no)
            if round_obj is None:
                raise errors.ROUND_NOT_FOUND
            if round_obj.status in ("scoreboard", "closed"):
                raise errors.round_conflict(f"Round {round_no} has already been closed.")

            other_active = (
                self.db.query(Round)
                .filter(Round.room_id == room.id, Round.status == "active", Round.round_no != round_no)
                .first()
            )
            if other_active is not None:
                raise errors.round_conflict(f"Round {other_active.round_no} is still active.")

            # 对已揭晓的当前轮次再次揭晓会重置截止时间
            revealed = self._activate_round(room, round_no, ("pending", "active"))
            if revealed is None:
                raise errors.round_conflict(f"Round {round_no} changed state, please retry.")

            revealed_at, deadline_at = revealed
            await self._publish_revealed(room.id, round_no, revealed_at, deadline_at, reason="host_reveal")
            return {
                "ok": True,
                "revealedAt": format_timestamp_with_timezone(revealed_at),
                "deadlineAt": format_timestamp_with_timezone(deadline_at),
            }

    # ---- 作答 ----

    async def _score(self, room: Room, question: Question, answer_text: Optional[str],
                     choice_id: Optional[str], time_ms: int) -> dict:
        if isinstance(question, MultipleChoiceQuestion):
            if not choice_id:
                raise errors.validation_error("choice_id is required for multiple-choice questions.")
            if question.choice_text(choice_id) is None:
                raise errors.validation_error("Unknown choice.", choiceId=choice_id)
            correct = choice_id == question.correctChoiceId
            score = score_mcq(correct, time_ms, room.round_time_sec)
            return {"is_correct": correct, "score_rule": score, "score_final": score, "choice_id": choice_id}

        text = (answer_text or "").strip()
        if not text:
            raise errors.validation_error("answer_text is required for open-ended questions.")
        rubric = question.rubric_json.model_dump() if question.rubric_json else None
        result = await self.scorer.evaluate(
            question.prompt,
            text,
            category=question.category,
            difficulty=question.difficulty,
            language=question.language or room.language,
            rubric=rubric,
        )
        return {
            "answer_text": text,
            "score_ai": result.score if result.source == "ai" else None,
            "score_rule": result.score if result.source == "rule" else None,
            "score_final": result.score,
            "feedback": result.feedback,
        }

    def _insert_answer(self, room: Room, round_obj: Round, participant: Participant,
                       time_ms: int, scored: dict, now) -> Answer:
        """写入答案；轮次已不是 active 时整个事务回滚"""
        # 空更新锁住轮次行，与结束本轮的条件更新互斥
        still_active = (
            self.db.query(Round)
            .filter(Round.id == round_obj.id, Round.status == "active")
            .update({"status": "active"}, synchronize_session=False)
        )
        if still_active != 1:
            self.db.rollback()
            raise errors.ROUND_NOT_ACTIVE

        answer = Answer(
            room_id=room.id, round_id=round_obj.id, session_id=participant.session_id, time_ms=time_ms, **scored
        )
        self.db.add(answer)
        participant.last_seen_at = now
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise errors.ROUND_ALREADY_ANSWERED
        return answer

    async def submit_answer(self, room_id: str, round_no: int, session_id: Optional[str],
                            answer_text: Optional[str] = None, choice_id: Optional[str] = None) -> dict:
        """提交答案；每个会话每轮只能提交一次"""
        if not session_id:
            raise errors.MISSING_SESSION
        room = get_room(self.db, room_id)
        if room.status != "active":
            raise errors.ROOM_NOT_ACTIVE
        participant = get_participant(self.db, room.id, session_id)
        if participant is None:
            raise errors.NOT_PARTICIPANT

        round_obj = self._get_round(room.id, round_no)
        if round_obj is None:
            raise errors.ROUND_NOT_FOUND
        if round_obj.status != "active":
            raise errors.ROUND_NOT_ACTIVE

        now = utcnow()
        if deadline_passed(round_obj.deadline_at, now):
            raise errors.DEADLINE_PASSED

        already = (
            self.db.query(Answer.id)
            .filter(Answer.round_id == round_obj.id, Answer.session_id == session_id)
            .first()
        )
        if already:
            raise errors.ROUND_ALREADY_ANSWERED

        question = resolve_question(self.db, round_obj)
        if question is None:
            raise errors.MISSING_QUESTION_DATA

        revealed_at = to_utc_naive(round_obj.revealed_at) or now
        time_ms = max(0, int((now - revealed_at).total_seconds() * 1000))
        scored = await self._score(room, question, answer_text, choice_id, time_ms)

        # 评分期间轮次可能已被结束，写入前需在锁内重新确认
        async with room_locks.hold(room.id):
            round_obj = self._get_round(room.id, round_no)
            if round_obj is None or round_obj.status != "active":
                raise errors.ROUND_NOT_ACTIVE
            answer = self._insert_answer(room, round_obj, participant, time_ms, scored, now)

        progress = answer_progress(self.db, room.id, round_obj)
        await self.publisher.publish_battle_event(room.id, "answer_received", {
            "roundNo": round_no,
            "sessionId": session_id,
            "participantId": participant.id,
            "displayName": participant.display_name,
            "totalAnswered": progress["totalAnswered"],
            "totalParticipants": progress["totalParticipants"],
        })

        auto_closed = False
        if settings.BATTLE_AUTO_ADVANCE and progress["allAnswered"]:
            auto_closed = await self.auto_close_round(room.id, round_no, "all_answered") is not None

        return {
            "ok": True,
            "score": answer.score_final,
            "isCorrect": answer.is_correct,
            "timeMs": time_ms,
            "feedback": answer.feedback,
            "autoClosed": auto_closed,
        }

    # ---- 结束本轮 ----

    def _apply_round_scores(self, room: Room, round_id: int) -> None:
        """把本轮得分累加到参与者（以及所在队伍）的总分上"""
        team_by_session = dict(
            self.db.query(Participant.session_id, Participant.team_id)
            .filter(Participant.room_id == room.id)
            .all()
        )
        for session_id, score in self.db.query(Answer.session_id, Answer.score_final).filter(Answer.round_id == round_id):
            if not score:
                continue
            self.db.query(Participant).filter(
                Participant.room_id == room.id, Participant.session_id == session_id
            ).update({Participant.total_score: Participant.total_score + score}, synchronize_session=False)

            team_id = team_by_session.get(session_id)
            if team_id:
                self.db.query(Team).filter(Team.id == team_id).update(
                    {Team.total_score: Team.total_score + score}, synchronize_session=False
                )

    def _close_round_and_update_scores(self, room: Room, round_obj: Round) -> bool:
        """在同一个事务里结束轮次并累加得分"""
        try:
            updated = (
                self.db.query(Round)
                .filter(Round.id == round_obj.id, Round.status == "active")
                .update({"status": "scoreboard"}, synchronize_session=False)
            )
            if updated != 1:
                self.db.rollback()
                return False
            self._apply_round_scores(room, round_obj.id)
            self.db.commit()
            return True
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ 房间 {room.id} 第{round_obj.round_no}轮事务结算失败，改用条件更新: {e}")
            return False

    def _close_round_fallback(self, room: Room, round_obj: Round) -> bool:
        """条件更新结束轮次；只有本次更新命中时才累加得分"""
        updated = (
            self.db.query(Round)
            .filter(Round.id == round_obj.id, Round.status == "active")
            .update({"status": "scoreboard"}, synchronize_session=False)
        )
        self.db.commit()
        if updated != 1:
            return False
        self._apply_round_scores(room, round_obj.id)
        self.db.commit()
        return True

    async def _close(self, room: Room, round_obj: Round, reason: str) -> dict:
        just_closed = False
        if round_obj.status not in ("scoreboard", "closed"):
            just_closed = self._close_round_and_update_scores(room, round_obj)
            if not just_closed:
                just_closed = self._close_round_fallback(room, round_obj)

        answers = self.db.query(Answer).filter(Answer.round_id == round_obj.id).all()
        scoreboard = build_round_scoreboard(self._participants(room.id), answers)
        remaining = self._count_rounds(room.id, ("pending", "active"))

        if just_closed:
            logger.info(f"🏁 房间 {room.id} 第{round_obj.round_no}轮结束（{reason}），剩余 {remaining} 轮")
            details = build_scoreboard_details(self.db, round_obj)
            await self.publisher.publish_battle_event(room.id, "round_closed", {
                "roundNo": round_obj.round_no,
                "scoreboard": scoreboard,
                "stage": "scoreboard",
                "generatedAt": format_timestamp_with_timezone(utcnow()),
                "hasMoreRounds": remaining > 0,
                "reason": reason,
                "question": details["question"],
                "answers": details["answers"],
            })

        return {
            "ok": True,
            "roundScoreboard": scoreboard,
            "hasMoreRounds": remaining > 0,
            "remainingRounds": remaining,
            "finished": False,
        }

    async def close_round(self, room_id: str, round_no: int, session_id: Optional[str]) -> dict:
        """房主结束本轮（重复调用幂等，只会计分一次）"""
        async with room_locks.hold(room_id):
            round_obj = self._get_round(room_id, round_no)
            if round_obj is None:
                raise errors.ROUND_NOT_FOUND
            room = get_room(self.db, room_id)
            require_host(self.db, room, session_id, "close the round")
            return await self._close(room, round_obj, reason="host_close")

    async def auto_close_round(self, room_id: str, round_no: int, reason: str) -> Optional[dict]:
        """所有在线玩家都已作答时由服务端结束本轮；轮次已不在 active 时返回 None"""
        async with room_locks.hold(room_id):
            round_obj = self._get_round(room_id, round_no)
            if round_obj is None or round_obj.status != "active":
                return None
            room = get_room(self.db, room_id)
            return await self._close(room, round_obj, reason=reason)

    # ---- 推进与结束对战 ----

    async def _finish_room(self, room: Room, reason: str, winner_session_id: Optional[str] = None,
                           pick_winner: bool = True) -> List[dict]:
        # 房间结束时所有轮次都必须是 closed
        self.db.query(Round).filter(Round.room_id == room.id, Round.status != "closed").update(
            {"status": "closed"}, synchronize_session=False
        )
        standings = build_final_standings(self._participants(room.id))
        if pick_winner and standings:
            winner_session_id = standings[0]["sessionId"]

        room.status = "finished"
        room.finished_reason = reason
        room.winner_session_id = winner_session_id
        self.db.commit()
        logger.info(f"🏆 房间 {room.id} 对战结束（{reason}），获胜者: {winner_session_id}")

        await self.publisher.publish_battle_event(room.id, "match_finished", {
            "roomId": room.id,
            "reason": reason,
            "winnerSessionId": winner_session_id,
            "standings": standings,
        })
        return standings

    async def advance(self, room_id: str, session_id: Optional[str]) -> dict:
        """关闭处于计分板阶段的轮次，揭晓下一轮或结束对战"""
        async with room_locks.hold(room_id):
            room = get_room(self.db, room_id)
            require_host(self.db, room, session_id, "advance the battle")
            if room.status != "active":
                raise errors.ROOM_NOT_ACTIVE

            current = (
                self.db.query(Round)
                .filter(Round.room_id == room.id, Round.status == "scoreboard")
                .order_by(Round.round_no.desc())
                .populate_existing()
                .first()
            )
            if current is None:
                raise errors.NO_SCOREBOARD_ROUND

            closed = (
                self.db.query(Round)
                .filter(Round.id == current.id, Round.status == "scoreboard")
                .update({"status": "closed"}, synchronize_session=False)
            )
            self.db.commit()
            if closed != 1:
                raise errors.NO_SCOREBOARD_ROUND

            total = self._count_rounds(room.id)
            next_round_no = current.round_no + 1
            if next_round_no > total:
                await self._finish_room(room, reason="completed")
                return {"message": "Battle finished", "action": "finished"}

            revealed = self._activate_round(room, next_round_no, ("pending",))
            if revealed is None:
                logger.error(f"❌ 房间 {room.id} 第{next_round_no}轮不是 pending，无法推进")
                raise errors.INTERNAL_ERROR

            await self._publish_revealed(room.id, next_round_no, *revealed, reason="manual_advance")
            return {"message": f"Advanced to round {next_round_no}", "roundNo": next_round_no, "action": "advanced"}

    async def finish(self, room_id: str, session_id: Optional[str]) -> dict:
        """房主主动结束对战（要求所有轮次都已 closed）"""
        async with room_locks.hold(room_id):
            room = get_room(self.db, room_id)
            require_host(self.db, room, session_id, "finish the battle")
            if self._count_rounds(room.id) != self._count_rounds(room.id, ("closed",)):
                raise errors.ROUNDS_STILL_ACTIVE

            standings = await self._finish_room(room, reason="host_finished")
            return {"ok": True, "standings": standings}

    async def finish_abandoned(self, room_id: str, winner_session_id: Optional[str]) -> bool:
        """对手全部掉线时结束对战；房间已不在 active 时返回 False"""
        async with room_locks.hold(room_id):
            room = get_room(self.db, room_id)
            self.db.refresh(room)
            if room.status != "active":
                return False
            await self._finish_room(room, "opponent_disconnected", winner_session_id, pick_winner=False)
            return True
