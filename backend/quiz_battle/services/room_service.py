"""
房间与参与者管理服务
"""

from typing import List, Optional

from loguru import logger
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from quiz_battle.core import errors
from quiz_battle.core.utils import epoch_ms, format_timestamp_with_timezone, generate_id, generate_room_code, utcnow
from quiz_battle.models.answer import Answer
from quiz_battle.models.participant import Participant
from quiz_battle.models.room import Room
from quiz_battle.models.round_model import Round
from quiz_battle.models.session import BattleSession
from quiz_battle.models.team import Team
from quiz_battle.schemas.battle_schemas import RoomCreate
from quiz_battle.schemas.question_schemas import MultipleChoiceQuestion
from quiz_battle.services.scoreboard_service import answer_progress, public_question_summary, resolve_question
from quiz_battle.services.session_service import require_session
from quiz_battle.services.websocket_service import WebSocketManager, get_websocket_manager


MAX_ROOM_CODE_ATTEMPTS = 10

# 团队模式固定的两支队伍
DEFAULT_TEAMS = [
    ("Red Team", "#EF4444"),
    ("Blue Team", "#3B82F6"),
]


NO_ANSWER = "No answer submitted"


def get_room(db: Session, room_id: str) -> Room:
    room = db.query(Room).filter(Room.id == room_id).first()
    if not room:
        raise errors.ROOM_NOT_FOUND
    return room


def find_room(db: Session, identifier: str) -> Optional[Room]:
    """先按房间ID查找，再按房间码（大写）查找"""
    identifier = (identifier or "").strip()
    if not identifier:
        return None
    room = db.query(Room).filter(Room.id == identifier).first()
    if room is None:
        room = db.query(Room).filter(Room.room_code == identifier.upper()).first()
    return room


def get_participant(db: Session, room_id: str, session_id: Optional[str]) -> Optional[Participant]:
    if not session_id:
        return None
    return (
        db.query(Participant)
        .filter(Participant.room_id == room_id, Participant.session_id == session_id)
        .first()
    )


def require_host(db: Session, room: Room, session_id: Optional[str], action: str) -> Optional[Participant]:
    """房主判断：房间创建者会话，或参与者记录上带房主标记"""
    if not session_id:
        raise errors.MISSING_SESSION
    participant = get_participant(db, room.id, session_id)
    if room.host_session_id != session_id and not (participant and participant.is_host):
        raise errors.not_host(action)
    return participant


def require_member(db: Session, room: Room, session_id: Optional[str]) -> Optional[Participant]:
    """参与者或房主才能查看房间"""
    if not session_id:
        raise errors.MISSING_SESSION
    participant = get_participant(db, room.id, session_id)
    if participant is None and room.host_session_id != session_id:
        raise errors.NOT_PARTICIPANT
    return participant


def participant_to_dict(p: Participant) -> dict:
    return {
        "participantId": p.id,
        "session_id": p.session_id,
        "display_name": p.display_name,
        "is_host": p.is_host,
        "connection_status": p.connection_status,
        "total_score": p.total_score,
        "joined_at": format_timestamp_with_timezone(p.joined_at),
        "last_seen_at": format_timestamp_with_timezone(p.last_seen_at),
        "is_ready": p.is_ready,
        "team_id": p.team_id,
    }


def room_to_dict(room: Room) -> dict:
    return {
        "id": room.id,
        "room_code": room.room_code,
        "host_session_id": room.host_session_id,
        "topic": room.topic,
        "category_id": room.category_id,
        "language": room.language,
        "num_questions": room.num_questions,
        "round_time_sec": room.round_time_sec,
        "capacity": room.capacity,
        "question_type": room.question_type,
        "difficulty": room.difficulty,
        "battle_mode": room.battle_mode,
        "status": room.status,
        "start_time": format_timestamp_with_timezone(room.start_time),
        "finished_reason": room.finished_reason,
        "winner_session_id": room.winner_session_id,
    }


def team_to_dict(team: Team) -> dict:
    return {
        "id": team.id,
        "room_id": team.room_id,
        "team_name": team.team_name,
        "team_color": team.team_color,
        "team_order": team.team_order,
        "total_score": team.total_score,
    }


class RoomService:
    """房间管理服务"""

    def __init__(self, db: Session, publisher: Optional[WebSocketManager] = None):
        self.db = db
        self.publisher = publisher or get_websocket_manager()

    def _participant_count(self, room_id: str) -> int:
        return self.db.query(func.count(Participant.id)).filter(Participant.room_id == room_id).scalar() or 0

    def _unique_room_code(self) -> str:
        for _ in range(MAX_ROOM_CODE_ATTEMPTS):
            code = generate_room_code()
            if not self.db.query(Room.id).filter(Room.room_code == code).first():
                return code
        logger.error("❌ 多次尝试后仍无法生成唯一房间码")
        raise errors.INTERNAL_ERROR

    async def create_room(self, session_id: Optional[str], data: RoomCreate) -> dict:
        """创建房间（房主不会自动加入）"""
        session = require_session(self.db, session_id)

        room = Room(
            id=generate_id("room"),
            room_code=self._unique_room_code(),
            host_session_id=session.id,
            topic=data.topic,
            category_id=data.category_id,
            language=data.language,
            num_questions=data.num_questions,
            round_time_sec=data.round_time_sec,
            capacity=data.capacity,
            question_type=data.question_type,
            difficulty=data.difficulty,
            battle_mode=data.battle_mode,
            status="waiting",
        )
        self.db.add(room)

        if data.battle_mode == "team":
            for order, (name, color) in enumerate(DEFAULT_TEAMS):
                self.db.add(Team(room_id=room.id, team_name=name, team_color=color, team_order=order))

        self.db.commit()
        logger.info(f"🏠 会话 {session.id} 创建了房间 {room.id} ({room.room_code}, {data.battle_mode})")
        return {"roomId": room.id, "roomCode": room.room_code}

    def _pick_team(self, room: Room) -> Optional[int]:
        """人数较少的队伍优先，人数相同按队伍顺序"""
        teams = self.db.query(Team).filter(Team.room_id == room.id).order_by(Team.team_order).all()
        if not teams:
            return None
        counts = dict(
            self.db.query(Participant.team_id, func.count(Participant.id))
            .filter(Participant.room_id == room.id, Participant.team_id.isnot(None))
            .group_by(Participant.team_id)
            .all()
        )
        best = min(teams, key=lambda t: (counts.get(t.id, 0), t.team_order))
        return best.id

    def _rejoin(self, room: Room, session_id: str, display_name: str, is_host: bool) -> Participant:
        participant = get_participant(self.db, room.id, session_id)
        participant.display_name = display_name
        participant.connection_status = "online"
        participant.last_seen_at = utcnow()
        # 房主标记只会被设置，不会因重新加入而清除
        if is_host:
            participant.is_host = True
        self.db.commit()
        return participant

    async def join_room(self, room_ref: str, session_id: Optional[str], display_name: Optional[str] = None) -> dict:
        """加入房间；同一会话重复加入是幂等的"""
        if not session_id:
            raise errors.MISSING_SESSION

        room = find_room(self.db, room_ref)
        if room is None:
            raise errors.ROOM_NOT_FOUND
        if room.status != "waiting":
            raise errors.ROOM_NOT_JOINABLE

        existing = get_participant(self.db, room.id, session_id)
        if existing is None and room.capacity and self._participant_count(room.id) >= room.capacity:
            raise errors.ROOM_FULL

        session = self.db.query(BattleSession).filter(BattleSession.id == session_id).first()
        if not session:
            raise errors.INVALID_SESSION

        resolved_name = session.display_name or display_name or "Player"
        is_host = room.host_session_id == session_id

        if existing is not None:
            participant = self._rejoin(room, session_id, resolved_name, is_host)
            return {"participantId": participant.id, "roomId": room.id}

        now = utcnow()
        participant = Participant(
            room_id=room.id,
            session_id=session_id,
            display_name=resolved_name,
            is_host=is_host,
            connection_status="online",
            is_ready=False,
            total_score=0,
            team_id=self._pick_team(room) if room.battle_mode == "team" else None,
            joined_at=now,
            last_seen_at=now,
        )
        self.db.add(participant)
        try:
            self.db.commit()
        except IntegrityError:
            # 并发加入时唯一约束生效，按重新加入处理
            self.db.rollback()
            participant = self._rejoin(room, session_id, resolved_name, is_host)
            return {"participantId": participant.id, "roomId": room.id}

        self.db.refresh(participant)
        logger.info(f"👋 {resolved_name} 加入房间 {room.id}")
        await self.publisher.publish_battle_event(room.id, "player_joined", {
            "participantId": participant.id,
            "displayName": resolved_name,
            "teamId": participant.team_id,
        })
        return {"participantId": participant.id, "roomId": room.id}

    async def get_availability(self, room_ref: str) -> dict:
        room = find_room(self.db, room_ref)
        if room is None:
            raise errors.ROOM_NOT_FOUND

        status = room.status or "waiting"
        current = self._participant_count(room.id) if room.capacity else None

        joinable = status == "waiting"
        message = None
        if joinable and room.capacity and current is not None and current >= room.capacity:
            joinable = False
        if not joinable:
            if status == "active":
                message = "This battle is currently in progress. Please wait for the next session."
            elif status == "finished":
                message = "This battle has already finished. Ask the host to open a new room."
            elif room.capacity and current is not None:
                message = "This room has reached its maximum capacity."
            else:
                message = "This room is not accepting new participants right now."

        return {
            "roomId": room.id,
            "status": status,
            "joinable": joinable,
            "capacity": room.capacity,
            "currentParticipants": current,
            "message": message,
            "roomCode": room.room_code,
            "meta": {
                "topic": room.topic,
                "language": room.language,
                "numQuestions": room.num_questions,
                "difficulty": room.difficulty,
                "roundTimeSec": room.round_time_sec,
            },
        }

    async def set_ready(self, room_id: str, session_id: Optional[str], ready: bool) -> dict:
        if not session_id:
            raise errors.MISSING_SESSION
        participant = get_participant(self.db, room_id, session_id)
        if participant is None:
            raise errors.NOT_PARTICIPANT
        if participant.connection_status == "offline":
            raise errors.PARTICIPANT_OFFLINE
        if participant.is_ready == ready:
            return {"ok": True, "alreadySet": True}

        participant.is_ready = ready
        self.db.commit()

        await self.publisher.publish_battle_event(room_id, "participant_ready", {
            "sessionId": participant.session_id,
            "participantId": participant.id,
            "displayName": participant.display_name,
            "isReady": ready,
            "isHost": participant.is_host,
        })
        return {"ok": True}

    async def get_state(self, room_id: str, session_id: Optional[str]) -> dict:
        """房间完整快照（房间、参与者、队伍、当前轮次）"""
        room = get_room(self.db, room_id)
        membership = require_member(self.db, room, session_id)

        participants = (
            self.db.query(Participant).filter(Participant.room_id == room.id).order_by(Participant.id).all()
        )
        teams = None
        if room.battle_mode == "team":
            teams = [team_to_dict(t) for t in room.teams]

        if membership is not None:
            current_user = {
                "session_id": membership.session_id,
                "display_name": membership.display_name,
                "is_host": membership.is_host,
                "total_score": membership.total_score,
            }
        else:
            host_session = self.db.query(BattleSession).filter(BattleSession.id == session_id).first()
            current_user = {
                "session_id": session_id,
                "display_name": host_session.display_name if host_session else None,
                "is_host": True,
                "total_score": 0,
            }

        round_obj = (
            self.db.query(Round)
            .filter(Round.room_id == room.id, Round.status.in_(("active", "scoreboard")))
            .order_by(Round.round_no.desc())
            .first()
        )
        active_round = None
        if round_obj is not None:
            question = resolve_question(self.db, round_obj) if round_obj.revealed_at else None
            active_round = {
                "roundNo": round_obj.round_no,
                "revealedAt": format_timestamp_with_timezone(round_obj.revealed_at),
                "deadlineAt": format_timestamp_with_timezone(round_obj.deadline_at),
                "status": round_obj.status,
                "question": public_question_summary(question),
            }

        return {
            "room": room_to_dict(room),
            "participants": [participant_to_dict(p) for p in participants],
            "teams": teams,
            "currentUser": current_user,
            "activeRound": active_round,
            "serverTime": epoch_ms(),
        }

    async def get_answer_status(self, room_id: str, session_id: Optional[str]) -> dict:
        room = get_room(self.db, room_id)
        require_member(self.db, room, session_id)

        active_round = (
            self.db.query(Round)
            .filter(Round.room_id == room.id, Round.status == "active")
            .order_by(Round.round_no.desc())
            .first()
        )
        if active_round is None:
            return {"participants": [], "currentRound": None, "totalAnswered": 0}

        progress = answer_progress(self.db, room.id, active_round)
        participants = [
            {
                "session_id": p.session_id,
                "display_name": p.display_name,
                "has_answered": p.session_id in progress["answered"],
                "is_host": p.is_host,
                "connection_status": p.connection_status,
                "is_ready": p.is_ready,
            }
            for p in progress["participants"]
        ]

        if progress["allAnswered"]:
            await self.publisher.publish_battle_event(room.id, "all_participants_answered", {
                "roundNo": active_round.round_no,
                "totalAnswered": progress["totalAnswered"],
                "totalParticipants": progress["totalParticipants"],
            })

        return {
            "participants": participants,
            "currentRound": active_round.round_no,
            "totalAnswered": progress["totalAnswered"],
            "totalParticipants": progress["totalParticipants"],
            "allAnswered": progress["allAnswered"],
        }

    async def get_my_answers(self, room_id: str, session_id: Optional[str]) -> dict:
        """每一轮一条记录（未作答的轮次也会列出）"""
        if not session_id:
            raise errors.MISSING_SESSION

        rounds = self.db.query(Round).filter(Round.room_id == room_id).order_by(Round.round_no).all()
        answers = {
            a.round_id: a
            for a in self.db.query(Answer).filter(Answer.room_id == room_id, Answer.session_id == session_id)
        }

        entries: List[dict] = []
        for round_obj in rounds:
            answer = answers.get(round_obj.id)
            question = resolve_question(self.db, round_obj)
            entry = {
                "id": answer.id if answer else f"unanswered-{round_obj.id}",
                "roundNo": round_obj.round_no,
                "question": None,
                "answer": NO_ANSWER,
                "score": (answer.score_final or 0) if answer else 0,
                "feedback": "",
                "wasAnswered": answer is not None,
            }
            if question is not None:
                entry["question"] = {
                    "prompt": question.prompt,
                    "difficulty": question.difficulty,
                    "language": question.language,
                    "category": question.category,
                }

            if isinstance(question, MultipleChoiceQuestion):
                if answer is not None:
                    entry["answer"] = question.choice_text(answer.choice_id) or NO_ANSWER
                    is_correct = answer.is_correct
                    if is_correct is None:
                        is_correct = answer.choice_id == question.correctChoiceId
                else:
                    is_correct = False
                entry["correctAnswer"] = question.choice_text(question.correctChoiceId)
                entry["isCorrect"] = bool(is_correct)
                entry["timeMs"] = (answer.time_ms or None) if answer else None
            elif answer is not None:
                entry["answer"] = answer.answer_text or ""
                entry["feedback"] = answer.feedback or "No feedback available"

            entries.append(entry)

        return {"roomId": room_id, "totalAnswers": len(entries), "answers": entries}
