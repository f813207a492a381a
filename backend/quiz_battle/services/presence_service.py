"""
在线状态服务

客户端定期上报心跳；超过阈值未上报的参与者会被标记为离线。
离线会影响：自动结束本轮、房主移交、只剩一人在线时结束对战。
"""

from datetime import datetime, timedelta
from typing import Dict, Optional

from loguru import logger
from sqlalchemy.orm import Session

from quiz_battle.core import errors
from quiz_battle.core.config import settings
from quiz_battle.core.utils import to_utc_naive, utcnow
from quiz_battle.models.participant import Participant
from quiz_battle.models.round_model import Round
from quiz_battle.services.room_service import get_participant, get_room
from quiz_battle.services.round_service import RoundStateMachine
from quiz_battle.services.scoreboard_service import answer_progress
from quiz_battle.services.websocket_service import WebSocketManager, get_websocket_manager


def is_stale(participant, threshold: datetime) -> bool:
    last_seen = to_utc_naive(participant.last_seen_at)
    return last_seen is None or last_seen < to_utc_naive(threshold)


def pick_new_host(online):
    """最早加入者优先，同时加入时总分高者优先"""
    return min(online, key=lambda p: (to_utc_naive(p.joined_at) or datetime.min, -(p.total_score or 0)))


class PresenceService:
    """处理参与者在线状态上报"""

    def __init__(self, db: Session, publisher: Optional[WebSocketManager] = None,
                 machine: Optional[RoundStateMachine] = None):
        self.db = db
        self.publisher = publisher or get_websocket_manager()
        self.machine = machine or RoundStateMachine(db, publisher=self.publisher)

    def _participants(self, room_id: str):
        return (
            self.db.query(Participant)
            .filter(Participant.room_id == room_id)
            .order_by(Participant.id)
            .populate_existing()
            .all()
        )

    async def update_presence(self, room_id: str, session_id: Optional[str], status: str) -> dict:
        if not session_id:
            raise errors.MISSING_SESSION
        room = get_room(self.db, room_id)
        current = get_participant(self.db, room.id, session_id)
        if current is None:
            raise errors.NOT_PARTICIPANT

        now = utcnow()
        status_changes: Dict[str, str] = {}
        if current.connection_status != status:
            status_changes[session_id] = status
        current.connection_status = status
        current.last_seen_at = now
        if status == "offline":
            current.is_ready = False
        self.db.commit()

        # 心跳超时的参与者标记为离线
        threshold = now - timedelta(seconds=settings.PRESENCE_OFFLINE_THRESHOLD_SEC)
        participants = self._participants(room.id)
        stale = [
            p for p in participants
            if p.connection_status == "online" and is_stale(p, threshold)
        ]
        for p in stale:
            p.connection_status = "offline"
            p.is_ready = False
            status_changes[p.session_id] = "offline"
        if stale:
            self.db.commit()
            logger.info(f"📴 房间 {room.id} 中 {len(stale)} 个参与者心跳超时，已标记离线")

        result: dict = {}
        online = [p for p in participants if p.connection_status == "online"]

        active_round = (
            self.db.query(Round)
            .filter(Round.room_id == room.id, Round.status == "active")
            .order_by(Round.round_no.desc())
            .first()
        )
        if active_round is not None and online:
            progress = answer_progress(self.db, room.id, active_round)
            if progress["allAnswered"]:
                await self.publisher.publish_battle_event(room.id, "all_participants_answered", {
                    "roundNo": active_round.round_no,
                    "totalAnswered": progress["totalAnswered"],
                    "totalParticipants": progress["totalParticipants"],
                    "reason": "presence_sync",
                })
                await self.machine.auto_close_round(room.id, active_round.round_no, "presence_sync")

        host_changed = await self._reassign_host(room, participants, online)
        if host_changed:
            result["hostChanged"] = host_changed

        self.db.refresh(room)
        if room.status == "active" and len(online) <= 1:
            winner_session_id = online[0].session_id if len(online) == 1 else None
            if await self.machine.finish_abandoned(room.id, winner_session_id):
                result["battleFinished"] = {"reason": "opponent_disconnected", "winnerSessionId": winner_session_id}

        if stale:
            result["markedOffline"] = [p.session_id for p in stale]

        if status_changes:
            by_session = {p.session_id: p for p in participants}
            for changed_session, changed_status in status_changes.items():
                p = by_session.get(changed_session)
                if changed_status != "offline" or p is None:
                    continue
                await self.publisher.publish_battle_event(room.id, "participant_ready", {
                    "sessionId": p.session_id,
                    "participantId": p.id,
                    "displayName": p.display_name,
                    "isHost": p.is_host,
                    "isReady": False,
                    "reason": "offline",
                })

            changes = [{"sessionId": s, "status": st} for s, st in status_changes.items()]
            await self.publisher.publish_battle_event(room.id, "participant_presence", {"changes": changes})
            result["statusChanges"] = changes

        return {"ok": True, "result": result}

    async def _reassign_host(self, room, participants, online) -> Optional[dict]:
        """房主离线时移交给最早加入的在线参与者"""
        host = next((p for p in participants if p.session_id == room.host_session_id), None)
        if host is None or host.connection_status == "online" or not online:
            return None

        new_host = pick_new_host(online)
        if new_host.session_id == room.host_session_id:
            return None

        self.db.query(Participant).filter(Participant.room_id == room.id, Participant.is_host.is_(True)).update(
            {"is_host": False}, synchronize_session=False
        )
        self.db.query(Participant).filter(Participant.id == new_host.id).update(
            {"is_host": True}, synchronize_session=False
        )
        room.host_session_id = new_host.session_id
        self.db.commit()
        logger.info(f"👑 房间 {room.id} 房主移交给 {new_host.display_name}")

        payload = {"sessionId": new_host.session_id, "displayName": new_host.display_name}
        await self.publisher.publish_battle_event(room.id, "host_changed", payload)
        return payload
