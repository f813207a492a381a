"""
房间管理API路由
"""

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from quiz_battle.api.deps import (
    get_presence_service,
    get_room_service,
    get_round_machine,
    get_scoreboard_service,
    get_session_id,
)
from quiz_battle.core.database import get_db
from quiz_battle.schemas.battle_schemas import JoinRoom, PresenceUpdate, ReadyUpdate, RoomCreate, StartBattle
from quiz_battle.services.presence_service import PresenceService
from quiz_battle.services.room_service import RoomService, get_room
from quiz_battle.services.round_service import RoundStateMachine
from quiz_battle.services.scoreboard_service import ScoreboardService


router = APIRouter()


@router.post("")
async def create_room(
    data: RoomCreate,
    session_id: Optional[str] = Depends(get_session_id),
    room_service: RoomService = Depends(get_room_service)
):
    """创建房间"""
    return await room_service.create_room(session_id, data)


@router.post("/{room_id}/join")
async def join_room(
    room_id: str,
    data: Optional[JoinRoom] = None,
    session_id: Optional[str] = Depends(get_session_id),
    room_service: RoomService = Depends(get_room_service)
):
    """加入房间（room_id 也可以是房间码）"""
    display_name = data.display_name if data else None
    return await room_service.join_room(room_id, session_id, display_name)


@router.get("/{room_id}/availability")
async def get_availability(
    room_id: str,
    room_service: RoomService = Depends(get_room_service)
):
    """房间是否可加入（无需登录）"""
    return await room_service.get_availability(room_id)


@router.post("/{room_id}/ready")
async def set_ready(
    room_id: str,
    data: ReadyUpdate,
    session_id: Optional[str] = Depends(get_session_id),
    room_service: RoomService = Depends(get_room_service)
):
    """设置准备状态"""
    return await room_service.set_ready(room_id, session_id, data.ready)


@router.post("/{room_id}/presence")
async def update_presence(
    room_id: str,
    data: PresenceUpdate,
    session_id: Optional[str] = Depends(get_session_id),
    presence_service: PresenceService = Depends(get_presence_service)
):
    """在线状态心跳"""
    return await presence_service.update_presence(room_id, session_id, data.status)


@router.get("/{room_id}/state")
async def get_room_state(
    room_id: str,
    session_id: Optional[str] = Depends(get_session_id),
    room_service: RoomService = Depends(get_room_service)
):
    """房间完整状态"""
    return await room_service.get_state(room_id, session_id)


@router.get("/{room_id}/answer-status")
async def get_answer_status(
    room_id: str,
    session_id: Optional[str] = Depends(get_session_id),
    room_service: RoomService = Depends(get_room_service)
):
    """当前轮次的作答进度"""
    return await room_service.get_answer_status(room_id, session_id)


@router.get("/{room_id}/my-answers")
async def get_my_answers(
    room_id: str,
    session_id: Optional[str] = Depends(get_session_id),
    room_service: RoomService = Depends(get_room_service)
):
    """我的每轮作答回顾"""
    return await room_service.get_my_answers(room_id, session_id)


@router.get("/{room_id}/scoreboard")
async def get_scoreboard(
    room_id: str,
    db: Session = Depends(get_db),
    scoreboard_service: ScoreboardService = Depends(get_scoreboard_service)
):
    """累计计分板"""
    room = get_room(db, room_id)
    return await scoreboard_service.get_scoreboard(room)


@router.post("/{room_id}/start")
async def start_battle(
    room_id: str,
    data: Optional[StartBattle] = None,
    session_id: Optional[str] = Depends(get_session_id),
    machine: RoundStateMachine = Depends(get_round_machine)
):
    """开始对战"""
    use_ai = data.use_ai if data else None
    return await machine.start(room_id, session_id, use_ai)


@router.post("/{room_id}/advance")
async def advance_battle(
    room_id: str,
    session_id: Optional[str] = Depends(get_session_id),
    machine: RoundStateMachine = Depends(get_round_machine)
):
    """从计分板进入下一轮（或结束对战）"""
    return await machine.advance(room_id, session_id)


@router.post("/{room_id}/finish")
async def finish_battle(
    room_id: str,
    session_id: Optional[str] = Depends(get_session_id),
    machine: RoundStateMachine = Depends(get_round_machine)
):
    """结束对战并返回最终排名"""
    return await machine.finish(room_id, session_id)
