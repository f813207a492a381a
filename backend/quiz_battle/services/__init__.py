# 业务逻辑服务包
from .room_service import RoomService
from .round_service import RoundStateMachine
from .presence_service import PresenceService
from .session_service import SessionService
from .scoreboard_service import ScoreboardService
from .websocket_service import WebSocketManager


__all__ = [
    "RoomService",
    "RoundStateMachine",
    "PresenceService",
    "SessionService",
    "ScoreboardService",
    "WebSocketManager",
]
