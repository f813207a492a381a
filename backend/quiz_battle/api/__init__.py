"""
API路由模块
"""

from fastapi import APIRouter
from .session_routes import router as session_router
from .room_routes import router as room_router
from .round_routes import router as round_router
from .websocket_routes import router as ws_router

# 创建主路由器
api_router = APIRouter()

# 注册各个功能模块的路由
api_router.include_router(session_router, prefix="/sessions", tags=["会话"])
api_router.include_router(room_router, prefix="/rooms", tags=["房间管理"])
api_router.include_router(round_router, prefix="/rooms", tags=["轮次"])
api_router.include_router(ws_router, prefix="/ws", tags=["WebSocket"])
