"""
WebSocket API路由
"""

import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from loguru import logger

from quiz_battle.services.websocket_service import get_websocket_manager


router = APIRouter()


@router.websocket("/rooms/{room_id}")
async def websocket_room_endpoint(websocket: WebSocket, room_id: str):
    """房间事件订阅端点"""
    manager = get_websocket_manager()
    await manager.connect(websocket, room_id)

    try:
        # 发送欢迎消息
        await manager.send_personal_message({
            "type": "connected",
            "message": f"Subscribed to room {room_id}",
            "roomId": room_id,
        }, websocket)

        # 监听消息
        while True:
            data = await websocket.receive_text()
            try:
                message_data = json.loads(data)
            except json.JSONDecodeError:
                logger.debug(f"收到无效JSON消息: {data[:100]}")
                continue

            if isinstance(message_data, dict) and message_data.get("type") == "ping":
                await manager.send_personal_message({
                    "type": "pong",
                    "timestamp": message_data.get("timestamp"),
                }, websocket)

    except WebSocketDisconnect:
        manager.disconnect(websocket, room_id)
