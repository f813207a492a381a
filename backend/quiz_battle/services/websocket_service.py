"""
WebSocket连接管理与对战事件推送服务
"""

import json
import time
from typing import Any, Dict, List, Optional

from fastapi import WebSocket
from loguru import logger


class WebSocketManager:
    """WebSocket连接管理器（按房间分组）"""

    def __init__(self):
        # 房间订阅者连接
        self.room_connections: Dict[str, List[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, room_id: str):
        """接受连接并加入房间"""
        await websocket.accept()
        connections = self.room_connections.setdefault(room_id, [])

        # 检查是否已存在，避免重复连接
        if websocket not in connections:
            connections.append(websocket)
            logger.info(f"新连接加入房间 {room_id}，当前连接数: {len(connections)}")

    def disconnect(self, websocket: WebSocket, room_id: str):
        """断开连接"""
        connections = self.room_connections.get(room_id)
        if connections and websocket in connections:
            connections.remove(websocket)
            logger.info(f"连接断开房间 {room_id}，当前连接数: {len(connections)}")
            if not connections:
                del self.room_connections[room_id]

    def connection_count(self, room_id: str) -> int:
        return len(self.room_connections.get(room_id, []))

    async def send_personal_message(self, message: dict, websocket: WebSocket):
        """发送个人消息"""
        try:
            await websocket.send_text(json.dumps(message, ensure_ascii=False, default=str))
        except Exception as e:
            logger.warning(f"发送个人消息失败: {e}")

    async def broadcast_to_room(self, message: dict, room_id: str) -> int:
        """向房间内所有订阅者广播消息，返回成功数量"""
        connections = list(self.room_connections.get(room_id, []))  # 创建副本进行迭代
        if not connections:
            logger.debug(f"房间 {room_id} 没有活跃连接，跳过广播")
            return 0

        logger.debug(f"📡 向房间 {room_id} 的 {len(connections)} 个连接广播事件: {message.get('event', 'unknown')}")

        message_text = json.dumps(message, ensure_ascii=False, default=str)
        failed_connections = []
        success_count = 0

        for connection in connections:
            try:
                await connection.send_text(message_text)
                success_count += 1
            except Exception as e:
                logger.warning(f"广播消息失败: {e}")
                failed_connections.append(connection)

        # 移除失败的连接
        for failed_connection in failed_connections:
            self.disconnect(failed_connection, room_id)

        if failed_connections:
            logger.info(f"移除 {len(failed_connections)} 个失效连接，剩余连接数: {self.connection_count(room_id)}")

        return success_count

    async def publish_battle_event(self, room_id: str, event: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        """发布对战事件；推送失败只记录日志，不影响调用方"""
        message = {
            "type": "battle_event",
            "roomId": room_id,
            "event": event,
            "payload": {"sequence": int(time.time() * 1000), **(payload or {})},
        }
        try:
            await self.broadcast_to_room(message, room_id)
            logger.info(f"✅ 已发布事件 {event} -> room:{room_id}")
            return True
        except Exception as e:
            logger.error(f"❌ 发布事件 {event} 到房间 {room_id} 失败: {e}")
            return False

# 使用全局WebSocket连接管理器
_manager: Optional[WebSocketManager] = None


def get_websocket_manager() -> WebSocketManager:
    """获取全局WebSocket管理器实例"""
    global _manager
    if _manager is None:
        _manager = WebSocketManager()
    return _manager
