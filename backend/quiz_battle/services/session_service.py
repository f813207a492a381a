"""
会话服务
"""

from typing import Optional

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from quiz_battle.core import errors
from quiz_battle.core.utils import epoch_ms, format_timestamp_with_timezone, generate_id, slugify, utcnow
from quiz_battle.models.session import BattleSession
from quiz_battle.schemas.battle_schemas import SessionCreate


def session_to_dict(session: BattleSession) -> dict:
    return {
        "sessionId": session.id,
        "id": session.id,
        "display_name": session.display_name,
        "fingerprint_hash": session.fingerprint_hash,
        "created_at": format_timestamp_with_timezone(session.created_at),
        "last_active_at": format_timestamp_with_timezone(session.last_active_at),
    }


def require_session(db: Session, session_id: Optional[str]) -> BattleSession:
    """校验Cookie中的会话ID"""
    if not session_id:
        raise errors.MISSING_SESSION
    session = db.query(BattleSession).filter(BattleSession.id == session_id).first()
    if not session:
        raise errors.INVALID_SESSION
    return session


class SessionService:
    """浏览器会话管理"""

    def __init__(self, db: Session):
        self.db = db

    async def create_or_refresh(self, data: SessionCreate) -> BattleSession:
        """按指纹查找已有会话；存在则刷新，不存在则新建"""
        display_name = data.display_name.strip() or data.display_name
        fingerprint = data.fingerprint_hash or f"fp-{slugify(display_name)}-{epoch_ms()}"
        now = utcnow()

        existing = self.db.query(BattleSession).filter(BattleSession.fingerprint_hash == fingerprint).first()
        if existing:
            if existing.display_name != display_name:
                existing.display_name = display_name
            existing.last_active_at = now
            self.db.commit()
            self.db.refresh(existing)
            return existing

        session = BattleSession(
            id=generate_id("battle-session"),
            display_name=display_name,
            fingerprint_hash=fingerprint,
            created_at=now,
            last_active_at=now,
        )
        self.db.add(session)
        try:
            self.db.commit()
        except IntegrityError:
            # 并发请求用同一指纹先创建了会话
            self.db.rollback()
            existing = self.db.query(BattleSession).filter(BattleSession.fingerprint_hash == fingerprint).first()
            if not existing:
                raise
            return existing

        self.db.refresh(session)
        logger.info(f"🆕 创建会话 {session.id} ({display_name})")
        return session
