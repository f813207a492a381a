"""
会话API路由
"""

from fastapi import APIRouter, Depends, Response

from quiz_battle.api.deps import get_session_service
from quiz_battle.core.config import settings
from quiz_battle.schemas.battle_schemas import SessionCreate
from quiz_battle.services.session_service import SessionService, session_to_dict


router = APIRouter()


@router.post("")
async def create_session(
    data: SessionCreate,
    response: Response,
    session_service: SessionService = Depends(get_session_service)
):
    """创建或刷新会话，并写入会话Cookie"""
    session = await session_service.create_or_refresh(data)
    response.set_cookie(
        key=settings.SESSION_COOKIE_NAME,
        value=session.id,
        max_age=settings.SESSION_COOKIE_MAX_AGE,
        path="/",
        httponly=True,
        samesite="lax",
        secure=settings.is_production,
    )
    return session_to_dict(session)
