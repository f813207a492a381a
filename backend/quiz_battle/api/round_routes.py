"""
轮次API路由
"""

from typing import Optional

from fastapi import APIRouter, Depends

from quiz_battle.api.deps import get_round_machine, get_session_id
from quiz_battle.schemas.battle_schemas import AnswerSubmit
from quiz_battle.services.round_service import RoundStateMachine


router = APIRouter()


@router.post("/{room_id}/rounds/{round_no}/reveal")
async def reveal_round(
    room_id: str,
    round_no: int,
    session_id: Optional[str] = Depends(get_session_id),
    machine: RoundStateMachine = Depends(get_round_machine)
):
    """揭晓轮次（重新揭晓当前轮次会重置截止时间）"""
    return await machine.reveal(room_id, round_no, session_id)


@router.post("/{room_id}/rounds/{round_no}/answer")
async def submit_answer(
    room_id: str,
    round_no: int,
    data: AnswerSubmit,
    session_id: Optional[str] = Depends(get_session_id),
    machine: RoundStateMachine = Depends(get_round_machine)
):
    """提交答案"""
    return await machine.submit_answer(room_id, round_no, session_id, data.answer_text, data.choice_id)


@router.post("/{room_id}/rounds/{round_no}/close")
async def close_round(
    room_id: str,
    round_no: int,
    session_id: Optional[str] = Depends(get_session_id),
    machine: RoundStateMachine = Depends(get_round_machine)
):
    """结束本轮并返回本轮计分板"""
    return await machine.close_round(room_id, round_no, session_id)
