"""
统一的API错误定义与响应构造

所有接口的错误都会被转换为同一种结构：
    {"error": {"code", "message", "details", "retryable", "timestamp"}}
"""

from typing import Any, Dict, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger

from quiz_battle.core.config import settings
from quiz_battle.core.utils import format_timestamp_with_timezone, utcnow


class BattleError(Exception):
    """对战业务错误"""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details
        self.retryable = retryable

    def with_details(self, **details) -> "BattleError":
        """复制一份带额外详情的错误"""
        merged = dict(self.details or {})
        merged.update(details)
        return BattleError(self.code, self.message, self.status_code, merged, self.retryable)

    def __repr__(self) -> str:
        return f"BattleError({self.code!r}, {self.status_code})"


def _error(code: str, message: str, status_code: int, retryable: bool = False) -> BattleError:
    return BattleError(code, message, status_code, None, retryable)


# 认证与授权
MISSING_SESSION = _error("MISSING_SESSION", "Authentication required. Please refresh the page.", 401)
INVALID_SESSION = _error("INVALID_SESSION", "Session expired. Please rejoin the room.", 401)
NOT_PARTICIPANT = _error("NOT_PARTICIPANT", "You are not a participant in this room.", 403)

# 房间与轮次
ROOM_NOT_FOUND = _error("ROOM_NOT_FOUND", "Room not found or has been deleted.", 404)
ROUND_NOT_FOUND = _error("ROUND_NOT_FOUND", "The specified round was not found.", 404)
ROUND_NOT_ACTIVE = _error("ROUND_NOT_ACTIVE", "This round is not currently active.", 400)
ROUND_ALREADY_ANSWERED = _error("ROUND_ALREADY_ANSWERED", "You have already answered this round.", 409)
DEADLINE_PASSED = _error("DEADLINE_PASSED", "The time limit for this round has expired.", 400)
ROOM_NOT_ACTIVE = _error("ROOM_NOT_ACTIVE", "The battle has not been started yet.", 400)
ROOM_ALREADY_STARTED = _error("ROOM_ALREADY_STARTED", "This battle has already been started.", 400)
ROOM_NOT_JOINABLE = _error("ROOM_NOT_JOINABLE", "This room is not currently accepting new participants.", 400)
ROOM_FULL = _error("ROOM_FULL", "This room has reached its maximum capacity.", 400)
ROUNDS_STILL_ACTIVE = _error(
    "ROUNDS_STILL_ACTIVE",
    "Cannot finish battle while there are still active or pending rounds.",
    400,
)
NO_SCOREBOARD_ROUND = _error("NO_SCOREBOARD_ROUND", "There is no round waiting on the scoreboard stage.", 400)
PARTICIPANT_OFFLINE = _error(
    "PARTICIPANT_OFFLINE",
    "You appear to be offline, please reconnect before setting ready.",
    400,
    retryable=True,
)

# 题目
NO_QUESTIONS_AVAILABLE = _error(
    "NO_QUESTIONS_AVAILABLE",
    "No questions are available for the selected language and category.",
    400,
)
QUESTION_GENERATION_FAILED = _error(
    "QUESTION_GENERATION_FAILED",
    "Failed to generate multiple choice questions. Please try again.",
    500,
    retryable=True,
)
MISSING_QUESTION_DATA = _error("MISSING_QUESTION_DATA", "Question data is not available.", 500, retryable=True)

# 系统
INTERNAL_ERROR = _error("INTERNAL_ERROR", "An unexpected error occurred.", 500, retryable=True)
SERVICE_UNAVAILABLE = _error("SERVICE_UNAVAILABLE", "Service temporarily unavailable.", 503, retryable=True)


def not_host(action: str) -> BattleError:
    return BattleError("NOT_HOST", f"Only the room host can {action}.", 403)


def validation_error(message: str, **details) -> BattleError:
    return BattleError("VALIDATION_ERROR", message, 400, details or None)


def round_conflict(message: str) -> BattleError:
    return BattleError("ROUND_CONFLICT", message, 400)


def insufficient_participants(minimum: int, current: int) -> BattleError:
    return BattleError(
        "INSUFFICIENT_PARTICIPANTS",
        f"Need at least {minimum} participants to start the battle. "
        f"Currently {current} participant(s) in the room.",
        400,
        {"required": minimum, "current": current},
        retryable=True,
    )


def participants_not_ready(names) -> BattleError:
    names = list(names)
    return BattleError(
        "PARTICIPANTS_NOT_READY",
        f"Some participants aren't ready yet: {', '.join(names)}.",
        400,
        {"participants": names},
        retryable=True,
    )


def _envelope(code: str, message: str, details, retryable: bool) -> dict:
    return {
        "error": {
            "code": code,
            "message": message,
            "details": details,
            "retryable": retryable,
            "timestamp": format_timestamp_with_timezone(utcnow()),
        }
    }


def create_error_response(error: Exception) -> JSONResponse:
    """把业务错误、校验错误和未知异常统一转换为错误响应"""
    if isinstance(error, BattleError):
        return JSONResponse(
            status_code=error.status_code,
            content=jsonable_encoder(_envelope(error.code, error.message, error.details, error.retryable)),
        )

    if isinstance(error, RequestValidationError):
        return JSONResponse(
            status_code=400,
            content=jsonable_encoder(_envelope(
                "VALIDATION_ERROR",
                "Input validation failed",
                {"issues": error.errors()},
                False,
            )),
        )

    # 未知异常：服务端记录完整信息，客户端只拿到通用提示
    logger.opt(exception=error).error(f"❌ 未处理的API异常: {error!r}")
    details = {"originalMessage": str(error)} if settings.is_development else None
    return JSONResponse(
        status_code=500,
        content=_envelope("INTERNAL_ERROR", "An unexpected error occurred", details, True),
    )
