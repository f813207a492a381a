#!/usr/bin/env python3
"""
Quiz Battle - 后端主入口
"""

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from quiz_battle.api import api_router
from quiz_battle.core.config import settings
from quiz_battle.core.database import init_db
from quiz_battle.core.errors import BattleError, create_error_response
from quiz_battle.core.logging import setup_logging


app = FastAPI(
    title=settings.APP_NAME,
    description="多人实时问答对战后端API",
    version=settings.VERSION
)

# CORS设置
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 统一错误响应
@app.exception_handler(BattleError)
async def battle_error_handler(request: Request, exc: BattleError):
    return create_error_response(exc)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return create_error_response(exc)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    return create_error_response(exc)

# 注册API路由
app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup_event():
    """应用启动时的初始化"""
    setup_logging()
    logger.info(f"🚀 启动 {settings.APP_NAME} 后端服务 ({settings.ENVIRONMENT})...")
    await init_db()
    if not settings.ai_enabled:
        logger.warning("⚠️ 未配置AI服务，开放题将使用题库出题，选择题房间无法开始")


@app.get("/")
async def root():
    """根路径健康检查"""
    return {"message": f"{settings.APP_NAME} 后端运行中", "status": "healthy"}


@app.get("/health")
async def health_check():
    """健康检查端点"""
    return {"status": "healthy", "service": "quiz-battle", "version": settings.VERSION}

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.is_development,
        log_level=settings.LOG_LEVEL.lower()
    )
