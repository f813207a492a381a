"""
数据库配置
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from loguru import logger

from quiz_battle.core.config import settings


def _connect_args(url: str) -> dict:
    # SQLite需要允许跨线程使用连接
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args(settings.DATABASE_URL),
    echo=False  # 设置为True可以看到SQL查询日志
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


Base = declarative_base()


def get_db():
    """获取数据库会话"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def import_models():
    """导入所有模型，确保它们注册到Base.metadata"""
    from quiz_battle.models.session import BattleSession  # noqa: F401
    from quiz_battle.models.room import Room  # noqa: F401
    from quiz_battle.models.team import Team  # noqa: F401
    from quiz_battle.models.participant import Participant  # noqa: F401
    from quiz_battle.models.round_model import Round  # noqa: F401
    from quiz_battle.models.answer import Answer  # noqa: F401
    from quiz_battle.models.question import QuizCategory, QuizQuestion  # noqa: F401


async def init_db(bind=None):
    """初始化数据库"""
    import_models()

    # 创建所有表
    Base.metadata.create_all(bind=bind or engine)
    logger.info("✅ 数据库初始化完成")
