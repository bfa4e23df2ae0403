# backend/core/database.py
# 功能: 数据库连接管理
# 主要函数: get_engine(), get_session_maker(), init_db(), get_db()
# 数据结构: Base (SQLAlchemy declarative base)

"""
数据库连接管理模块
使用 SQLAlchemy 2.0 同步模式（版本读写都是本地阻塞调用，可放在线程池中执行）
"""

from functools import lru_cache
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.pool import StaticPool

from core.config import settings


class Base(DeclarativeBase):
    """SQLAlchemy 声明式基类"""
    pass


def create_db_engine(database_url: str, echo: bool = False):
    """
    按 URL 创建引擎
    - 内存 SQLite 使用 StaticPool，所有 Session 共享同一连接
    - 文件 SQLite 自动创建所在目录
    """
    url = make_url(database_url)
    kwargs = {"echo": echo}

    if url.get_backend_name() == "sqlite":
        kwargs["connect_args"] = {"check_same_thread": False}
        if not url.database or url.database == ":memory:":
            kwargs["poolclass"] = StaticPool
        else:
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    return create_engine(database_url, **kwargs)


@lru_cache()
def get_engine():
    """获取数据库引擎（进程内单例）"""
    return create_db_engine(settings.database_url, echo=settings.debug)


def get_session_maker(engine=None):
    """
    获取Session工厂

    expire_on_commit=False: 提交后返回给调用方的对象仍可读取（版本记录本身不可变）
    """
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine or get_engine(),
    )


def init_db(engine=None):
    """初始化数据库（创建所有表）"""
    engine = engine or get_engine()
    # 导入所有模型以确保它们被注册
    from core import models  # noqa
    Base.metadata.create_all(bind=engine)
