# backend/main.py
# 功能: 歌谱版本历史服务入口
# 主要函数: create_app(), _setup_logging(), _ensure_db_schema_on_startup()

"""
Song Version History - Backend Entry Point
启动: python main.py  或  uvicorn main:app
"""

import sys
import os
import logging

# Windows 控制台默认编码不是 UTF-8，中文日志会触发编码错误
if sys.platform == "win32":
    sys.stdout.reconfigure(encoding='utf-8', errors='replace')
    sys.stderr.reconfigure(encoding='utf-8', errors='replace')
    os.environ.setdefault("PYTHONIOENCODING", "utf-8")

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.config import settings

# 版本历史各模块的 logger 名
VERSION_LOGGERS = ("version_store", "retention_policy", "compression", "versions", "startup")


def _setup_logging():
    """版本历史日志输出到 stdout；其余库（SQLAlchemy 等）保持 root 的 INFO"""
    level = logging.DEBUG if settings.debug else logging.INFO
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)-5s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    for name in VERSION_LOGGERS:
        version_logger = logging.getLogger(name)
        version_logger.setLevel(level)
        if not version_logger.handlers:
            version_logger.addHandler(handler)
        version_logger.propagate = False

    logging.basicConfig(level=logging.INFO, handlers=[handler])


_setup_logging()
logger = logging.getLogger("startup")


def _ensure_db_schema_on_startup():
    """建表（已存在则跳过）；失败只记录，由首个请求暴露具体错误"""
    from core.database import init_db
    try:
        init_db()
    except Exception as e:
        logger.warning(f"[启动] 版本表初始化失败: {e}")
        return
    logger.info(
        f"[启动] 版本表就绪 (快照间隔={settings.version_snapshot_interval}, "
        f"压缩={settings.version_compression}, 保留={settings.version_max_versions_per_document})"
    )


def create_app() -> FastAPI:
    app = FastAPI(
        title="Song Version History",
        description="歌谱版本历史：快照、增量补丁、任意版本重建与恢复",
        version="0.1.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "message": "Song Version History is running"}

    from api import versions
    app.include_router(versions.router)
    versions.register_exception_handlers(app)

    @app.on_event("startup")
    def on_startup():
        _ensure_db_schema_on_startup()

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=settings.debug,
    )
