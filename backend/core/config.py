# backend/core/config.py
# 功能: 应用配置管理，从环境变量加载配置
# 主要类: Settings
# 数据结构: Settings(BaseSettings)

"""
配置管理模块
使用 pydantic-settings 从 .env 文件加载配置
"""

from typing import Optional

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """应用配置"""

    # Database
    database_url: str = "sqlite:///./data/song_versions.db"

    # Server
    backend_port: int = 8000
    debug: bool = False
    cors_origins: list[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # ===== 版本历史 =====

    # 每条增量链最多 K 个版本（含快照），到达 K 时强制写全量快照
    version_snapshot_interval: int = 20

    # 压缩后的补丁 < ratio * 全量快照大小 时才写增量
    version_delta_size_ratio: float = 0.6

    # 全量快照小于此字节数时不做大小比较，直接写增量
    version_size_check_min_bytes: int = 512

    # 行数超过此上限时拒绝做行级 diff，改写全量快照
    version_max_diff_lines: int = 5000

    # 补丁压缩算法: "zlib" | "zstd" | "none"
    version_compression: str = "zlib"
    version_compression_level: int = 6

    # 保留窗口
    version_max_versions_per_document: int = 50
    version_manual_grace: int = 10
    version_retention_days: Optional[int] = None
    version_auto_prune: bool = True

    # 自动保存的最小变更行数
    version_min_changed_lines: int = 10

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


@lru_cache()
def get_settings() -> Settings:
    """获取配置单例"""
    return Settings()


settings = get_settings()
