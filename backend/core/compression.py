# backend/core/compression.py
# 功能: 补丁负载的压缩/解压，算法标识与负载一起显式存储
# 主要类: CompressionCodec
# 设计:
#   - 压缩失败 → 以 "none" 原样存储，不丢写入
#   - 解压失败 → CompressionFailure，绝不返回近似内容

"""
压缩编解码器

支持算法:
    none - 不压缩
    zlib - 标准库 zlib（默认）
    zstd - zstandard
"""

import logging
import zlib

import zstandard

from core.errors import CompressionFailure

logger = logging.getLogger("compression")

ALGORITHM_NONE = "none"
ALGORITHM_ZLIB = "zlib"
ALGORITHM_ZSTD = "zstd"

ALGORITHMS = (ALGORITHM_NONE, ALGORITHM_ZLIB, ALGORITHM_ZSTD)


class CompressionCodec:
    """按配置的算法压缩，按负载上的标识解压"""

    def __init__(self, algorithm: str = ALGORITHM_ZLIB, level: int = 6):
        if algorithm not in ALGORITHMS:
            raise ValueError(f"不支持的压缩算法: {algorithm}")
        self.algorithm = algorithm
        self.level = level

    def _compress_with(self, algorithm: str, data: bytes) -> bytes:
        if algorithm == ALGORITHM_ZLIB:
            return zlib.compress(data, self.level)
        if algorithm == ALGORITHM_ZSTD:
            return zstandard.ZstdCompressor(level=self.level).compress(data)
        return data

    def compress(self, data: bytes) -> tuple[str, bytes]:
        """
        压缩负载。

        输出:
            (algorithm_id, compressed_bytes)
            压缩失败时返回 ("none", data)
        """
        if self.algorithm == ALGORITHM_NONE:
            return ALGORITHM_NONE, data
        try:
            return self.algorithm, self._compress_with(self.algorithm, data)
        except Exception as e:
            logger.warning("[压缩] %s 压缩失败，改为不压缩存储: %s", self.algorithm, e)
            return ALGORITHM_NONE, data

    def decompress(self, algorithm: str, data: bytes) -> bytes:
        """按存储的算法标识解压；任何失败都抛 CompressionFailure"""
        if algorithm == ALGORITHM_NONE:
            return data
        try:
            if algorithm == ALGORITHM_ZLIB:
                return zlib.decompress(data)
            if algorithm == ALGORITHM_ZSTD:
                return zstandard.ZstdDecompressor().decompress(data)
        except (zlib.error, zstandard.ZstdError) as e:
            raise CompressionFailure(f"{algorithm} 负载解压失败（数据损坏？）: {e}")
        raise CompressionFailure(f"未知的压缩算法标识: {algorithm!r}")
