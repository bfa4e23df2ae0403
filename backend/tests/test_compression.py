# backend/tests/test_compression.py
# 功能: 压缩编解码器测试: 压缩失败降级为 none，解压失败抛 CompressionFailure

import os
import sys
import zlib

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from core.compression import CompressionCodec, ALGORITHM_NONE, ALGORITHM_ZLIB, ALGORITHM_ZSTD
from core.errors import CompressionFailure, CorruptPatch


PAYLOAD = (" [G]Amazing grace how [C]sweet the [G]sound\n" * 40).encode("utf-8")


@pytest.mark.parametrize("algorithm", [ALGORITHM_NONE, ALGORITHM_ZLIB, ALGORITHM_ZSTD])
def test_compress_then_decompress(algorithm):
    codec = CompressionCodec(algorithm)
    tag, data = codec.compress(PAYLOAD)
    assert tag == algorithm
    assert codec.decompress(tag, data) == PAYLOAD


def test_repetitive_payload_shrinks():
    tag, data = CompressionCodec(ALGORITHM_ZLIB).compress(PAYLOAD)
    assert tag == ALGORITHM_ZLIB
    assert len(data) < len(PAYLOAD) / 5


def test_decompress_uses_stored_tag_not_configured_algorithm():
    zstd_tag, zstd_data = CompressionCodec(ALGORITHM_ZSTD).compress(PAYLOAD)
    assert CompressionCodec(ALGORITHM_ZLIB).decompress(zstd_tag, zstd_data) == PAYLOAD


def test_compression_failure_falls_back_to_none(monkeypatch):
    codec = CompressionCodec(ALGORITHM_ZLIB)

    def boom(level):
        raise zlib.error("simulated")

    monkeypatch.setattr(codec, "_compress_with", lambda algorithm, data: boom(codec.level))
    tag, data = codec.compress(PAYLOAD)
    assert tag == ALGORITHM_NONE
    assert data == PAYLOAD


@pytest.mark.parametrize("algorithm", [ALGORITHM_ZLIB, ALGORITHM_ZSTD])
def test_truncated_payload_raises(algorithm):
    codec = CompressionCodec(algorithm)
    _, data = codec.compress(PAYLOAD)
    with pytest.raises(CompressionFailure):
        codec.decompress(algorithm, data[: len(data) // 2])


def test_unknown_tag_raises():
    with pytest.raises(CompressionFailure):
        CompressionCodec().decompress("lzfse", b"whatever")


def test_compression_failure_is_a_corrupt_patch():
    assert issubclass(CompressionFailure, CorruptPatch)


def test_rejects_unknown_configured_algorithm():
    with pytest.raises(ValueError):
        CompressionCodec("brotli")
