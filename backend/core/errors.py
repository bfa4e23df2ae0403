# backend/core/errors.py
# 功能: 版本历史的类型化异常
# 主要类: VersioningError 及其子类, ErrorCode
# 数据结构: 每个异常带 code（机器可读）+ message（人可读）

"""
版本历史异常定义

重建失败必须以类型化异常交给调用方，不允许用近似内容兜底。
"""


class ErrorCode:
    """错误代码定义"""
    DOCUMENT_NOT_FOUND = "DOCUMENT_NOT_FOUND"
    VERSION_NOT_FOUND = "VERSION_NOT_FOUND"
    MISSING_BASE_VERSION = "MISSING_BASE_VERSION"
    CORRUPT_PATCH = "CORRUPT_PATCH"
    COMPRESSION_FAILURE = "COMPRESSION_FAILURE"
    RECONSTRUCTION_CANCELLED = "RECONSTRUCTION_CANCELLED"
    VERSION_NUMBER_CONFLICT = "VERSION_NUMBER_CONFLICT"
    DIFF_TOO_LARGE = "DIFF_TOO_LARGE"
    IMMUTABLE_VERSION = "IMMUTABLE_VERSION"
    INVALID_VERSION_TYPE = "INVALID_VERSION_TYPE"


class VersioningError(Exception):
    """版本历史异常基类"""
    code = "VERSIONING_ERROR"

    def __init__(self, message: str, code: str = None):
        self.message = message
        if code:
            self.code = code
        super().__init__(self.message)


class DocumentNotFound(VersioningError):
    """文档没有任何版本"""
    code = ErrorCode.DOCUMENT_NOT_FOUND

    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(f"文档不存在或没有版本历史: {document_id}")


class VersionNotFound(VersioningError):
    """文档存在，但指定版本号不存在（从未写入或已被清理）"""
    code = ErrorCode.VERSION_NOT_FOUND

    def __init__(self, document_id: str, version_number: int):
        self.document_id = document_id
        self.version_number = version_number
        super().__init__(f"版本不存在: {document_id} v{version_number}")


class ReconstructionError(VersioningError):
    """重建某个历史版本失败"""
    code = "RECONSTRUCTION_ERROR"


class MissingBaseVersion(ReconstructionError):
    """增量版本的基础版本缺失或非法（链断裂）"""
    code = ErrorCode.MISSING_BASE_VERSION

    def __init__(self, document_id: str, version_number: int, base_version_number):
        self.document_id = document_id
        self.version_number = version_number
        self.base_version_number = base_version_number
        super().__init__(
            f"v{version_number} 的基础版本 v{base_version_number} 不可用 ({document_id})"
        )


class CorruptPatch(ReconstructionError):
    """补丁越界、残留未消费的基础行，或无法解析"""
    code = ErrorCode.CORRUPT_PATCH


class CompressionFailure(CorruptPatch):
    """已存储的负载无法解压（损坏的负载也是损坏的补丁）"""
    code = ErrorCode.COMPRESSION_FAILURE


class ReconstructionCancelled(ReconstructionError):
    """交互式重建被调用方取消"""
    code = ErrorCode.RECONSTRUCTION_CANCELLED


class VersionNumberConflict(VersioningError):
    """并发追加竞争：期望的 head 与实际 head 不一致"""
    code = ErrorCode.VERSION_NUMBER_CONFLICT

    def __init__(self, document_id: str, expected_head: int, actual_head: int):
        self.document_id = document_id
        self.expected_head = expected_head
        self.actual_head = actual_head
        super().__init__(
            f"版本号冲突 ({document_id}): 期望 head=v{expected_head}，实际 head=v{actual_head}，请刷新后重试"
        )


class DiffTooLarge(VersioningError):
    """行数超过上限，拒绝行级 diff"""
    code = ErrorCode.DIFF_TOO_LARGE

    def __init__(self, line_count: int, max_lines: int):
        self.line_count = line_count
        self.max_lines = max_lines
        super().__init__(f"行数 {line_count} 超过 diff 上限 {max_lines}")


class ImmutableVersionError(VersioningError):
    """版本写入后不可修改"""
    code = ErrorCode.IMMUTABLE_VERSION


class InvalidVersionType(VersioningError):
    code = ErrorCode.INVALID_VERSION_TYPE

    def __init__(self, version_type: str):
        self.version_type = version_type
        super().__init__(f"未知的版本类型: {version_type}")
