# backend/api/versions.py
# 功能: 歌谱版本历史 API
# 主要路由: /api/songs/{document_id}/versions (list/append/purge),
#           /stats, /compare, /integrity, /prune,
#           /{version_number} (detail), /{version_number}/restore
# 错误处理: register_exception_handlers() 把 VersioningError 映射为 JSON 错误响应

"""
版本历史 API
支持保存新版本、查看历史版本列表、查看任意历史版本内容、比较两个版本、恢复到指定版本

路由函数都是同步函数，FastAPI 在线程池中执行，重建等阻塞操作不会卡住事件循环
"""

from typing import Optional, List
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import logging

from core.errors import (
    VersioningError,
    DocumentNotFound,
    VersionNotFound,
    ReconstructionError,
    VersionNumberConflict,
    DiffTooLarge,
    InvalidVersionType,
)
from core.models import Author, DocumentSnapshot, VersionMetadata
from core.version_service import VersionStore, get_version_store

logger = logging.getLogger("versions")

router = APIRouter(prefix="/api/songs/{document_id}/versions", tags=["versions"])


# ============== Schemas ==============

class SnapshotIn(BaseModel):
    title: str
    body: str
    content_format: str = "chordPro"
    artist: Optional[str] = None
    original_key: Optional[str] = None
    tempo: Optional[int] = None
    time_signature: Optional[str] = None
    capo: Optional[int] = None
    notes: Optional[str] = None
    tags: List[str] = Field(default_factory=list)

    def to_snapshot(self) -> DocumentSnapshot:
        return DocumentSnapshot(
            title=self.title,
            body=self.body,
            content_format=self.content_format,
            artist=self.artist,
            original_key=self.original_key,
            tempo=self.tempo,
            time_signature=self.time_signature,
            capo=self.capo,
            notes=self.notes,
            tags=tuple(self.tags),
        )


class AppendVersionRequest(BaseModel):
    snapshot: SnapshotIn
    author_name: str
    author_id: Optional[str] = None
    version_type: str = "autoSave"
    description: Optional[str] = None
    expected_head: Optional[int] = None


class RestoreRequest(BaseModel):
    author_name: str
    author_id: Optional[str] = None
    description: Optional[str] = None
    expected_head: Optional[int] = None


class PruneRequest(BaseModel):
    keep_last: Optional[int] = None
    max_age_days: Optional[int] = None


class VersionItem(BaseModel):
    id: str
    version_number: int
    created_at: str
    author_name: str
    author_id: Optional[str] = None
    version_type: str
    change_description: Optional[str] = None
    change_summary: str
    is_delta: bool
    base_version_number: Optional[int] = None
    title: str
    artist: Optional[str] = None
    content_format: str
    original_key: Optional[str] = None
    tempo: Optional[int] = None
    time_signature: Optional[str] = None
    capo: Optional[int] = None
    notes: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    compression: str
    uncompressed_size: int
    storage_size: int
    compression_ratio: float


class VersionListResponse(BaseModel):
    document_id: str
    head_version: int
    versions: List[VersionItem]


class VersionDetailResponse(BaseModel):
    version: VersionItem
    content: str


class DiffLineItem(BaseModel):
    kind: str  # "keep" | "delete" | "insert"
    content: str


class MetadataChangeItem(BaseModel):
    field: str
    old_value: str
    new_value: str


class CompareResponse(BaseModel):
    from_version: int
    to_version: int
    added_count: int
    removed_count: int
    lines: List[DiffLineItem]
    metadata_changes: List[MetadataChangeItem]


class StatsResponse(BaseModel):
    version_count: int
    total_uncompressed_size: int
    total_storage_size: int
    delta_version_count: int
    compression_ratio: float


class IntegrityResponse(BaseModel):
    ok: bool
    problems: List[str]


class PruneResponse(BaseModel):
    deleted: List[int]


class PurgeResponse(BaseModel):
    deleted_count: int


_OP_KINDS = {" ": "keep", "-": "delete", "+": "insert"}


def _to_item(v: VersionMetadata) -> VersionItem:
    return VersionItem(
        id=v.id,
        version_number=v.version_number,
        created_at=v.created_at.isoformat() if v.created_at else "",
        author_name=v.author_name,
        author_id=v.author_id,
        version_type=v.version_type,
        change_description=v.change_description,
        change_summary=v.change_summary,
        is_delta=v.is_delta,
        base_version_number=v.base_version_number,
        title=v.title,
        artist=v.artist,
        content_format=v.content_format,
        original_key=v.original_key,
        tempo=v.tempo,
        time_signature=v.time_signature,
        capo=v.capo,
        notes=v.notes,
        tags=list(v.tags),
        compression=v.compression,
        uncompressed_size=v.uncompressed_size,
        storage_size=v.storage_size,
        compression_ratio=round(v.compression_ratio, 2),
    )


# ============== Endpoints ==============

@router.get("", response_model=VersionListResponse)
def list_versions(document_id: str, store: VersionStore = Depends(get_version_store)):
    """获取歌谱的所有历史版本（新的在前）"""
    versions = store.list_versions(document_id)
    return VersionListResponse(
        document_id=document_id,
        head_version=versions[0].version_number if versions else 0,
        versions=[_to_item(v) for v in versions],
    )


@router.post("", response_model=VersionItem, status_code=201)
def append_version(
    document_id: str,
    data: AppendVersionRequest,
    store: VersionStore = Depends(get_version_store),
):
    """保存一个新版本"""
    meta = store.append_version(
        document_id,
        data.snapshot.to_snapshot(),
        Author(name=data.author_name, account_id=data.author_id),
        version_type=data.version_type,
        description=data.description,
        expected_head=data.expected_head,
    )
    return _to_item(meta)


@router.delete("", response_model=PurgeResponse)
def purge_versions(document_id: str, store: VersionStore = Depends(get_version_store)):
    """删除歌谱的全部历史（歌谱被删除时调用）"""
    return PurgeResponse(deleted_count=store.purge_document(document_id))


@router.get("/stats", response_model=StatsResponse)
def storage_stats(document_id: str, store: VersionStore = Depends(get_version_store)):
    stats = store.storage_stats(document_id)
    return StatsResponse(
        version_count=stats.version_count,
        total_uncompressed_size=stats.total_uncompressed_size,
        total_storage_size=stats.total_storage_size,
        delta_version_count=stats.delta_version_count,
        compression_ratio=round(stats.compression_ratio, 2),
    )


@router.get("/compare", response_model=CompareResponse)
def compare_versions(
    document_id: str,
    from_version: int = Query(..., ge=1),
    to_version: int = Query(..., ge=1),
    store: VersionStore = Depends(get_version_store),
):
    """比较两个版本的正文和元数据"""
    patch = store.compare_versions(document_id, from_version, to_version)
    changes = store.compare_metadata(document_id, from_version, to_version)
    return CompareResponse(
        from_version=from_version,
        to_version=to_version,
        added_count=patch.added_count,
        removed_count=patch.removed_count,
        lines=[DiffLineItem(kind=_OP_KINDS[op.kind], content=op.line) for op in patch.ops],
        metadata_changes=[
            MetadataChangeItem(field=c.field, old_value=c.old_value, new_value=c.new_value)
            for c in changes
        ],
    )


@router.get("/integrity", response_model=IntegrityResponse)
def check_integrity(document_id: str, store: VersionStore = Depends(get_version_store)):
    problems = store.check_integrity(document_id)
    return IntegrityResponse(ok=not problems, problems=problems)


@router.post("/prune", response_model=PruneResponse)
def prune_versions(
    document_id: str,
    data: PruneRequest,
    store: VersionStore = Depends(get_version_store),
):
    """清理保留窗口外的旧版本（仍被引用为基础的版本不会删除）"""
    deleted = store.prune(document_id, keep_last=data.keep_last, max_age_days=data.max_age_days)
    return PruneResponse(deleted=deleted)


@router.get("/{version_number}", response_model=VersionDetailResponse)
def get_version(
    document_id: str,
    version_number: int,
    store: VersionStore = Depends(get_version_store),
):
    """获取指定版本的元数据和重建后的正文"""
    meta = store.get_version(document_id, version_number)
    content = store.reconstruct(document_id, version_number)
    return VersionDetailResponse(version=_to_item(meta), content=content)


@router.post("/{version_number}/restore", response_model=VersionItem, status_code=201)
def restore_version(
    document_id: str,
    version_number: int,
    data: RestoreRequest,
    store: VersionStore = Depends(get_version_store),
):
    """恢复到指定版本（追加一个 restore 版本，不改写历史）"""
    meta = store.restore(
        document_id,
        version_number,
        Author(name=data.author_name, account_id=data.author_id),
        description=data.description,
        expected_head=data.expected_head,
    )
    return _to_item(meta)


# ============== 错误处理 ==============

def _status_for(exc: VersioningError) -> int:
    if isinstance(exc, (DocumentNotFound, VersionNotFound)):
        return 404
    if isinstance(exc, VersionNumberConflict):
        return 409
    if isinstance(exc, ReconstructionError):
        return 422
    if isinstance(exc, (DiffTooLarge, InvalidVersionType)):
        return 400
    return 500


def register_exception_handlers(app: FastAPI):
    """把版本历史异常转成 JSON 错误响应"""

    @app.exception_handler(VersioningError)
    async def versioning_exception_handler(request: Request, exc: VersioningError):
        status_code = _status_for(exc)
        if status_code >= 500:
            logger.error(f"[版本] {request.url.path} 失败: {exc}")
        return JSONResponse(
            status_code=status_code,
            content={
                "error": True,
                "code": exc.code,
                "message": exc.message,
            },
        )
