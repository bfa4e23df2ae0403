# backend/core/models/song_version.py
# 功能: 歌谱版本历史模型，只追加，按 (document_id, version_number) 唯一
# 主要类: SongVersion (ORM), VersionMetadata / DocumentSnapshot / Author (只读值对象)
# 数据结构: 元数据全量存储 + 正文负载（全量正文 或 压缩后的行级补丁）

"""
SongVersion 模型
记录歌谱每次保存时的状态快照

- 元数据（标题、调、速度、拍号、变调夹、备注、标签）每个版本都全量存储
- 正文: 全量快照直接存正文；增量版本存相对 base_version_number 的压缩补丁
- 版本写入后不可修改（before_update 钩子拒绝任何更新）
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String, Text, Integer, Boolean, JSON, LargeBinary, Index, UniqueConstraint, event,
)
from sqlalchemy.orm import Mapped, mapped_column

from core.errors import ImmutableVersionError, InvalidVersionType
from core.models.base import BaseModel


# 版本类型（持久化取值沿用客户端的命名）
VERSION_TYPES = {
    "manual": "手动保存",
    "autoSave": "自动保存",
    "restore": "版本恢复",
    "import": "初次导入",
}


def validate_version_type(version_type: str) -> str:
    if version_type not in VERSION_TYPES:
        raise InvalidVersionType(version_type)
    return version_type


@dataclass(frozen=True)
class DocumentSnapshot:
    """保存那一刻的歌谱内容（由文档内容访问方提供，不可变）"""
    title: str
    body: str
    content_format: str = "chordPro"
    artist: Optional[str] = None
    original_key: Optional[str] = None
    tempo: Optional[int] = None
    time_signature: Optional[str] = None
    capo: Optional[int] = None
    notes: Optional[str] = None
    tags: tuple = ()

    @property
    def metadata_size(self) -> int:
        """计入存储统计的元数据字节数（标题 + 艺人 + 备注）"""
        return (
            len(self.title.encode("utf-8"))
            + len((self.artist or "").encode("utf-8"))
            + len((self.notes or "").encode("utf-8"))
        )


@dataclass(frozen=True)
class Author:
    """作者身份：显示名 + 可选的持久账号 ID"""
    name: str
    account_id: Optional[str] = None


@dataclass(frozen=True)
class VersionMetadata:
    """版本列表用的轻量视图（不含负载，不触发解压）"""
    id: str
    document_id: str
    version_number: int
    created_at: datetime
    author_name: str
    author_id: Optional[str]
    change_description: Optional[str]
    version_type: str
    is_delta: bool
    base_version_number: Optional[int]
    restored_from_version: Optional[int]
    title: str
    artist: Optional[str]
    content_format: str
    original_key: Optional[str]
    tempo: Optional[int]
    time_signature: Optional[str]
    capo: Optional[int]
    notes: Optional[str]
    tags: tuple = field(default_factory=tuple)
    compression: str = "none"
    uncompressed_size: int = 0
    storage_size: int = 0

    @property
    def compression_ratio(self) -> float:
        return compression_ratio(self)

    @property
    def change_summary(self) -> str:
        """版本摘要：有描述用描述，否则按类型给默认文案"""
        if self.change_description:
            return self.change_description
        if self.version_type == "manual":
            return "Manual save"
        if self.version_type == "restore":
            return f"Restored from version {self.restored_from_version or self.version_number}"
        if self.version_type == "import":
            return "Initial import"
        return "Auto-saved changes"


def compression_ratio(version) -> float:
    """节省的存储百分比: (1 - storage_size / uncompressed_size) * 100"""
    if not version.uncompressed_size:
        return 0.0
    return (1.0 - version.storage_size / version.uncompressed_size) * 100.0


class SongVersion(BaseModel):
    """
    歌谱历史版本

    Attributes:
        document_id: 歌谱 ID
        version_number: 版本号（从 1 开始，由存储分配，单文档内严格递增）
        author_name / author_id: 修改人显示名 / 账号 ID
        change_description: 修改说明
        version_type: manual / autoSave / restore / import
        is_delta: True 时 payload 为补丁，base_version_number 指向基础版本
        restored_from_version: restore 类型时记录被恢复的版本号
        payload / compression: 正文负载及其压缩算法标识（显式存储，不推断）
        content_hash: 重建后正文的 sha256，用于校验
        uncompressed_size / storage_size: 存储统计
    """
    __tablename__ = "song_versions"
    __table_args__ = (
        UniqueConstraint("document_id", "version_number", name="uq_song_versions_document_number"),
        Index("idx_song_versions_document_base", "document_id", "base_version_number"),
    )

    document_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)

    author_name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    author_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    change_description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    version_type: Mapped[str] = mapped_column(String(20), nullable=False, default="autoSave")

    is_delta: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    base_version_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    restored_from_version: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # 元数据快照
    title: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    artist: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    content_format: Mapped[str] = mapped_column(String(20), nullable=False, default="chordPro")
    original_key: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    tempo: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    time_signature: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    capo: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tags: Mapped[list] = mapped_column(JSON, default=list)

    # 正文负载
    payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    compression: Mapped[str] = mapped_column(String(20), nullable=False, default="none")
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    uncompressed_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    storage_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def to_metadata(self) -> VersionMetadata:
        return VersionMetadata(
            id=self.id,
            document_id=self.document_id,
            version_number=self.version_number,
            created_at=self.created_at,
            author_name=self.author_name,
            author_id=self.author_id,
            change_description=self.change_description,
            version_type=self.version_type,
            is_delta=self.is_delta,
            base_version_number=self.base_version_number,
            restored_from_version=self.restored_from_version,
            title=self.title,
            artist=self.artist,
            content_format=self.content_format,
            original_key=self.original_key,
            tempo=self.tempo,
            time_signature=self.time_signature,
            capo=self.capo,
            notes=self.notes,
            tags=tuple(self.tags or ()),
            compression=self.compression,
            uncompressed_size=self.uncompressed_size,
            storage_size=self.storage_size,
        )

    def to_snapshot(self, body: str) -> DocumentSnapshot:
        """元数据 + 重建出的正文 → 文档快照"""
        return DocumentSnapshot(
            title=self.title,
            body=body,
            content_format=self.content_format,
            artist=self.artist,
            original_key=self.original_key,
            tempo=self.tempo,
            time_signature=self.time_signature,
            capo=self.capo,
            notes=self.notes,
            tags=tuple(self.tags or ()),
        )

    def __repr__(self):
        kind = f"delta<-v{self.base_version_number}" if self.is_delta else "full"
        return f"<SongVersion doc={self.document_id[:8]}... v{self.version_number} ({kind})>"


@event.listens_for(SongVersion, "before_update")
def _refuse_update(mapper, connection, target):
    raise ImmutableVersionError(
        f"版本写入后不可修改: {target.document_id} v{target.version_number}"
    )
