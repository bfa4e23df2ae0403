# backend/core/version_service.py
# 功能: 歌谱版本历史的唯一入口（写入、重建、恢复、列表、比较、清理）
# 主要类: VersionStore
# 主要函数: get_version_store()
# 数据结构: SongVersion（只追加表，按 (document_id, version_number) 唯一）
#
# 写路径: 文档快照 → diff(与 head 重建内容) → 压缩 → 追加 v(head+1)
# 读路径: 定位目标版本 → 向前找到最近的全量快照 → 依次应用补丁
# 并发: 版本号分配是唯一的串行点（每文档一把锁 + 唯一约束兜底）

"""
版本存储服务。

- append_version: 读 head 与写新版本在同一把文档锁、同一事务内完成
- reconstruct: 迭代（非递归）遍历基础链，单次调用内缓存中间结果
- 所有重建失败都以类型化异常抛出，不用其他快照内容兜底
"""

import hashlib
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Optional, Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, defer

from core.compression import CompressionCodec
from core.config import settings as default_settings
from core.database import get_session_maker
from core.diff_engine import Patch, diff
from core.errors import (
    DocumentNotFound,
    VersionNotFound,
    MissingBaseVersion,
    CorruptPatch,
    ReconstructionError,
    ReconstructionCancelled,
    VersionNumberConflict,
    DiffTooLarge,
)
from core.models import (
    SongVersion,
    VersionMetadata,
    DocumentSnapshot,
    Author,
    validate_version_type,
)
from core.patch_applier import apply_patch
from core.retention_policy import RetentionPolicy

logger = logging.getLogger("version_store")


@dataclass(frozen=True)
class MetadataChange:
    field: str
    old_value: str
    new_value: str


@dataclass(frozen=True)
class VersionStorageStats:
    version_count: int
    total_uncompressed_size: int
    total_storage_size: int
    delta_version_count: int
    compression_ratio: float


def _content_hash(body: str) -> str:
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


# ============== 链遍历 ==============

class _ChainWalker:
    """
    单次调用内的重建器：迭代遍历基础链，缓存已重建的版本正文。
    连续重建一段版本（时间线、对比）时复用同一个实例。
    """

    def __init__(
        self,
        db: Session,
        codec: CompressionCodec,
        document_id: str,
        cancel_event: Optional[threading.Event] = None,
    ):
        self._db = db
        self._codec = codec
        self._document_id = document_id
        self._cancel_event = cancel_event
        self._cache: dict[int, str] = {}

    def _check_cancel(self):
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise ReconstructionCancelled(f"重建已取消: {self._document_id}")

    def load(self, version_number: int) -> Optional[SongVersion]:
        return self._db.query(SongVersion).filter(
            SongVersion.document_id == self._document_id,
            SongVersion.version_number == version_number,
        ).first()

    def load_or_raise(self, version_number: int) -> SongVersion:
        row = self.load(version_number)
        if row is not None:
            return row
        exists = self._db.query(SongVersion.id).filter(
            SongVersion.document_id == self._document_id,
        ).first()
        if not exists:
            raise DocumentNotFound(self._document_id)
        raise VersionNotFound(self._document_id, version_number)

    def _decode(self, version: SongVersion) -> bytes:
        return self._codec.decompress(version.compression, version.payload)

    def _apply(self, version: SongVersion, base_text: Optional[str]) -> str:
        raw = self._decode(version)
        if not version.is_delta:
            try:
                return raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise CorruptPatch(f"v{version.version_number} 正文不是合法的 UTF-8: {e}")
        return apply_patch(base_text, Patch.from_bytes(raw))

    def reconstruct(self, version_number: int) -> str:
        if version_number in self._cache:
            return self._cache[version_number]

        # 1. 向前走到最近的全量快照（或已缓存的版本）
        chain = []
        start_text = None
        current = self.load_or_raise(version_number)
        while True:
            self._check_cancel()
            if current.version_number in self._cache:
                start_text = self._cache[current.version_number]
                break
            chain.append(current)
            if not current.is_delta:
                break
            base_number = current.base_version_number
            if base_number is None or base_number >= current.version_number:
                raise MissingBaseVersion(self._document_id, current.version_number, base_number)
            base = self.load(base_number)
            if base is None:
                raise MissingBaseVersion(self._document_id, current.version_number, base_number)
            current = base

        # 2. 从旧到新依次应用
        text = start_text
        for version in reversed(chain):
            self._check_cancel()
            try:
                text = self._apply(version, text)
            except CorruptPatch as e:
                raise type(e)(f"v{version.version_number}: {e.message}") from e
            if _content_hash(text) != version.content_hash:
                raise CorruptPatch(f"v{version.version_number} 重建结果校验失败")
            self._cache[version.version_number] = text

        return text

    def chain_depth(self, version: SongVersion) -> int:
        """到最近全量快照的跳数（只读链接列，不解压负载）"""
        links = dict(
            self._db.query(SongVersion.version_number, SongVersion.base_version_number).filter(
                SongVersion.document_id == self._document_id,
                SongVersion.is_delta.is_(True),
            ).all()
        )
        depth = 0
        number = version.version_number
        while number in links:
            depth += 1
            number = links[number]
        return depth


# ============== 存储 ==============

class VersionStore:
    """
    版本存储编排器

    所有方法都是阻塞调用，可在工作线程中执行；
    写操作按文档串行，读操作可并发。
    """

    def __init__(
        self,
        session_factory,
        policy: Optional[RetentionPolicy] = None,
        codec: Optional[CompressionCodec] = None,
        max_diff_lines: Optional[int] = None,
        auto_prune: bool = False,
    ):
        self._session_factory = session_factory
        self.policy = policy or RetentionPolicy()
        self.codec = codec or CompressionCodec()
        self.max_diff_lines = max_diff_lines
        self.auto_prune = auto_prune
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @classmethod
    def from_settings(cls, session_factory=None, settings=None) -> "VersionStore":
        settings = settings or default_settings
        return cls(
            session_factory or get_session_maker(),
            policy=RetentionPolicy.from_settings(settings),
            codec=CompressionCodec(settings.version_compression, settings.version_compression_level),
            max_diff_lines=settings.version_max_diff_lines,
            auto_prune=settings.version_auto_prune,
        )

    def _document_lock(self, document_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(document_id)
            if lock is None:
                lock = self._locks[document_id] = threading.Lock()
            return lock

    @staticmethod
    def _head(db: Session, document_id: str) -> Optional[SongVersion]:
        return db.query(SongVersion).filter(
            SongVersion.document_id == document_id,
        ).order_by(SongVersion.version_number.desc()).first()

    # ============== 写入 ==============

    def head_version_number(self, document_id: str) -> int:
        """当前 head 版本号，没有版本时为 0"""
        with self._session_factory() as db:
            row = db.query(SongVersion.version_number).filter(
                SongVersion.document_id == document_id,
            ).order_by(SongVersion.version_number.desc()).first()
            return row[0] if row else 0

    def append_version(
        self,
        document_id: str,
        snapshot: DocumentSnapshot,
        author: Author,
        version_type: str = "autoSave",
        description: Optional[str] = None,
        expected_head: Optional[int] = None,
        restored_from: Optional[int] = None,
    ) -> VersionMetadata:
        """
        追加一个新版本（版本号 = head + 1，由存储分配）。

        Args:
            document_id: 歌谱 ID
            snapshot: 保存时刻的文档内容
            author: 修改人
            version_type: manual / autoSave / restore / import
            description: 修改说明
            expected_head: 调用方认为的当前 head；与实际不符时抛 VersionNumberConflict
            restored_from: restore 类型时被恢复的版本号

        Returns:
            新版本的元数据
        """
        validate_version_type(version_type)

        with self._document_lock(document_id):
            with self._session_factory() as db:
                head_number = 0
                try:
                    with db.begin():
                        head = self._head(db, document_id)
                        head_number = head.version_number if head else 0
                        if expected_head is not None and expected_head != head_number:
                            raise VersionNumberConflict(document_id, expected_head, head_number)

                        version = self._build_version(db, document_id, head, snapshot)
                        version.version_number = head_number + 1
                        version.author_name = author.name
                        version.author_id = author.account_id
                        version.version_type = version_type
                        version.change_description = description
                        version.restored_from_version = restored_from
                        db.add(version)
                except IntegrityError as e:
                    # 另一个写入方（其他进程）抢先写入了同一版本号
                    actual = self.head_version_number(document_id)
                    raise VersionNumberConflict(document_id, head_number, actual) from e

                meta = version.to_metadata()

        kind = f"增量<-v{meta.base_version_number}" if meta.is_delta else "全量"
        logger.info(
            f"[版本] 保存 {document_id[:8]}... v{meta.version_number} ({version_type}, {kind}, "
            f"{meta.uncompressed_size}B → {meta.storage_size}B)"
        )

        if self.auto_prune:
            self.prune(document_id)
        return meta

    def _build_version(
        self,
        db: Session,
        document_id: str,
        head: Optional[SongVersion],
        snapshot: DocumentSnapshot,
    ) -> SongVersion:
        body_bytes = snapshot.body.encode("utf-8")
        metadata_size = snapshot.metadata_size

        version = SongVersion(
            document_id=document_id,
            title=snapshot.title,
            artist=snapshot.artist,
            content_format=snapshot.content_format,
            original_key=snapshot.original_key,
            tempo=snapshot.tempo,
            time_signature=snapshot.time_signature,
            capo=snapshot.capo,
            notes=snapshot.notes,
            tags=list(snapshot.tags),
            is_delta=False,
            base_version_number=None,
            payload=body_bytes,
            compression="none",
            content_hash=_content_hash(snapshot.body),
            uncompressed_size=len(body_bytes) + metadata_size,
        )

        if head is not None:
            walker = _ChainWalker(db, self.codec, document_id)
            depth = walker.chain_depth(head) if head.is_delta else 0
            if not self.policy.needs_full_snapshot(head.version_number, depth):
                delta = self._try_delta(walker, head, snapshot.body, len(body_bytes))
                if delta is not None:
                    version.compression, version.payload = delta
                    version.is_delta = True
                    version.base_version_number = head.version_number

        version.storage_size = len(version.payload) + metadata_size
        return version

    def _try_delta(
        self,
        walker: _ChainWalker,
        head: SongVersion,
        body: str,
        snapshot_bytes: int,
    ) -> Optional[tuple[str, bytes]]:
        """计算相对 head 的压缩补丁；不适合增量时返回 None（改写全量快照）"""
        try:
            head_body = walker.reconstruct(head.version_number)
        except ReconstructionError as e:
            # head 无法重建时写全量快照，新版本不依赖损坏的链
            logger.warning(f"[版本] head v{head.version_number} 重建失败，改写全量快照: {e}")
            return None

        try:
            patch = diff(head_body, body, max_lines=self.max_diff_lines)
        except DiffTooLarge as e:
            logger.info(f"[版本] {e.message}，改写全量快照")
            return None

        algorithm, data = self.codec.compress(patch.to_bytes())
        if not self.policy.prefer_delta(len(data), snapshot_bytes):
            logger.info(
                f"[版本] 补丁 {len(data)}B 相对全量 {snapshot_bytes}B 过大，改写全量快照"
            )
            return None
        return algorithm, data

    # ============== 读取 ==============

    def reconstruct(
        self,
        document_id: str,
        version_number: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        """重建指定版本的正文；失败时抛出具体的 ReconstructionError 子类"""
        with self._session_factory() as db:
            walker = _ChainWalker(db, self.codec, document_id, cancel_event)
            try:
                return walker.reconstruct(version_number)
            except ReconstructionError as e:
                logger.error(f"[版本] 重建 {document_id[:8]}... v{version_number} 失败: {e}")
                raise

    def reconstruct_many(
        self,
        document_id: str,
        version_numbers: Iterable[int],
        cancel_event: Optional[threading.Event] = None,
    ) -> dict[int, str]:
        """按升序重建一组版本，共享中间结果（时间线/对比视图用）"""
        with self._session_factory() as db:
            walker = _ChainWalker(db, self.codec, document_id, cancel_event)
            return {
                number: walker.reconstruct(number)
                for number in sorted(set(version_numbers))
            }

    def get_snapshot(self, document_id: str, version_number: int) -> DocumentSnapshot:
        """元数据 + 重建正文"""
        with self._session_factory() as db:
            walker = _ChainWalker(db, self.codec, document_id)
            row = walker.load_or_raise(version_number)
            return row.to_snapshot(walker.reconstruct(version_number))

    def get_version(self, document_id: str, version_number: int) -> VersionMetadata:
        with self._session_factory() as db:
            row = _ChainWalker(db, self.codec, document_id).load_or_raise(version_number)
            return row.to_metadata()

    def list_versions(self, document_id: str) -> list[VersionMetadata]:
        """全部版本元数据，新的在前（不读取负载）"""
        with self._session_factory() as db:
            rows = db.query(SongVersion).options(defer(SongVersion.payload)).filter(
                SongVersion.document_id == document_id,
            ).order_by(SongVersion.version_number.desc()).all()
            return [row.to_metadata() for row in rows]

    def should_create_version(self, document_id: str, body: str) -> bool:
        """自动保存判断：与 head 相比改动行数是否达到阈值"""
        head_number = self.head_version_number(document_id)
        if head_number == 0:
            return True
        return self.policy.is_significant_change(self.reconstruct(document_id, head_number), body)

    # ============== 恢复 ==============

    def restore(
        self,
        document_id: str,
        version_number: int,
        author: Author,
        description: Optional[str] = None,
        expected_head: Optional[int] = None,
    ) -> VersionMetadata:
        """
        恢复到指定版本：追加一个内容等于该版本的 restore 版本。
        历史不会被改写，被恢复的版本和中间版本都保持原样。
        """
        snapshot = self.get_snapshot(document_id, version_number)
        meta = self.append_version(
            document_id,
            snapshot,
            author,
            version_type="restore",
            description=description or f"Restored from version {version_number}",
            expected_head=expected_head,
            restored_from=version_number,
        )
        logger.info(f"[版本] 恢复 {document_id[:8]}... v{version_number} → v{meta.version_number}")
        return meta

    # ============== 比较 / 统计 ==============

    def compare_versions(self, document_id: str, from_version: int, to_version: int) -> Patch:
        texts = self.reconstruct_many(document_id, (from_version, to_version))
        return diff(texts[from_version], texts[to_version], max_lines=self.max_diff_lines)

    def compare_metadata(self, document_id: str, from_version: int, to_version: int) -> list[MetadataChange]:
        old = self.get_version(document_id, from_version)
        new = self.get_version(document_id, to_version)

        def tempo(v):
            return f"{v.tempo} BPM" if v.tempo is not None else ""

        def capo(v):
            return f"Fret {v.capo}" if v.capo is not None else "None"

        fields = [
            ("Title", old.title, new.title),
            ("Artist", old.artist or "", new.artist or ""),
            ("Key", old.original_key or "", new.original_key or ""),
            ("Tempo", tempo(old), tempo(new)),
            ("Time Signature", old.time_signature or "", new.time_signature or ""),
            ("Capo", capo(old), capo(new)),
        ]
        return [MetadataChange(name, a, b) for name, a, b in fields if a != b]

    def storage_stats(self, document_id: str) -> VersionStorageStats:
        versions = self.list_versions(document_id)
        total_uncompressed = sum(v.uncompressed_size for v in versions)
        total_storage = sum(v.storage_size for v in versions)
        return VersionStorageStats(
            version_count=len(versions),
            total_uncompressed_size=total_uncompressed,
            total_storage_size=total_storage,
            delta_version_count=sum(1 for v in versions if v.is_delta),
            compression_ratio=(
                (1.0 - total_storage / total_uncompressed) * 100.0 if total_uncompressed > 0 else 0.0
            ),
        )

    def check_integrity(self, document_id: str) -> list[str]:
        """链完整性检查，返回问题列表（空表示完好）"""
        versions = {v.version_number: v for v in self.list_versions(document_id)}
        problems = []
        for number, version in sorted(versions.items()):
            if not version.is_delta:
                continue
            hops = 0
            current = version
            while current.is_delta:
                base_number = current.base_version_number
                if base_number is None or base_number >= current.version_number:
                    problems.append(f"v{current.version_number}: 非法基础版本 v{base_number}")
                    break
                if base_number not in versions:
                    problems.append(f"v{current.version_number}: 基础版本 v{base_number} 缺失")
                    break
                hops += 1
                current = versions[base_number]
            else:
                if hops >= self.policy.snapshot_interval:
                    problems.append(
                        f"v{number}: 增量链长度 {hops} 超过上限 {self.policy.snapshot_interval - 1}"
                    )
        return problems

    # ============== 清理 ==============

    def prune(
        self,
        document_id: str,
        keep_last: Optional[int] = None,
        max_age_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> list[int]:
        """删除保留窗口外、且没有存活增量依赖的版本，返回被删除的版本号"""
        with self._document_lock(document_id):
            with self._session_factory() as db:
                with db.begin():
                    rows = db.query(SongVersion).options(defer(SongVersion.payload)).filter(
                        SongVersion.document_id == document_id,
                    ).all()
                    prunable = self.policy.select_prunable(
                        rows, keep_last=keep_last, max_age_days=max_age_days, now=now,
                    )
                    if prunable:
                        db.query(SongVersion).filter(
                            SongVersion.document_id == document_id,
                            SongVersion.version_number.in_(prunable),
                        ).delete(synchronize_session=False)

        if prunable:
            logger.info(f"[版本] 清理 {document_id[:8]}... 删除 {len(prunable)} 个旧版本: {prunable}")
        return prunable

    def purge_document(self, document_id: str) -> int:
        """删除文档的全部历史（文档删除时由调用方显式级联）"""
        with self._document_lock(document_id):
            with self._session_factory() as db:
                with db.begin():
                    count = db.query(SongVersion).filter(
                        SongVersion.document_id == document_id,
                    ).delete(synchronize_session=False)
        logger.info(f"[版本] 删除 {document_id[:8]}... 全部 {count} 个版本")
        return count


@lru_cache()
def get_version_store() -> VersionStore:
    """FastAPI 依赖: 进程内共享的版本存储（共享文档锁）"""
    return VersionStore.from_settings()
