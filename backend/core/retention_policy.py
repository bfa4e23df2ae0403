# backend/core/retention_policy.py
# 功能: 写入时决定「全量快照 or 增量」，清理时决定哪些旧版本可以删
# 主要类: RetentionPolicy
# 规则:
#   - 增量链长度有上限：新版本会成为快照后的第 K 个版本时强制写全量（K = snapshot_interval）
#   - 压缩后的补丁不小于 delta_size_ratio × 全量快照 → 大改动，写全量
#   - 清理只删没有存活增量依赖的版本；head 永不删除；手动版本受保护

"""
保留策略

版本不可变，所以不存在「把增量改写成快照」的 rebase：
任何仍被保留版本（直接或间接）引用为基础的版本都不可删除。
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Iterable

from core.diff_engine import changed_line_count

logger = logging.getLogger("retention_policy")


class RetentionPolicy:

    def __init__(
        self,
        snapshot_interval: int = 20,
        delta_size_ratio: float = 0.6,
        size_check_min_bytes: int = 512,
        max_versions: int = 50,
        manual_grace: int = 10,
        retention_days: Optional[int] = None,
        min_changed_lines: int = 10,
    ):
        if snapshot_interval < 1:
            raise ValueError("snapshot_interval 至少为 1")
        self.snapshot_interval = snapshot_interval
        self.delta_size_ratio = delta_size_ratio
        self.size_check_min_bytes = size_check_min_bytes
        self.max_versions = max_versions
        self.manual_grace = manual_grace
        self.retention_days = retention_days
        self.min_changed_lines = min_changed_lines

    @classmethod
    def from_settings(cls, settings) -> "RetentionPolicy":
        return cls(
            snapshot_interval=settings.version_snapshot_interval,
            delta_size_ratio=settings.version_delta_size_ratio,
            size_check_min_bytes=settings.version_size_check_min_bytes,
            max_versions=settings.version_max_versions_per_document,
            manual_grace=settings.version_manual_grace,
            retention_days=settings.version_retention_days,
            min_changed_lines=settings.version_min_changed_lines,
        )

    # ============== 写入决策 ==============

    def needs_full_snapshot(self, head_number: int, head_chain_depth: int) -> bool:
        """
        按节奏判断是否必须写全量快照。

        head_chain_depth: 当前 head 到其最近全量快照的跳数（head 本身是快照时为 0）
        """
        if head_number == 0:
            return True
        return head_chain_depth + 1 >= self.snapshot_interval

    def prefer_delta(self, patch_bytes: int, snapshot_bytes: int) -> bool:
        """压缩后的补丁是否足够小，值得以增量存储"""
        if snapshot_bytes < self.size_check_min_bytes:
            return True
        return patch_bytes < self.delta_size_ratio * snapshot_bytes

    def is_significant_change(self, old: Optional[str], new: str) -> bool:
        """自动保存前判断改动是否值得生成新版本"""
        if old is None:
            return True
        return changed_line_count(old, new) >= self.min_changed_lines

    # ============== 清理决策 ==============

    def select_prunable(
        self,
        versions: Iterable,
        keep_last: Optional[int] = None,
        max_age_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> list[int]:
        """
        选出可删除的版本号（升序）。

        输入:
            versions     - 某文档的全部版本（VersionMetadata 或 SongVersion，顺序不限）
            keep_last    - 保留最新的 N 个（默认 max_versions）
            max_age_days - 早于此天数的版本落在窗口外（默认 retention_days，None 表示不按时间）
        """
        keep_last = self.max_versions if keep_last is None else keep_last
        max_age_days = self.retention_days if max_age_days is None else max_age_days
        now = now or datetime.now()

        ordered = sorted(versions, key=lambda v: v.version_number, reverse=True)
        if not ordered:
            return []

        head_number = ordered[0].version_number
        cutoff = now - timedelta(days=max_age_days) if max_age_days is not None else None
        # 手动版本只有在历史明显超长时才允许清理
        allow_manual = len(ordered) >= keep_last + self.manual_grace

        candidates = set()
        for rank, version in enumerate(ordered):
            if version.version_number == head_number:
                continue
            outside = rank >= keep_last
            if cutoff is not None and version.created_at is not None and version.created_at < cutoff:
                outside = True
            if not outside:
                continue
            if version.version_type == "manual" and not allow_manual:
                continue
            candidates.add(version.version_number)

        # 保留版本的基础链（传递闭包）不可删
        by_number = {v.version_number: v for v in ordered}
        protected = set()
        for version in ordered:
            if version.version_number in candidates:
                continue
            current = version
            while current is not None and current.is_delta:
                base_number = current.base_version_number
                if base_number in protected:
                    break
                protected.add(base_number)
                current = by_number.get(base_number)

        prunable = sorted(candidates - protected)
        if prunable:
            logger.debug(
                "[保留策略] 候选 %d 个，受基础链保护 %d 个，可删 %s",
                len(candidates), len(candidates & protected), prunable,
            )
        return prunable
