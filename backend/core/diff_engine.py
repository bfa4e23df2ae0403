# backend/core/diff_engine.py
"""
行级 diff 引擎 - 计算两段正文之间的补丁
主要函数: diff(), changed_line_count(), split_lines(), join_lines()
数据结构: Patch（有序的 PatchOp 序列）, PatchOp(kind, line)

补丁持久化格式（跨实现保持稳定）:
    每条记录 = 前缀 + 行内容，记录之间用 "\n" 连接
    "+" 插入一行 / "-" 删除一个基础行 / " " 保留一个基础行
"""
from dataclasses import dataclass
from typing import NamedTuple, Optional

from core.errors import CorruptPatch, DiffTooLarge

KEEP = " "
DELETE = "-"
INSERT = "+"

_KINDS = (KEEP, DELETE, INSERT)


def split_lines(text: str) -> list[str]:
    """按 "\n" 切行；join_lines(split_lines(t)) == t，末尾换行可以精确还原"""
    return text.split("\n")


def join_lines(lines: list[str]) -> str:
    return "\n".join(lines)


class PatchOp(NamedTuple):
    kind: str
    line: str

    def to_record(self) -> str:
        return f"{self.kind}{self.line}"


@dataclass(frozen=True)
class Patch:
    """把基础正文变成目标正文的有序操作序列"""
    ops: tuple

    @property
    def added_count(self) -> int:
        return sum(1 for op in self.ops if op.kind == INSERT)

    @property
    def removed_count(self) -> int:
        return sum(1 for op in self.ops if op.kind == DELETE)

    @property
    def kept_count(self) -> int:
        return sum(1 for op in self.ops if op.kind == KEEP)

    @property
    def has_changes(self) -> bool:
        return any(op.kind != KEEP for op in self.ops)

    def serialize(self) -> str:
        return "\n".join(op.to_record() for op in self.ops)

    def to_bytes(self) -> bytes:
        return self.serialize().encode("utf-8")

    @classmethod
    def parse(cls, text: str) -> "Patch":
        """解析持久化格式；空记录或未知前缀视为损坏"""
        ops = []
        for index, record in enumerate(text.split("\n")):
            if not record or record[0] not in _KINDS:
                raise CorruptPatch(f"补丁第 {index + 1} 条记录无法解析: {record[:40]!r}")
            ops.append(PatchOp(record[0], record[1:]))
        return cls(ops=tuple(ops))

    @classmethod
    def from_bytes(cls, data: bytes) -> "Patch":
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise CorruptPatch(f"补丁不是合法的 UTF-8: {e}")
        return cls.parse(text)


# ============== LCS ==============

def _suffix_lcs_table(a: list, b: list) -> list[list[int]]:
    """table[i][j] = a[i:] 与 b[j:] 的最长公共子序列长度"""
    n, m = len(a), len(b)
    table = [[0] * (m + 1) for _ in range(n + 1)]
    for i in range(n - 1, -1, -1):
        row = table[i]
        below = table[i + 1]
        ai = a[i]
        for j in range(m - 1, -1, -1):
            if ai == b[j]:
                row[j] = below[j + 1] + 1
            elif below[j] >= row[j + 1]:
                row[j] = below[j]
            else:
                row[j] = row[j + 1]
    return table


def _align(old_lines: list[str], new_lines: list[str]) -> list[PatchOp]:
    # 公共前缀直接保留（与自顶向下贪心的结果一致），只对剩余部分建表
    prefix = 0
    limit = min(len(old_lines), len(new_lines))
    while prefix < limit and old_lines[prefix] == new_lines[prefix]:
        prefix += 1

    ops = [PatchOp(KEEP, line) for line in old_lines[:prefix]]
    a = old_lines[prefix:]
    b = new_lines[prefix:]

    # 行 → 整数，比较更快
    ids: dict[str, int] = {}
    a_ids = [ids.setdefault(line, len(ids)) for line in a]
    b_ids = [ids.setdefault(line, len(ids)) for line in b]
    table = _suffix_lcs_table(a_ids, b_ids)

    i = j = 0
    n, m = len(a), len(b)
    while i < n and j < m:
        if a_ids[i] == b_ids[j]:
            ops.append(PatchOp(KEEP, a[i]))
            i += 1
            j += 1
        elif table[i + 1][j] >= table[i][j + 1]:
            # 平局时先删后增
            ops.append(PatchOp(DELETE, a[i]))
            i += 1
        else:
            ops.append(PatchOp(INSERT, b[j]))
            j += 1
    ops.extend(PatchOp(DELETE, line) for line in a[i:])
    ops.extend(PatchOp(INSERT, line) for line in b[j:])
    return ops


def diff(old: str, new: str, max_lines: Optional[int] = None) -> Patch:
    """
    计算 old → new 的行级补丁。

    对齐规则: 最长公共子序列，自顶向下贪心（尽早保留未变的行），
    平局先删后增；相同输入总是得到字节级相同的补丁。

    输入:
        old / new  - 两段正文
        max_lines  - 行数上限，任一侧超过时抛 DiffTooLarge（调用方改写全量快照）

    输出:
        Patch
    """
    old_lines = split_lines(old)
    new_lines = split_lines(new)

    if max_lines is not None:
        largest = max(len(old_lines), len(new_lines))
        if largest > max_lines:
            raise DiffTooLarge(largest, max_lines)

    return Patch(ops=tuple(_align(old_lines, new_lines)))


def changed_line_count(old: str, new: str, max_lines: Optional[int] = None) -> int:
    """插入 + 删除的行数"""
    patch = diff(old, new, max_lines=max_lines)
    return patch.added_count + patch.removed_count
