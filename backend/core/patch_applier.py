# backend/core/patch_applier.py
"""
补丁应用 - 由基础正文 + 补丁重建目标正文
主要函数: apply_patch()

与「尽力而为」的做法不同：越界、残留未消费的基础行、保留/删除行与基础行不符，
一律抛 CorruptPatch，不返回截断或拼凑的结果。
"""

from core.diff_engine import Patch, KEEP, DELETE, INSERT, split_lines, join_lines
from core.errors import CorruptPatch


def apply_patch(base: str, patch: Patch, strict: bool = True) -> str:
    """
    按顺序重放补丁操作。

    输入:
        base   - 基础正文
        patch  - diff(base, target) 得到的补丁
        strict - True 时校验保留/删除记录携带的行内容与基础行一致

    输出:
        目标正文

    异常:
        CorruptPatch
    """
    base_lines = split_lines(base)
    result = []
    cursor = 0

    for index, op in enumerate(patch.ops):
        if op.kind == INSERT:
            result.append(op.line)
            continue

        if op.kind not in (KEEP, DELETE):
            raise CorruptPatch(f"第 {index + 1} 条操作类型未知: {op.kind!r}")

        if cursor >= len(base_lines):
            raise CorruptPatch(
                f"第 {index + 1} 条操作越界: 基础正文只有 {len(base_lines)} 行"
            )

        base_line = base_lines[cursor]
        if strict and op.line != base_line:
            raise CorruptPatch(
                f"第 {index + 1} 条操作与基础第 {cursor + 1} 行不符（补丁基于其他版本？）"
            )

        if op.kind == KEEP:
            result.append(base_line)
        cursor += 1

    if cursor != len(base_lines):
        raise CorruptPatch(
            f"补丁只消费了 {cursor}/{len(base_lines)} 个基础行"
        )

    return join_lines(result)
