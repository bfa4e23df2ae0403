# backend/tests/test_patch_applier.py
# 功能: 补丁应用测试: 越界、残留基础行、基础不符都必须报 CorruptPatch

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from core.diff_engine import Patch, PatchOp, diff, KEEP, DELETE, INSERT
from core.errors import CorruptPatch
from core.patch_applier import apply_patch


def test_apply_simple_edit():
    patch = Patch.parse(" A\n-B\n+B2\n C")
    assert apply_patch("A\nB\nC", patch) == "A\nB2\nC"


def test_insert_only_into_empty_base():
    patch = Patch.parse("-\n+first\n+second")
    assert apply_patch("", patch) == "first\nsecond"


def test_keep_past_end_of_base():
    patch = Patch.parse(" A\n B\n C\n D")
    with pytest.raises(CorruptPatch, match="越界"):
        apply_patch("A\nB\nC", patch)


def test_delete_past_end_of_base():
    patch = Patch.parse(" A\n-B")
    with pytest.raises(CorruptPatch):
        apply_patch("A", patch)


def test_leftover_base_lines():
    # 截断的补丁不能静默返回截断结果
    patch = Patch.parse(" A\n-B\n+B2")
    with pytest.raises(CorruptPatch, match="2/3"):
        apply_patch("A\nB\nC", patch)


def test_mismatched_base_line():
    patch = diff("A\nB\nC", "A\nB2\nC")
    with pytest.raises(CorruptPatch):
        apply_patch("A\nX\nC", patch)


def test_non_strict_copies_base_line():
    patch = Patch(ops=(PatchOp(KEEP, "stale"), PatchOp(INSERT, "new")))
    assert apply_patch("actual", patch, strict=False) == "actual\nnew"


def test_unknown_op_kind():
    patch = Patch(ops=(PatchOp("?", "A"),))
    with pytest.raises(CorruptPatch):
        apply_patch("A", patch)


def test_delete_does_not_emit():
    patch = Patch(ops=(PatchOp(DELETE, "A"), PatchOp(KEEP, "B")))
    assert apply_patch("A\nB", patch) == "B"
