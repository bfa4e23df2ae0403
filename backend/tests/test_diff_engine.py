# backend/tests/test_diff_engine.py
# 功能: 行级 diff 引擎测试
# 主要测试: 对齐规则、确定性、往返还原、行数上限、补丁格式解析
# 运行: cd backend && python -m pytest tests/test_diff_engine.py -v

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from core.diff_engine import (
    diff, changed_line_count, Patch, PatchOp, KEEP, DELETE, INSERT,
)
from core.errors import CorruptPatch, DiffTooLarge
from core.patch_applier import apply_patch


SAMPLES = [
    ("", ""),
    ("", "A"),
    ("A", ""),
    ("A\nB\nC", "A\nB2\nC"),
    ("A\nB\nC\n", "A\nB\nC"),
    ("A\nB\nC", "A\nB\nC\n"),
    ("\n\n", "\n"),
    ("x\ny\nz", "a\nb\nc"),
    ("[C]Amazing [G]grace\nHow sweet\n", "{title: Amazing Grace}\n[C]Amazing [G]grace\nHow sweet the sound\n"),
    ("a\nb\na\nb\na", "b\na\nb"),
    ("line with\r\ncrlf", "line with\r\ncrlf\r\nmore"),
]


class TestDiff:

    def test_scenario_edit_middle_line(self):
        patch = diff("A\nB\nC", "A\nB2\nC")
        assert patch.ops == (
            PatchOp(KEEP, "A"),
            PatchOp(DELETE, "B"),
            PatchOp(INSERT, "B2"),
            PatchOp(KEEP, "C"),
        )
        assert patch.serialize() == " A\n-B\n+B2\n C"

    @pytest.mark.parametrize("old,new", SAMPLES)
    def test_round_trip(self, old, new):
        assert apply_patch(old, diff(old, new)) == new

    @pytest.mark.parametrize("old,new", SAMPLES)
    def test_deterministic(self, old, new):
        assert diff(old, new).serialize() == diff(old, new).serialize()

    def test_keeps_earliest_line_on_ties(self):
        # 两种最小对齐都可行时，保留靠前的行
        patch = diff("X", "X\nX")
        assert patch.ops == (PatchOp(KEEP, "X"), PatchOp(INSERT, "X"))

    def test_deletes_before_inserts(self):
        patch = diff("a", "b")
        assert [op.kind for op in patch.ops] == [DELETE, INSERT]

    def test_trailing_newline_is_a_line(self):
        patch = diff("A\n", "A")
        assert patch.ops == (PatchOp(KEEP, "A"), PatchOp(DELETE, ""))

    def test_counts(self):
        patch = diff("a\nb\nc", "a\nc\nd\ne")
        assert patch.added_count == 2
        assert patch.removed_count == 1
        assert patch.kept_count == 2
        assert patch.has_changes
        assert not diff("same", "same").has_changes

    def test_changed_line_count(self):
        assert changed_line_count("a\nb", "a\nc") == 2
        assert changed_line_count("a", "a") == 0

    def test_max_lines_refuses(self):
        with pytest.raises(DiffTooLarge) as exc:
            diff("1\n2\n3\n4", "1", max_lines=3)
        assert exc.value.line_count == 4
        assert exc.value.max_lines == 3

    def test_max_lines_allows_at_limit(self):
        assert diff("1\n2\n3", "1\n2", max_lines=3).removed_count == 1


class TestPatchFormat:

    def test_parse_round_trip(self):
        patch = diff("A\nB\nC", "A\nB2\nC")
        assert Patch.parse(patch.serialize()) == patch
        assert Patch.from_bytes(patch.to_bytes()) == patch

    def test_parse_keeps_prefix_characters_in_line(self):
        patch = Patch.parse("+-x\n- y\n  z")
        assert patch.ops == (
            PatchOp(INSERT, "-x"),
            PatchOp(DELETE, " y"),
            PatchOp(KEEP, " z"),
        )

    @pytest.mark.parametrize("text", ["", "?A", " A\n\n+B", " A\nB"])
    def test_parse_rejects_bad_records(self, text):
        with pytest.raises(CorruptPatch):
            Patch.parse(text)

    def test_from_bytes_rejects_invalid_utf8(self):
        with pytest.raises(CorruptPatch):
            Patch.from_bytes(b" \xff\xfe")
