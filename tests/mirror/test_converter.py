# -*- coding: utf-8 -*-
"""
converter 模块测试

测试:
- convert: 目标非空拒绝、祖先先于后代、key 从 1 开始稠密分配、父提交映射
- pull: 目标 head 校验、只转换增量、已有 marks 不重复产生
- 部分失败: 已转换提交的 marks 仍可取回
"""

import hashlib
from typing import List, Optional, Sequence
from unittest.mock import MagicMock

import pytest

from vcsmirror.converter import Converter
from vcsmirror.errors import ConversionError, MarkSequenceError, StateCorruptionError
from vcsmirror.marks import Mark
from vcsmirror.repository import CommitMetadata, Repository


def h(label: str) -> str:
    return hashlib.sha1(label.encode()).hexdigest()


def commit(label: str, *parents: str) -> CommitMetadata:
    return CommitMetadata(
        hash=h(label),
        parents=tuple(h(p) for p in parents),
        author_name="duke",
        author_email="duke@openjdk.org",
        timestamp=1700000000,
        tz_offset="+0000",
        message=f"{label}\n",
    )


class RecordingConverter(Converter):
    """确定性转换: 目标 hash 由源 hash 与目标父提交决定"""

    def __init__(self, branch: str = "master", fail_on: Optional[str] = None):
        super().__init__(branch)
        self.fail_on = fail_on
        self.calls: List[tuple] = []

    def translate_commit(self, source, target, commit, parents: Sequence[str]) -> str:
        if self.fail_on is not None and commit.hash == h(self.fail_on):
            raise ConversionError(f"无法转换 {commit.hash}", {"hash": commit.hash})
        self.calls.append((commit.hash, tuple(parents)))
        return h("target:" + commit.hash + ":" + ",".join(parents))


def repositories(commits: List[CommitMetadata], head: Optional[str] = None):
    source = MagicMock(spec=Repository)
    source.topo_commits.return_value = commits
    target = MagicMock(spec=Repository)
    target.root = "/srv/target"
    target.head.return_value = head
    return source, target


# a <- b <- c, a <- d, (c, d) <- e
HISTORY = [
    commit("a"),
    commit("b", "a"),
    commit("c", "b"),
    commit("d", "a"),
    commit("e", "c", "d"),
]


class TestConvert:
    """全量转换测试"""

    def test_keys_dense_from_origin(self):
        source, target = repositories(HISTORY[:3])
        converter = RecordingConverter()
        produced = converter.convert(source, target)

        assert [m.key for m in produced] == [1, 2, 3]
        assert [m.source_hash for m in produced] == [h("a"), h("b"), h("c")]
        assert converter.marks == produced
        source.topo_commits.assert_called_once_with("master")

    def test_parents_are_mapped(self):
        """父提交以目标 hash 传入，merge 在两个父提交之后转换"""
        source, target = repositories(HISTORY)
        converter = RecordingConverter()
        produced = converter.convert(source, target)
        by_source = {m.source_hash: m.target_hash for m in produced}

        merge_hash, merge_parents = converter.calls[-1]
        assert merge_hash == h("e")
        assert merge_parents == (by_source[h("c")], by_source[h("d")])
        assert converter.calls[0] == (h("a"), ())

    def test_non_empty_target_rejected(self):
        source, target = repositories(HISTORY[:1], head=h("foreign"))
        with pytest.raises(StateCorruptionError):
            RecordingConverter().convert(source, target)
        source.topo_commits.assert_not_called()

    def test_unmapped_parent(self):
        """父提交不在本次历史中也不在 marks 中"""
        source, target = repositories([commit("b", "a")])
        with pytest.raises(ConversionError, match="尚未转换"):
            RecordingConverter().convert(source, target)

    def test_partial_failure_keeps_marks(self):
        """中途失败时，已转换提交的 marks 仍可取回"""
        source, target = repositories(HISTORY[:3])
        converter = RecordingConverter(fail_on="c")
        with pytest.raises(ConversionError):
            converter.convert(source, target)
        assert [m.key for m in converter.marks] == [1, 2]
        assert [m.source_hash for m in converter.marks] == [h("a"), h("b")]

    def test_deterministic(self):
        """同一输入两次转换得到相同的目标 hash"""
        first = RecordingConverter().convert(*repositories(HISTORY))
        second = RecordingConverter().convert(*repositories(HISTORY))
        assert first == second


class TestPull:
    """增量转换测试"""

    def _existing(self, count: int) -> List[Mark]:
        source, target = repositories(HISTORY[:count])
        return RecordingConverter().convert(source, target)

    def test_only_delta_translated(self):
        existing = self._existing(3)
        source, target = repositories(HISTORY[:4], head=existing[-1].target_hash)
        converter = RecordingConverter()
        produced = converter.pull(source, "https://example.com/jdk.git", target, existing)

        assert [m.key for m in produced] == [4]
        assert produced[0].source_hash == h("d")
        assert converter.calls == [(h("d"), (existing[0].target_hash,))]
        assert converter.marks == produced

    def test_no_new_commits(self):
        existing = self._existing(3)
        source, target = repositories(HISTORY[:3], head=existing[-1].target_hash)
        converter = RecordingConverter()
        assert converter.pull(source, "uri", target, existing) == []
        assert converter.marks == []

    def test_merge_delta_uses_existing_parents(self):
        existing = self._existing(4)
        source, target = repositories(HISTORY, head=existing[-1].target_hash)
        produced = RecordingConverter().pull(source, "uri", target, existing)
        assert [m.key for m in produced] == [5]

    def test_matches_full_conversion(self):
        """增量转换的结果与一次全量转换一致"""
        full = self._existing(5)
        existing = self._existing(3)
        source, target = repositories(HISTORY, head=existing[-1].target_hash)
        produced = RecordingConverter().pull(source, "uri", target, existing)
        assert existing + produced == full

    def test_head_mismatch_is_corruption(self):
        """目标 head 与最大 key 的 mark 不一致"""
        existing = self._existing(3)
        source, target = repositories(HISTORY[:4], head=h("out-of-band"))
        converter = RecordingConverter()
        with pytest.raises(StateCorruptionError) as exc_info:
            converter.pull(source, "uri", target, existing)
        assert exc_info.value.details["expected"] == existing[-1].target_hash
        assert exc_info.value.details["last_key"] == 3
        assert converter.calls == []

    def test_empty_target_with_marks_is_corruption(self):
        existing = self._existing(2)
        source, target = repositories(HISTORY[:3], head=None)
        with pytest.raises(StateCorruptionError):
            RecordingConverter().pull(source, "uri", target, existing)

    def test_unordered_existing_accepted(self):
        existing = self._existing(3)
        source, target = repositories(HISTORY[:4], head=existing[-1].target_hash)
        produced = RecordingConverter().pull(source, "uri", target, list(reversed(existing)))
        assert [m.key for m in produced] == [4]

    def test_invalid_existing_rejected(self):
        existing = self._existing(3)
        source, target = repositories(HISTORY[:4], head=existing[-1].target_hash)
        with pytest.raises(MarkSequenceError):
            RecordingConverter().pull(source, "uri", target, [existing[0], existing[2]])
