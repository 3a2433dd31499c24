# -*- coding: utf-8 -*-
"""
vcsmirror.converter - 转换引擎契约

Converter 基类实现契约中与具体格式无关的部分:
- convert(): 全量转换分支 tip 可达的全部提交
- pull(): 校验目标 head 与最大 key 的 mark 一致，再转换未被 marks 覆盖的增量
- 祖先先于后代的转换顺序、key 分配、父提交映射
- 每转换一个提交立即记录 mark，失败时已产生的部分仍可通过 marks 取回

具体的提交翻译由子类实现 translate_commit()。SnapshotConverter 以完整文件树快照重放提交，
作者、日期、消息沿用源提交，因此同一输入总是得到同一目标提交。
"""

from __future__ import annotations

import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .config import MirrorContext
from .errors import ConversionError, StateCorruptionError
from .marks import Mark, next_key, validate_marks
from .repository import CommitMetadata, Repository

__all__ = [
    "Converter",
    "SnapshotConverter",
]


class Converter(ABC):
    """转换引擎基类"""

    def __init__(self, branch: str, context: Optional[MirrorContext] = None):
        self.branch = branch
        self._ctx = context or MirrorContext()
        self._marks: List[Mark] = []

    @property
    def marks(self) -> List[Mark]:
        """本实例产生的新 marks（按 key 升序）"""
        return list(self._marks)

    def convert(self, source: Repository, target: Repository) -> List[Mark]:
        """
        全量转换

        Raises:
            StateCorruptionError: 目标仓库非空
            ConversionError: 某个提交转换失败
        """
        self._verify_target_head(target, [])
        commits = source.topo_commits(self.branch)
        self._ctx.logger.info(
            "全量转换 %s: 共 %d 个提交 -> %s", self.branch, len(commits), target.root
        )
        return self._translate_all(source, target, commits, [])

    def pull(
        self,
        source: Repository,
        source_uri: str,
        target: Repository,
        existing: Sequence[Mark],
    ) -> List[Mark]:
        """
        增量转换

        Args:
            source: 源仓库（已 fast-forward）
            source_uri: 源仓库 URI（用于日志与错误信息）
            target: 目标仓库
            existing: 已有 marks（按 key 升序）

        Returns:
            本次新产生的 marks

        Raises:
            StateCorruptionError: 目标 head 与最大 key 的 mark 不一致
            ConversionError: 某个提交转换失败
        """
        ordered = validate_marks(existing)
        self._verify_target_head(target, ordered)

        known = {m.source_hash for m in ordered}
        delta = [c for c in source.topo_commits(self.branch) if c.hash not in known]
        if not delta:
            self._ctx.logger.info("%s:%s 没有新的提交", source_uri, self.branch)
            return []
        self._ctx.logger.info(
            "增量转换 %s:%s: %d 个新提交（已有 %d 个 mark）",
            source_uri,
            self.branch,
            len(delta),
            len(ordered),
        )
        return self._translate_all(source, target, delta, ordered, source_uri=source_uri)

    def _verify_target_head(self, target: Repository, ordered: Sequence[Mark]) -> None:
        head = target.head()
        expected = ordered[-1].target_hash if ordered else None
        if head != expected:
            raise StateCorruptionError(
                f"目标仓库 {target.root} 的 head 与最后一个 mark 不一致，目标可能被带外修改",
                {
                    "target": str(target.root),
                    "head": head,
                    "expected": expected,
                    "last_key": ordered[-1].key if ordered else None,
                },
            )

    def _translate_all(
        self,
        source: Repository,
        target: Repository,
        commits: Sequence[CommitMetadata],
        existing: Sequence[Mark],
        *,
        source_uri: Optional[str] = None,
    ) -> List[Mark]:
        mapping: Dict[str, str] = {m.source_hash: m.target_hash for m in existing}
        mapping.update({m.source_hash: m.target_hash for m in self._marks})
        key = next_key(list(existing) + self._marks)

        produced: List[Mark] = []
        for commit in commits:
            parents = []
            for parent in commit.parents:
                if parent not in mapping:
                    raise ConversionError(
                        f"父提交 {parent} 尚未转换，无法转换 {commit.hash}",
                        {"hash": commit.hash, "parent": parent, "source": source_uri},
                    )
                parents.append(mapping[parent])

            target_hash = self.translate_commit(source, target, commit, parents)
            mark = Mark(key=key, source_hash=commit.hash, target_hash=target_hash)
            self._marks.append(mark)
            produced.append(mark)
            mapping[commit.hash] = target_hash
            key += 1
            self._ctx.logger.debug("mark %d: %s -> %s", mark.key, commit.hash, target_hash)
        return produced

    @abstractmethod
    def translate_commit(
        self,
        source: Repository,
        target: Repository,
        commit: CommitMetadata,
        parents: Sequence[str],
    ) -> str:
        """把一个源提交翻译为目标提交，parents 为已映射的目标父提交，返回目标 hash"""


class SnapshotConverter(Converter):
    """以完整文件树快照重放提交的转换器"""

    def __init__(
        self,
        branch: str,
        context: Optional[MirrorContext] = None,
        *,
        work_root: Optional[Path] = None,
    ):
        super().__init__(branch, context)
        self.work_root = work_root

    def translate_commit(
        self,
        source: Repository,
        target: Repository,
        commit: CommitMetadata,
        parents: Sequence[str],
    ) -> str:
        with tempfile.TemporaryDirectory(prefix="vcsmirror-snapshot-", dir=self.work_root) as tmp:
            snapshot = Path(tmp) / "tree"
            source.export_tree(commit.hash, snapshot)
            if not snapshot.exists():
                # 空树
                snapshot.mkdir()
            return target.commit_snapshot(snapshot, parents, commit)
