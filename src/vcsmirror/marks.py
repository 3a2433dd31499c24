# -*- coding: utf-8 -*-
"""
vcsmirror.marks - Mark 记录与 marks 文件格式

Mark 把源历史中的一个提交和目标历史中的一个提交关联起来，key 用于排序和增量计算。

不变量:
- key 从 MARK_KEY_ORIGIN 开始稠密严格递增，无空洞
- source_hash、target_hash 在同一 mark 集合内各自唯一
- mark 集合总是按 key 升序重放
- mark 一旦产生不可修改，只允许追加

文件格式（legacy，保留为受支持的磁盘格式）:
    <key> <target_hash_hex> <source_hash_hex>\\n
    空白分隔，空行无意义，读取时不允许重复 key，写出时按 key 升序且每个 mark 恰好一次
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from .errors import MarkFormatError, MarkSequenceError

__all__ = [
    "MARK_KEY_ORIGIN",
    "Mark",
    "is_valid_hash",
    "sort_marks",
    "max_key",
    "next_key",
    "parse_marks",
    "format_marks",
    "validate_marks",
    "plan_append",
]

MARK_KEY_ORIGIN = 1

# git sha1 / hg node 为 40 位，git sha256 为 64 位
_HASH_RE = re.compile(r"^(?:[0-9a-f]{40}|[0-9a-f]{64})$")


def is_valid_hash(value: str) -> bool:
    return bool(_HASH_RE.match(value or ""))


@dataclass(frozen=True, order=True)
class Mark:
    """源提交与目标提交的映射记录（不可变）"""

    key: int
    source_hash: str
    target_hash: str

    def __post_init__(self) -> None:
        if not isinstance(self.key, int) or isinstance(self.key, bool):
            raise MarkFormatError(f"mark key 必须是整数: {self.key!r}", {"key": self.key})
        if not is_valid_hash(self.source_hash):
            raise MarkFormatError(
                f"非法的源 hash: {self.source_hash!r}", {"key": self.key}
            )
        if not is_valid_hash(self.target_hash):
            raise MarkFormatError(
                f"非法的目标 hash: {self.target_hash!r}", {"key": self.key}
            )

    def to_line(self) -> str:
        return f"{self.key} {self.target_hash} {self.source_hash}"

    def to_dict(self) -> dict:
        return {"key": self.key, "source_hash": self.source_hash, "target_hash": self.target_hash}


def sort_marks(marks: Iterable[Mark]) -> List[Mark]:
    """按 key 升序排序"""
    return sorted(marks, key=lambda m: m.key)


def max_key(marks: Sequence[Mark]) -> Optional[int]:
    if not marks:
        return None
    return max(m.key for m in marks)


def next_key(marks: Sequence[Mark]) -> int:
    """下一个可用的 key"""
    current = max_key(marks)
    return MARK_KEY_ORIGIN if current is None else current + 1


def parse_marks(text: str, *, source: str = "<marks>") -> List[Mark]:
    """
    解析 legacy marks 文本

    Args:
        text: 文件内容
        source: 用于错误信息的来源标识（通常为文件路径）

    Returns:
        按 key 升序的 mark 列表

    Raises:
        MarkFormatError: 行格式错误或出现重复 key
    """
    marks: List[Mark] = []
    seen_keys = set()
    for lineno, line in enumerate(text.splitlines(), start=1):
        words = line.split()
        if not words:
            continue
        if len(words) != 3:
            raise MarkFormatError(
                f"{source}:{lineno}: 需要 3 个字段，实际 {len(words)} 个",
                {"source": source, "line": lineno},
            )
        try:
            key = int(words[0])
        except ValueError as e:
            raise MarkFormatError(
                f"{source}:{lineno}: key 不是整数: {words[0]!r}",
                {"source": source, "line": lineno},
            ) from e
        if key in seen_keys:
            raise MarkFormatError(
                f"{source}:{lineno}: 重复的 key {key}",
                {"source": source, "line": lineno, "key": key},
            )
        seen_keys.add(key)
        marks.append(Mark(key=key, source_hash=words[2], target_hash=words[1]))
    return sort_marks(marks)


def format_marks(marks: Iterable[Mark]) -> str:
    """序列化为 legacy 文本（按 key 升序，每行以换行结尾）"""
    return "".join(m.to_line() + "\n" for m in sort_marks(marks))


def validate_marks(marks: Sequence[Mark], *, origin: int = MARK_KEY_ORIGIN) -> List[Mark]:
    """
    校验 mark 集合满足稠密递增与 hash 唯一约束

    Returns:
        按 key 升序的 mark 列表

    Raises:
        MarkSequenceError: 约束不满足
    """
    ordered = sort_marks(marks)
    sources = set()
    targets = set()
    for expected, mark in enumerate(ordered, start=origin):
        if mark.key != expected:
            raise MarkSequenceError(
                f"mark key 不连续: 期望 {expected}，实际 {mark.key}",
                {"expected": expected, "actual": mark.key},
            )
        if mark.source_hash in sources:
            raise MarkSequenceError(
                f"源 hash 重复: {mark.source_hash}", {"key": mark.key}
            )
        if mark.target_hash in targets:
            raise MarkSequenceError(
                f"目标 hash 重复: {mark.target_hash}", {"key": mark.key}
            )
        sources.add(mark.source_hash)
        targets.add(mark.target_hash)
    return ordered


def plan_append(current: Sequence[Mark], new_marks: Iterable[Mark]) -> List[Mark]:
    """
    计算真正需要追加的 marks

    - 与已有 mark 完全相同的条目视为重复提交，忽略
    - key 不大于当前最大 key 且内容不同的条目拒绝
    - 其余条目必须从当前最大 key + 1 开始稠密递增，且 hash 不与已有 mark 冲突

    Returns:
        需要追加的 marks（按 key 升序，可能为空）

    Raises:
        MarkSequenceError: 违反单调或唯一约束
    """
    by_key = {m.key: m for m in current}
    known_sources = {m.source_hash for m in current}
    known_targets = {m.target_hash for m in current}
    expected = next_key(current)

    to_append: List[Mark] = []
    for mark in sort_marks(new_marks):
        existing = by_key.get(mark.key)
        if existing is not None:
            if existing == mark:
                continue
            raise MarkSequenceError(
                f"拒绝改写已有 mark: key={mark.key}",
                {"key": mark.key, "existing": existing.to_dict(), "new": mark.to_dict()},
            )
        if mark.key != expected:
            raise MarkSequenceError(
                f"新 mark key 必须为 {expected}，实际 {mark.key}",
                {"expected": expected, "actual": mark.key},
            )
        if mark.source_hash in known_sources or mark.target_hash in known_targets:
            raise MarkSequenceError(
                f"新 mark 与已有 mark 的 hash 冲突: key={mark.key}", {"mark": mark.to_dict()}
            )
        known_sources.add(mark.source_hash)
        known_targets.add(mark.target_hash)
        to_append.append(mark)
        expected += 1
    return to_append
