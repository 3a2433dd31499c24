# -*- coding: utf-8 -*-
"""
vcsmirror.coordinator - 镜像协调器

一个 MirrorCoordinator 负责一个 (源 URI, 分支) -> 目标路径 的镜像，被调度器周期性调用。

单次运行状态机:
    INIT -> ENSURE_SOURCE_MIRROR -> SYNC_SOURCE_BRANCH -> LOAD_MARKS
         -> {FULL_CONVERT | INCREMENTAL_PULL} -> PERSIST_MARKS -> DONE

- LOAD_MARKS 之前的任何 I/O 失败对本次运行是致命的，不做运行内重试，依赖下一个调度周期
- LOAD_MARKS 之后，无论转换成功或失败，都会进入 PERSIST_MARKS，把本次产生的 marks 写入存储，
  然后再传播转换阶段的异常
- marks 写入失败抛出 MarkPersistenceError（marks 丢失），与转换失败可区分

排他谓词:
    共享目标路径或共享源 URI 的两个 coordinator 不能并发；与其他类型的 work item 总是可以并发。

使用示例:
    coordinator = MirrorCoordinator(
        "https://example.com/repo.git", "master", Path("/srv/hg/repo"),
        storage_dir=Path("/var/lib/vcsmirror"),
        mark_store=FileMarkStore(Path("/var/lib/vcsmirror/marks.txt")),
    )
    coordinator.run(Path("/var/lib/vcsmirror/scratch"))
"""

from __future__ import annotations

import os
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional
from urllib.parse import quote_plus, urlparse

from .config import MirrorContext
from .converter import Converter, SnapshotConverter
from .errors import (
    IllegalStateError,
    MarkPersistenceError,
    MarkStoreError,
    MirrorError,
    RepositoryError,
    StateCorruptionError,
)
from .mark_store import MarkHandle, MarkStore
from .repository import VCS_GIT, VCS_HG, Repository
from .scheduler import Bot, WorkItem

__all__ = [
    "RunPhase",
    "RunMode",
    "MirrorRunResult",
    "MirrorCoordinator",
    "ConverterFactory",
    "encode_source_dir_name",
    "source_short_name",
]


ConverterFactory = Callable[[str, MirrorContext], Converter]


class RunPhase(str, Enum):
    INIT = "init"
    ENSURE_SOURCE_MIRROR = "ensure_source_mirror"
    SYNC_SOURCE_BRANCH = "sync_source_branch"
    LOAD_MARKS = "load_marks"
    FULL_CONVERT = "full_convert"
    INCREMENTAL_PULL = "incremental_pull"
    PERSIST_MARKS = "persist_marks"
    DONE = "done"


class RunMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


@dataclass
class MirrorRunResult:
    """单次运行摘要"""

    mirror: str
    phase: RunPhase = RunPhase.INIT
    mode: Optional[RunMode] = None
    produced_marks: int = 0
    persisted_marks: int = 0
    total_marks: int = 0
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    finished_at: Optional[str] = None
    duration_seconds: float = 0.0
    error: Optional[Dict[str, Any]] = None

    @property
    def success(self) -> bool:
        return self.error is None and self.phase == RunPhase.DONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mirror": self.mirror,
            "success": self.success,
            "phase": self.phase.value,
            "mode": self.mode.value if self.mode else None,
            "produced_marks": self.produced_marks,
            "persisted_marks": self.persisted_marks,
            "total_marks": self.total_marks,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_seconds": self.duration_seconds,
            "error": self.error,
        }


def encode_source_dir_name(source_uri: str) -> str:
    """源缓存目录名: 完整 URI 的 URL 安全编码"""
    return quote_plus(source_uri)


def source_short_name(source_uri: str) -> str:
    """源仓库短名，如 https://host/org/jdk.git -> jdk"""
    path = urlparse(source_uri).path or source_uri
    name = path.rstrip("/").rsplit("/", 1)[-1]
    if name.endswith(".git"):
        name = name[: -len(".git")]
    return name or "repository"


def _default_converter_factory(branch: str, context: MirrorContext) -> Converter:
    return SnapshotConverter(branch, context)


def _normalize_path(path: Path) -> str:
    return os.path.normpath(os.path.abspath(str(path)))


class MirrorCoordinator(WorkItem, Bot):
    """一个源分支到一个目标仓库的镜像"""

    def __init__(
        self,
        source_uri: str,
        branch: str,
        target_path: Path,
        *,
        storage_dir: Path,
        mark_store: MarkStore,
        target_kind: str = VCS_HG,
        source_kind: str = VCS_GIT,
        converter_factory: Optional[ConverterFactory] = None,
        context: Optional[MirrorContext] = None,
    ):
        self.source_uri = source_uri
        self.branch = branch
        self.target_path = Path(target_path)
        self.storage_dir = Path(storage_dir)
        self.mark_store = mark_store
        self.target_kind = target_kind
        self.source_kind = source_kind
        self._converter_factory = converter_factory or _default_converter_factory
        self._ctx = (context or MirrorContext()).child("coordinator")
        self.last_result: Optional[MirrorRunResult] = None

    def __str__(self) -> str:
        return f"MirrorCoordinator({self.source_uri}:{self.branch}, {self.target_path})"

    __repr__ = __str__

    # ------------------------------------------------------------------
    # 调度契约
    # ------------------------------------------------------------------

    def concurrent_with(self, other: WorkItem) -> bool:
        if not isinstance(other, MirrorCoordinator):
            return True
        same_target = _normalize_path(other.target_path) == _normalize_path(self.target_path)
        same_source = other.source_uri == self.source_uri
        return not (same_target or same_source)

    def get_periodic_items(self) -> List[WorkItem]:
        return [self]

    # ------------------------------------------------------------------
    # 目录
    # ------------------------------------------------------------------

    @property
    def source_dir(self) -> Path:
        return self.storage_dir / encode_source_dir_name(self.source_uri)

    def marks_work_dir(self, scratch_dir: Path) -> Path:
        return Path(scratch_dir) / "marks" / source_short_name(self.source_uri)

    # ------------------------------------------------------------------
    # 运行
    # ------------------------------------------------------------------

    def run(self, scratch_dir: Path) -> List[WorkItem]:
        """
        执行一次镜像同步

        Returns:
            后续 work item 列表（总是为空）

        Raises:
            RepositoryError: 源镜像 clone/fetch/checkout 失败
            IllegalStateError: 缓存目录或目标目录存在但不是仓库
            StateCorruptionError: 目标 head 与 marks 不一致
            ConversionError: 转换失败（已产生的 marks 已持久化）
            MarkPersistenceError: marks 未能持久化
        """
        started = time.monotonic()
        result = MirrorRunResult(mirror=str(self))
        self.last_result = result
        log = self._ctx.logger
        try:
            result.phase = RunPhase.ENSURE_SOURCE_MIRROR
            source = self._ensure_source_mirror()

            result.phase = RunPhase.SYNC_SOURCE_BRANCH
            self._sync_source_branch(source)

            result.phase = RunPhase.LOAD_MARKS
            handle = self._load_marks(Path(scratch_dir))

            converter = self._converter_factory(self.branch, self._ctx)
            with self._persisting(handle, converter, result):
                if self._target_missing():
                    result.phase = RunPhase.FULL_CONVERT
                    result.mode = RunMode.FULL
                    self._full_convert(source, handle, converter)
                else:
                    result.phase = RunPhase.INCREMENTAL_PULL
                    result.mode = RunMode.INCREMENTAL
                    self._incremental_pull(source, handle, converter)

            result.phase = RunPhase.DONE
            log.info(
                "%s 完成: mode=%s, 新增 %d 个 mark（共 %d 个）",
                self,
                result.mode.value if result.mode else None,
                result.persisted_marks,
                result.total_marks,
            )
            return []
        except MirrorError as exc:
            result.error = exc.to_dict()
            raise
        except Exception as exc:
            result.error = {
                "ok": False,
                "code": type(exc).__name__,
                "message": str(exc),
                "detail": {},
            }
            raise
        finally:
            result.finished_at = datetime.now(timezone.utc).isoformat()
            result.duration_seconds = round(time.monotonic() - started, 3)

    def _ensure_source_mirror(self) -> Repository:
        source_dir = self.source_dir
        # 上次 clone 失败会留下空目录
        if not source_dir.exists() or (source_dir.is_dir() and not any(source_dir.iterdir())):
            try:
                source_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise RepositoryError(
                    f"创建源缓存目录失败: {source_dir}: {e}", {"dir": str(source_dir)}
                ) from e
            self._ctx.logger.info("克隆 %s 到 %s", self.source_uri, source_dir)
            return Repository.clone(self.source_uri, source_dir, self.source_kind)

        self._ctx.logger.info("使用已有的源仓库 %s", source_dir)
        source = Repository.open(source_dir)
        if source is None:
            raise IllegalStateError(
                f"源仓库从 {source_dir} 消失或已损坏", {"dir": str(source_dir)}
            )
        return source

    def _sync_source_branch(self, source: Repository) -> None:
        self._ctx.logger.debug("同步 %s 的分支 %s", source.root, self.branch)
        source.checkout(self.branch)
        source.pull(source.default_remote, self.branch)

    def _load_marks(self, scratch_dir: Path) -> MarkHandle:
        work_dir = self.marks_work_dir(scratch_dir)
        self._ctx.logger.debug("在 %s 物化 %s", work_dir, self.mark_store.describe())
        return self.mark_store.materialize(work_dir)

    def _target_missing(self) -> bool:
        path = self.target_path
        if not path.exists():
            return True
        # 上次运行在创建目录后、初始化前失败
        return path.is_dir() and not any(path.iterdir())

    def _full_convert(self, source: Repository, handle: MarkHandle, converter: Converter) -> None:
        existing = handle.current()
        if existing:
            raise StateCorruptionError(
                f"目标仓库 {self.target_path} 不存在，但已有 {len(existing)} 个 mark",
                {"target": str(self.target_path), "marks": len(existing)},
            )
        try:
            self.target_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise RepositoryError(
                f"创建目标目录失败: {self.target_path}: {e}", {"dir": str(self.target_path)}
            ) from e
        target = Repository.init(self.target_path, self.target_kind)
        self._ctx.logger.info("初始化 %s 目标仓库 %s，开始全量转换", self.target_kind, self.target_path)
        converter.convert(source, target)

    def _incremental_pull(
        self, source: Repository, handle: MarkHandle, converter: Converter
    ) -> None:
        target = Repository.open(self.target_path)
        if target is None:
            raise IllegalStateError(
                f"目标仓库从 {self.target_path} 消失或已损坏", {"dir": str(self.target_path)}
            )
        existing = sorted(handle.current(), key=lambda m: m.key)
        converter.pull(source, self.source_uri, target, existing)

    @contextmanager
    def _persisting(
        self, handle: MarkHandle, converter: Converter, result: MirrorRunResult
    ) -> Iterator[None]:
        """无论转换成功与否，退出时都把 converter 产生的 marks 写入 handle"""
        try:
            yield
        except BaseException as exc:
            self._ctx.logger.error("%s 转换失败: %s", self, exc)
            self._persist(handle, converter, result, conversion_error=exc)
            raise
        else:
            self._persist(handle, converter, result)

    def _persist(
        self,
        handle: MarkHandle,
        converter: Converter,
        result: MirrorRunResult,
        *,
        conversion_error: Optional[BaseException] = None,
    ) -> None:
        result.phase = RunPhase.PERSIST_MARKS
        marks = converter.marks
        result.produced_marks = len(marks)
        if marks:
            try:
                written = handle.put(marks)
            except MarkStoreError as e:
                self._ctx.logger.error(
                    "%s: %d 个 mark 未能持久化: %s", self, len(marks), e
                )
                raise MarkPersistenceError(
                    f"{len(marks)} 个 mark 未能持久化: {e}",
                    {
                        "mirror": str(self),
                        "store": self.mark_store.describe(),
                        "first_key": marks[0].key,
                        "last_key": marks[-1].key,
                    },
                    conversion_error=conversion_error,
                ) from e
            result.persisted_marks = len(written)
        result.total_marks = len(handle.current())
