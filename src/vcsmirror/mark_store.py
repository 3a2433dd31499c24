# -*- coding: utf-8 -*-
"""
vcsmirror.mark_store - marks 持久化存储

统一接口:
    handle = store.materialize(work_dir)   # 物化本地视图（可能涉及网络 I/O，可重复调用）
    handle.current()                        # 物化时刻的 marks，按 key 升序
    handle.put(new_marks)                   # 追加新 marks，返回实际写入的部分

后端:
- FileMarkStore: legacy 纯文本文件，sidecar flock 内原子替换写入
- HostedMarkStore: 远端 git 仓库，物化时 clone/fetch 到工作目录，写入时 commit + push
- PostgresMarkStore: PostgreSQL 表，(namespace, mark_key) 主键

并发约定:
- 进程内的排他由调度器的 concurrent_with 保证
- 文件后端在 sidecar 锁内串行化写入
- hosted/postgres 后端的跨进程/跨机器竞争在存储边界上做乐观重试:
  写入前基于最新状态重新计算追加计划（plan_append），冲突则刷新后重试，
  超过 max_retries 抛出 MarkConflictError
- 写入失败一律抛出 MarkPersistenceError，不静默丢弃
"""

from __future__ import annotations

import fcntl
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Optional
from urllib.parse import quote_plus

import psycopg

from .config import Config
from .errors import (
    ConfigValueError,
    IllegalStateError,
    MarkConflictError,
    MarkPersistenceError,
    RepositoryCommandError,
    RepositoryError,
)
from .marks import Mark, format_marks, parse_marks, plan_append, validate_marks
from .repository import GitRepository, Repository

__all__ = [
    "DEFAULT_MAX_RETRIES",
    "DEFAULT_HOSTED_REF",
    "MARKS_FILE_NAME",
    "MARKS_TABLE",
    "MarkHandle",
    "MarkStore",
    "FileMarkStore",
    "HostedMarkStore",
    "PostgresMarkStore",
    "get_connection",
    "ensure_schema",
    "create_mark_store",
]

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5
DEFAULT_HOSTED_REF = "master"
MARKS_FILE_NAME = "marks.txt"
LOCK_SUFFIX = ".lock"
MARKS_TABLE = "vcsmirror_marks"

VALID_BACKENDS = {"file", "hosted", "postgres"}

_PUSH_REJECTED_MARKERS = ("[rejected]", "non-fast-forward", "fetch first", "stale info")


# =============================================================================
# 接口
# =============================================================================


class MarkHandle(ABC):
    """marks 的进程内物化视图，单次运行内由 coordinator 独占"""

    def __init__(self, work_dir: Path, marks: Iterable[Mark]):
        self.work_dir = Path(work_dir)
        self._marks: List[Mark] = validate_marks(list(marks))

    def current(self) -> List[Mark]:
        """物化时刻（以及本 handle 已写入）的 marks，按 key 升序"""
        return list(self._marks)

    def put(self, new_marks: Iterable[Mark]) -> List[Mark]:
        """
        持久化追加 new_marks

        Returns:
            实际写入的 marks（与已有 mark 完全相同的条目被忽略）

        Raises:
            MarkSequenceError: key 不大于当前最大值且内容不同，或 key 不连续
            MarkConflictError: 并发写入冲突重试耗尽
            MarkPersistenceError: 后端写入失败
        """
        new_marks = list(new_marks)
        if not new_marks:
            return []
        return self._put(new_marks)

    @abstractmethod
    def _put(self, new_marks: List[Mark]) -> List[Mark]: ...


class MarkStore(ABC):
    """marks 持久化后端"""

    @abstractmethod
    def materialize(self, work_dir: Path) -> MarkHandle:
        """在 work_dir 下建立 marks 的本地视图"""

    def describe(self) -> str:
        return type(self).__name__


# =============================================================================
# 文件后端
# =============================================================================


def _read_marks_file(path: Path) -> List[Mark]:
    if not path.exists():
        return []
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise MarkPersistenceError(f"读取 marks 文件失败: {path}: {e}", {"path": str(path)}) from e
    return validate_marks(parse_marks(text, source=str(path)))


def _write_marks_file(path: Path, marks: Iterable[Mark]) -> None:
    """整文件原子替换写入"""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=".marks-", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(format_marks(marks))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


@contextmanager
def _file_lock(path: Path) -> Iterator[None]:
    """
    在 <path>.lock 上持有排他 flock

    marks 文件本身通过 os.replace 整体替换，锁必须放在独立的 sidecar 文件上。
    """
    lock_path = path.with_name(path.name + LOCK_SUFFIX)
    try:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock_file = open(lock_path, "a")
    except OSError as e:
        raise MarkPersistenceError(
            f"无法打开 marks 锁文件: {lock_path}: {e}", {"path": str(lock_path)}
        ) from e
    with lock_file:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)


class FileMarkStore(MarkStore):
    """
    legacy 纯文件后端

    path 为 None 时使用 <work_dir>/marks.txt。写入在 sidecar 锁内完成
    "重读 -> 计算追加计划 -> 原子替换"，多个进程共享同一文件时不会互相覆盖。
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path is not None else None

    def describe(self) -> str:
        return f"FileMarkStore({self.path or MARKS_FILE_NAME})"

    def materialize(self, work_dir: Path) -> "FileMarkHandle":
        work_dir = Path(work_dir)
        work_dir.mkdir(parents=True, exist_ok=True)
        path = self.path or work_dir / MARKS_FILE_NAME
        return FileMarkHandle(work_dir, path, _read_marks_file(path))


class FileMarkHandle(MarkHandle):
    def __init__(self, work_dir: Path, path: Path, marks: List[Mark]):
        super().__init__(work_dir, marks)
        self.path = path

    def _put(self, new_marks: List[Mark]) -> List[Mark]:
        with _file_lock(self.path):
            on_disk = _read_marks_file(self.path)
            if on_disk != self._marks:
                # 其他进程在物化之后追加了 marks，以磁盘内容为准重新计算
                logger.warning(
                    "marks 文件 %s 已被其他写入者修改，重新计算追加计划", self.path
                )
                self._marks = on_disk
            plan = plan_append(self._marks, new_marks)
            if not plan:
                return []
            try:
                _write_marks_file(self.path, self._marks + plan)
            except OSError as e:
                raise MarkPersistenceError(
                    f"写入 marks 文件失败: {self.path}: {e}",
                    {"path": str(self.path), "marks": len(plan)},
                ) from e
            self._marks = self._marks + plan
            return plan


# =============================================================================
# 远端仓库后端
# =============================================================================


class HostedMarkStore(MarkStore):
    """
    远端 git 仓库后端

    marks 文件位于仓库内 <namespace>/marks.txt，写入通过 fast-forward push 完成，
    push 被拒绝（他人先推送）时刷新到远端最新状态后重试。
    """

    def __init__(
        self,
        repository_url: str,
        author_name: str,
        author_email: str,
        namespace: str,
        *,
        ref: str = DEFAULT_HOSTED_REF,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ):
        if not namespace:
            raise ConfigValueError("hosted marks 存储需要非空的 namespace")
        self.repository_url = repository_url
        self.author_name = author_name
        self.author_email = author_email
        self.namespace = namespace
        self.ref = ref
        self.max_retries = max_retries

    def describe(self) -> str:
        return f"HostedMarkStore({self.repository_url}#{self.ref}:{self.namespace})"

    def materialize(self, work_dir: Path) -> "HostedMarkHandle":
        work_dir = Path(work_dir)
        repo = Repository.open(work_dir)
        if repo is None:
            if work_dir.exists() and any(work_dir.iterdir()):
                raise IllegalStateError(
                    f"marks 工作目录已存在但不是仓库: {work_dir}", {"work_dir": str(work_dir)}
                )
            logger.info("克隆 marks 仓库 %s 到 %s", self.repository_url, work_dir)
            repo = GitRepository.clone_into(self.repository_url, work_dir)
        if not isinstance(repo, GitRepository):
            raise IllegalStateError(
                f"marks 工作目录不是 git 仓库: {work_dir}", {"work_dir": str(work_dir)}
            )
        handle = HostedMarkHandle(work_dir, repo, self, [])
        handle.refresh()
        return handle


class HostedMarkHandle(MarkHandle):
    def __init__(
        self, work_dir: Path, repo: GitRepository, store: HostedMarkStore, marks: List[Mark]
    ):
        super().__init__(work_dir, marks)
        self.repo = repo
        self.store = store

    @property
    def marks_path(self) -> Path:
        return self.work_dir / self.store.namespace / MARKS_FILE_NAME

    def refresh(self) -> None:
        """把工作副本重置为远端最新状态并重新读取 marks"""
        remote_head = self.repo.fetch_ref(self.store.repository_url, self.store.ref)
        if remote_head is None:
            # 远端还没有该分支：从空历史开始
            self.repo.reset_unborn_branch(self.store.ref)
        else:
            self.repo.reset_branch(self.store.ref, remote_head)
        self._marks = _read_marks_file(self.marks_path)

    def _put(self, new_marks: List[Mark]) -> List[Mark]:
        for attempt in range(1, self.store.max_retries + 1):
            plan = plan_append(self._marks, new_marks)
            if not plan:
                return []
            try:
                _write_marks_file(self.marks_path, self._marks + plan)
                self.repo.add([self.marks_path])
                commit = self.repo.commit(
                    f"Added {len(plan)} marks for {self.store.namespace}",
                    self.store.author_name,
                    self.store.author_email,
                )
            except (OSError, RepositoryError) as e:
                raise MarkPersistenceError(
                    f"提交 marks 失败: {e}", {"store": self.store.describe()}
                ) from e

            try:
                self.repo.push(commit, self.store.repository_url, self.store.ref)
            except RepositoryCommandError as e:
                if not any(marker in e.stderr for marker in _PUSH_REJECTED_MARKERS):
                    raise MarkPersistenceError(
                        f"推送 marks 失败: {e}",
                        {"store": self.store.describe(), "stderr": e.stderr.strip()},
                    ) from e
                logger.warning(
                    "推送 marks 被拒绝（第 %d 次尝试），刷新 %s 后重试",
                    attempt,
                    self.store.describe(),
                )
                try:
                    self.refresh()
                except RepositoryError as refresh_error:
                    raise MarkPersistenceError(
                        f"刷新 marks 仓库失败: {refresh_error}",
                        {"store": self.store.describe()},
                    ) from refresh_error
                continue

            self._marks = self._marks + plan
            return plan

        raise MarkConflictError(
            f"{self.store.describe()} 推送冲突，重试 {self.store.max_retries} 次后放弃",
            {"store": self.store.describe(), "max_retries": self.store.max_retries},
        )


# =============================================================================
# PostgreSQL 后端
# =============================================================================


def get_connection(dsn: str) -> psycopg.Connection:
    """建立数据库连接（测试中可 patch）"""
    return psycopg.connect(dsn)


def ensure_schema(conn: psycopg.Connection) -> None:
    """创建 marks 表（幂等）"""
    with conn.cursor() as cur:
        cur.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {MARKS_TABLE} (
                namespace   text        NOT NULL,
                mark_key    integer     NOT NULL,
                source_hash text        NOT NULL,
                target_hash text        NOT NULL,
                created_at  timestamptz NOT NULL DEFAULT now(),
                PRIMARY KEY (namespace, mark_key),
                UNIQUE (namespace, source_hash),
                UNIQUE (namespace, target_hash)
            )
            """
        )
    conn.commit()


def _load_marks(conn: psycopg.Connection, namespace: str) -> List[Mark]:
    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT mark_key, source_hash, target_hash
            FROM {MARKS_TABLE}
            WHERE namespace = %s
            ORDER BY mark_key
            """,
            (namespace,),
        )
        rows = cur.fetchall()
    return validate_marks([Mark(key=row[0], source_hash=row[1], target_hash=row[2]) for row in rows])


def _rollback_quietly(conn: Optional[psycopg.Connection]) -> None:
    """出错路径上的回滚；连接已断开时只记录日志，保留原始错误向上抛出"""
    if conn is None:
        return
    try:
        conn.rollback()
    except psycopg.Error as e:
        logger.warning("回滚失败: %s", e)


class PostgresMarkStore(MarkStore):
    """
    PostgreSQL 后端

    (namespace, mark_key) 主键即 CAS 边界: 两个写入者同时追加同一个 key 时，
    后提交者触发唯一约束冲突，刷新后重试。
    """

    def __init__(self, dsn: str, namespace: str, *, max_retries: int = DEFAULT_MAX_RETRIES):
        if not dsn:
            raise ConfigValueError("postgres marks 存储需要 DSN")
        if not namespace:
            raise ConfigValueError("postgres marks 存储需要非空的 namespace")
        self.dsn = dsn
        self.namespace = namespace
        self.max_retries = max_retries

    def describe(self) -> str:
        return f"PostgresMarkStore({self.namespace})"

    def materialize(self, work_dir: Path) -> "PostgresMarkHandle":
        work_dir = Path(work_dir)
        work_dir.mkdir(parents=True, exist_ok=True)
        conn: Optional[psycopg.Connection] = None
        try:
            conn = get_connection(self.dsn)
            ensure_schema(conn)
            marks = _load_marks(conn, self.namespace)
        except psycopg.Error as e:
            _rollback_quietly(conn)
            raise MarkPersistenceError(
                f"读取 marks 失败: {e}", {"namespace": self.namespace, "error": str(e)}
            ) from e
        finally:
            if conn is not None:
                conn.close()
        return PostgresMarkHandle(work_dir, self, marks)


class PostgresMarkHandle(MarkHandle):
    def __init__(self, work_dir: Path, store: PostgresMarkStore, marks: List[Mark]):
        super().__init__(work_dir, marks)
        self.store = store

    def _put(self, new_marks: List[Mark]) -> List[Mark]:
        conn: Optional[psycopg.Connection] = None
        try:
            conn = get_connection(self.store.dsn)
            for attempt in range(1, self.store.max_retries + 1):
                plan = plan_append(self._marks, new_marks)
                if not plan:
                    return []
                rows: List[Any] = [
                    (self.store.namespace, m.key, m.source_hash, m.target_hash) for m in plan
                ]
                try:
                    with conn.cursor() as cur:
                        cur.executemany(
                            f"""
                            INSERT INTO {MARKS_TABLE} (namespace, mark_key, source_hash, target_hash)
                            VALUES (%s, %s, %s, %s)
                            """,
                            rows,
                        )
                    conn.commit()
                except psycopg.errors.UniqueViolation:
                    conn.rollback()
                    logger.warning(
                        "marks 写入冲突（第 %d 次尝试），刷新 namespace=%s 后重试",
                        attempt,
                        self.store.namespace,
                    )
                    self._marks = _load_marks(conn, self.store.namespace)
                    continue
                self._marks = self._marks + plan
                return plan
        except psycopg.Error as e:
            _rollback_quietly(conn)
            raise MarkPersistenceError(
                f"写入 marks 失败: {e}", {"namespace": self.store.namespace, "error": str(e)}
            ) from e
        finally:
            if conn is not None:
                conn.close()

        raise MarkConflictError(
            f"namespace={self.store.namespace} 写入冲突，重试 {self.store.max_retries} 次后放弃",
            {"namespace": self.store.namespace, "max_retries": self.store.max_retries},
        )


# =============================================================================
# 工厂
# =============================================================================


def create_mark_store(
    config: Config,
    *,
    storage_dir: Path,
    target_path: Path,
    namespace: str,
) -> MarkStore:
    """
    根据配置 [marks] 段创建后端

    Args:
        config: 配置
        storage_dir: 本地存储根目录（file 后端默认放在 <storage>/marks/<quoted to>/marks.txt）
        target_path: 目标仓库路径
        namespace: hosted/postgres 后端的命名空间标签
    """
    backend = config.get("marks.backend", "file")
    max_retries = config.get_int("marks.max_retries", DEFAULT_MAX_RETRIES)
    if backend == "file":
        path = config.get("marks.path")
        if path:
            return FileMarkStore(Path(path))
        default = Path(storage_dir) / "marks" / quote_plus(str(target_path)) / MARKS_FILE_NAME
        return FileMarkStore(default)
    if backend == "hosted":
        return HostedMarkStore(
            config.require("marks.repository"),
            config.require("marks.author_name"),
            config.require("marks.author_email"),
            namespace,
            ref=config.get("marks.ref", DEFAULT_HOSTED_REF),
            max_retries=max_retries,
        )
    if backend == "postgres":
        dsn = config.marks_dsn
        if not dsn:
            raise ConfigValueError("marks.backend=postgres 需要 marks.dsn 或环境变量 VCSMIRROR_MARKS_DSN")
        return PostgresMarkStore(dsn, namespace, max_retries=max_retries)
    raise ConfigValueError(
        f"未知的 marks 后端: {backend}", {"backend": backend, "valid": sorted(VALID_BACKENDS)}
    )
