# -*- coding: utf-8 -*-
"""
vcsmirror.repository - 本地 VCS 仓库抽象

通过 subprocess 调用 git / hg 命令行实现:
- 生命周期: clone / open / init
- 同步: checkout / pull / fetch / push
- 读取: head / resolve / commit_metadata / topo_commits / export_tree
- 写入: add / commit / commit_snapshot

所有命令失败统一转换为 RepositoryCommandError（保留 cmd/returncode/stderr），
命令不存在转换为 RepositoryError。

使用示例:
    from vcsmirror.repository import Repository, VCS_HG

    source = Repository.clone("https://example.com/repo.git", Path("/tmp/src"))
    target = Repository.init(Path("/tmp/dst"), VCS_HG)
    for commit in source.topo_commits("master"):
        ...
"""

from __future__ import annotations

import json
import os
import shutil
import stat
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.utils import parseaddr
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import ConversionError, RepositoryCommandError, RepositoryError

__all__ = [
    "VCS_GIT",
    "VCS_HG",
    "VALID_VCS",
    "NULL_HASH",
    "DEFAULT_COMMAND_TIMEOUT",
    "CommitMetadata",
    "Repository",
    "GitRepository",
    "HgRepository",
    "run_command",
]

VCS_GIT = "git"
VCS_HG = "hg"
VALID_VCS = {VCS_GIT, VCS_HG}

NULL_HASH = "0" * 40

DEFAULT_COMMAND_TIMEOUT = 600

_GIT_LOG_FORMAT = "%H%x00%P%x00%an%x00%ae%x00%ad%x00%cn%x00%ce%x00%cd%x00%B%x1e"

_GIT_MODE_FILE = "100644"
_GIT_MODE_EXECUTABLE = "100755"
_GIT_MODE_SYMLINK = "120000"


@dataclass(frozen=True)
class CommitMetadata:
    """提交摘要"""

    hash: str
    parents: Tuple[str, ...]
    author_name: str
    author_email: str
    timestamp: int
    # git 风格时区，如 "+0200"
    tz_offset: str
    message: str
    # hg 没有独立的提交者，此时为 None，回退到作者
    committer_name: Optional[str] = None
    committer_email: Optional[str] = None
    committer_timestamp: Optional[int] = None
    committer_tz_offset: Optional[str] = None

    @property
    def author(self) -> str:
        if self.author_email:
            return f"{self.author_name} <{self.author_email}>"
        return self.author_name

    @property
    def committer_date(self) -> str:
        ts = self.committer_timestamp if self.committer_timestamp is not None else self.timestamp
        return f"{ts} {self.committer_tz_offset or self.tz_offset}"

    @property
    def is_merge(self) -> bool:
        return len(self.parents) > 1

    def to_dict(self) -> dict:
        return {
            "hash": self.hash,
            "parents": list(self.parents),
            "author": self.author,
            "timestamp": self.timestamp,
            "tz_offset": self.tz_offset,
            "message": self.message,
        }


def run_command(
    cmd: List[str],
    *,
    cwd: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
    input: Optional[str | bytes] = None,
    text: bool = True,
    check: bool = True,
    timeout: int = DEFAULT_COMMAND_TIMEOUT,
) -> subprocess.CompletedProcess:
    """
    执行 VCS 命令

    Args:
        cmd: 命令及参数
        cwd: 工作目录
        env: 额外环境变量（合并到当前进程环境）
        input: 标准输入
        text: 是否按文本处理 stdout/stderr
        check: 非 0 退出码时是否抛出 RepositoryCommandError
        timeout: 超时秒数

    Raises:
        RepositoryError: 命令不存在
        RepositoryCommandError: 命令超时或失败
    """
    full_env = None
    if env:
        full_env = dict(os.environ)
        full_env.update(env)
    try:
        return subprocess.run(
            cmd,
            cwd=str(cwd) if cwd is not None else None,
            env=full_env,
            input=input,
            capture_output=True,
            text=text,
            timeout=timeout,
            check=check,
        )
    except FileNotFoundError as exc:
        raise RepositoryError(f"找不到命令: {cmd[0]}", {"cmd": cmd}) from exc
    except subprocess.TimeoutExpired as exc:
        raise RepositoryCommandError(
            f"命令超时（{timeout}s）: {' '.join(cmd)}", cmd=cmd, stderr=""
        ) from exc
    except subprocess.CalledProcessError as exc:
        stderr = exc.stderr if isinstance(exc.stderr, str) else (exc.stderr or b"").decode(
            "utf-8", "replace"
        )
        raise RepositoryCommandError(
            f"命令执行失败: {' '.join(cmd)}",
            cmd=cmd,
            returncode=exc.returncode,
            stderr=stderr,
        ) from exc


def _git_tz_from_hg_offset(offset: int) -> str:
    # hg 的 offset 为 UTC 以西的秒数
    east = -offset
    sign = "+" if east >= 0 else "-"
    east = abs(east)
    return f"{sign}{east // 3600:02d}{(east % 3600) // 60:02d}"


def _hg_offset_from_git_tz(tz: str) -> int:
    sign = -1 if tz.startswith("-") else 1
    digits = tz.lstrip("+-").rjust(4, "0")
    east = sign * (int(digits[:2]) * 3600 + int(digits[2:]) * 60)
    return -east


def _clear_worktree(root: Path, keep: str) -> None:
    for entry in root.iterdir():
        if entry.name == keep:
            continue
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            entry.unlink()


class Repository(ABC):
    """本地仓库抽象"""

    kind: str = ""
    default_remote: str = ""

    def __init__(self, root: Path, *, timeout: int = DEFAULT_COMMAND_TIMEOUT):
        self.root = Path(root)
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.root})"

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    @staticmethod
    def clone(uri: str, directory: Path, kind: str = VCS_GIT) -> "Repository":
        """完整克隆 uri 到 directory"""
        return _repository_class(kind).clone_into(uri, Path(directory))

    @staticmethod
    def open(directory: Path) -> Optional["Repository"]:
        """
        打开已有仓库

        Returns:
            仓库实例；目录不存在或不是仓库时返回 None
        """
        directory = Path(directory)
        if not directory.is_dir():
            return None
        if (directory / ".hg").is_dir():
            return HgRepository(directory)
        if (directory / ".git").exists() or _looks_like_bare_git(directory):
            repo = GitRepository(directory)
            if repo.is_valid():
                return repo
        return None

    @staticmethod
    def init(directory: Path, kind: str) -> "Repository":
        """在 directory 初始化空仓库"""
        return _repository_class(kind).init_in(Path(directory))

    # ------------------------------------------------------------------
    # 同步
    # ------------------------------------------------------------------

    @abstractmethod
    def checkout(self, branch: str) -> None: ...

    @abstractmethod
    def pull(self, remote: str, branch: str) -> None:
        """从 remote 拉取 branch 并 fast-forward 本地分支"""

    @abstractmethod
    def fetch(self, uri: str, ref: str) -> str:
        """拉取 uri 上的 ref，返回拉取到的提交 hash"""

    @abstractmethod
    def push(self, ref: str, uri: str, branch: str, force: bool = False) -> None: ...

    # ------------------------------------------------------------------
    # 读取
    # ------------------------------------------------------------------

    @abstractmethod
    def resolve(self, ref: str) -> Optional[str]:
        """解析 ref 为提交 hash，不存在时返回 None"""

    @abstractmethod
    def head(self) -> Optional[str]:
        """当前 head 提交，空仓库返回 None"""

    @abstractmethod
    def commit_metadata(self, ref: Optional[str] = None) -> List[CommitMetadata]:
        """ref（默认 head）可达的所有提交，最新在前"""

    @abstractmethod
    def topo_commits(self, ref: str) -> List[CommitMetadata]:
        """ref 可达的所有提交，祖先先于后代（最旧在前）"""

    @abstractmethod
    def export_tree(self, commit: str, dest: Path) -> None:
        """把 commit 的完整文件树导出到 dest（dest 不存在或为空目录）"""

    # ------------------------------------------------------------------
    # 写入
    # ------------------------------------------------------------------

    @abstractmethod
    def add(self, paths: Sequence[Path]) -> None: ...

    @abstractmethod
    def commit(self, message: str, author_name: str, author_email: str) -> str: ...

    @abstractmethod
    def commit_snapshot(
        self, snapshot_dir: Path, parents: Sequence[str], metadata: CommitMetadata
    ) -> str:
        """
        以 snapshot_dir 的完整内容为树，在给定父提交上创建一个提交

        作者、日期、消息取自 metadata；返回新提交 hash，并把 head 移到该提交。
        """


def _looks_like_bare_git(directory: Path) -> bool:
    return (
        (directory / "HEAD").is_file()
        and (directory / "objects").is_dir()
        and (directory / "refs").is_dir()
    )


def _repository_class(kind: str):
    if kind == VCS_GIT:
        return GitRepository
    if kind == VCS_HG:
        return HgRepository
    raise RepositoryError(f"不支持的 VCS 类型: {kind}", {"kind": kind, "valid": sorted(VALID_VCS)})


# =============================================================================
# git
# =============================================================================


class GitRepository(Repository):
    """git 仓库"""

    kind = VCS_GIT
    default_remote = "origin"

    @classmethod
    def clone_into(cls, uri: str, directory: Path) -> "GitRepository":
        directory.mkdir(parents=True, exist_ok=True)
        run_command(["git", "clone", "--quiet", uri, str(directory)])
        return cls(directory)

    @classmethod
    def init_in(cls, directory: Path) -> "GitRepository":
        directory.mkdir(parents=True, exist_ok=True)
        run_command(["git", "init", "--quiet", str(directory)])
        return cls(directory)

    def _git(
        self,
        *args: str,
        env: Optional[Dict[str, str]] = None,
        input: Optional[str | bytes] = None,
        text: bool = True,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        cmd = ["git", "-C", str(self.root), "-c", "commit.gpgsign=false", *args]
        return run_command(
            cmd, env=env, input=input, text=text, check=check, timeout=self.timeout
        )

    def is_valid(self) -> bool:
        return self._git("rev-parse", "--git-dir", check=False).returncode == 0

    def git_dir(self) -> Path:
        return Path(self._git("rev-parse", "--absolute-git-dir").stdout.strip())

    def is_bare(self) -> bool:
        return self._git("rev-parse", "--is-bare-repository").stdout.strip() == "true"

    # ------------------------------------------------------------------
    # 同步
    # ------------------------------------------------------------------

    def checkout(self, branch: str) -> None:
        self._git("checkout", "--quiet", branch)

    def pull(self, remote: str, branch: str) -> None:
        self._git("pull", "--quiet", "--ff-only", remote, branch)

    def fetch(self, uri: str, ref: str) -> str:
        self._git("fetch", "--quiet", uri, ref)
        return self._git("rev-parse", "FETCH_HEAD").stdout.strip()

    def push(self, ref: str, uri: str, branch: str, force: bool = False) -> None:
        args = ["push", "--quiet"]
        if force:
            args.append("--force")
        self._git(*args, uri, f"{ref}:refs/heads/{branch}")

    def reset_hard(self, ref: str) -> None:
        self._git("reset", "--quiet", "--hard", ref)

    def fetch_ref(self, remote: str, ref: str) -> Optional[str]:
        """拉取 remote 上的分支，远端分支不存在时返回 None"""
        listing = self._git("ls-remote", "--heads", remote, ref).stdout.split()
        if not listing:
            return None
        return self.fetch(remote, f"refs/heads/{ref}")

    def reset_branch(self, branch: str, commit: str) -> None:
        """强制把本地 branch 指向 commit 并检出"""
        self._git("checkout", "--quiet", "--force", "-B", branch, commit)

    def reset_unborn_branch(self, branch: str) -> None:
        """把 HEAD 指向空历史的 branch，丢弃本地未推送的提交与工作区文件"""
        self._git("symbolic-ref", "HEAD", f"refs/heads/{branch}")
        self._git("update-ref", "-d", f"refs/heads/{branch}", check=False)
        self._git("read-tree", "--empty")
        self._git("clean", "--quiet", "-fdx")

    def remotes(self) -> List[str]:
        return [line for line in self._git("remote").stdout.splitlines() if line.strip()]

    def remote_branches(self, remote: str) -> List[Tuple[str, str]]:
        """远端分支列表 [(name, hash)]"""
        out = self._git("ls-remote", "--heads", remote).stdout
        branches = []
        for line in out.splitlines():
            parts = line.split()
            if len(parts) == 2 and parts[1].startswith("refs/heads/"):
                branches.append((parts[1][len("refs/heads/") :], parts[0]))
        return branches

    def config_value(self, key: str) -> List[str]:
        """git config --get-all，未设置时返回空列表"""
        proc = self._git("config", "--get-all", key, check=False)
        if proc.returncode != 0:
            return []
        return [line for line in proc.stdout.splitlines() if line]

    def pull_path(self, remote: str) -> str:
        return self._git("remote", "get-url", remote).stdout.strip()

    # ------------------------------------------------------------------
    # 读取
    # ------------------------------------------------------------------

    def resolve(self, ref: str) -> Optional[str]:
        proc = self._git("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}", check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout.strip() or None

    def head(self) -> Optional[str]:
        return self.resolve("HEAD")

    def _log(self, *args: str) -> List[CommitMetadata]:
        out = self._git("log", "--date=raw", f"--format={_GIT_LOG_FORMAT}", *args).stdout
        commits = []
        for record in out.split("\x1e"):
            record = record.lstrip("\n")
            if not record:
                continue
            fields = record.split("\x00", 8)
            if len(fields) != 9:
                raise RepositoryError(f"无法解析 git log 输出: {record[:80]!r}")
            commit_hash, parents, name, email, date, c_name, c_email, c_date, message = fields
            ts, _, tz = date.partition(" ")
            c_ts, _, c_tz = c_date.partition(" ")
            commits.append(
                CommitMetadata(
                    hash=commit_hash,
                    parents=tuple(parents.split()),
                    author_name=name,
                    author_email=email,
                    timestamp=int(ts),
                    tz_offset=tz or "+0000",
                    message=message,
                    committer_name=c_name,
                    committer_email=c_email,
                    committer_timestamp=int(c_ts),
                    committer_tz_offset=c_tz or "+0000",
                )
            )
        return commits

    def commit_metadata(self, ref: Optional[str] = None) -> List[CommitMetadata]:
        rev = ref or "HEAD"
        if self.resolve(rev) is None:
            return []
        return self._log(rev)

    def topo_commits(self, ref: str) -> List[CommitMetadata]:
        if self.resolve(ref) is None:
            raise RepositoryError(f"无法解析引用: {ref}", {"ref": ref, "repo": str(self.root)})
        return self._log("--topo-order", "--reverse", ref)

    def export_tree(self, commit: str, dest: Path) -> None:
        """
        按提交中的原始 blob 导出文件树

        不经过 .gitattributes（export-ignore/export-subst/eol/filter），
        子模块 gitlink 无法以文件形式表达，抛出 ConversionError。
        """
        dest.mkdir(parents=True, exist_ok=True)
        listing = self._git("ls-tree", "-r", "-z", "--full-tree", commit, text=False).stdout
        entries = []
        for record in listing.split(b"\0"):
            if not record:
                continue
            meta, _, raw_path = record.partition(b"\t")
            mode, kind, sha = meta.decode("ascii").split()
            path = os.fsdecode(raw_path)
            if kind != "blob":
                raise ConversionError(
                    f"提交 {commit} 包含无法导出的条目 {path}（{kind}）",
                    {"commit": commit, "path": path, "mode": mode},
                )
            entries.append((mode, sha, path))
        if not entries:
            return

        blobs = self._read_blobs([sha for _, sha, _ in entries])
        for mode, sha, path in entries:
            target = dest / path
            target.parent.mkdir(parents=True, exist_ok=True)
            if mode == _GIT_MODE_SYMLINK:
                os.symlink(os.fsdecode(blobs[sha]), target)
                continue
            target.write_bytes(blobs[sha])
            if mode == _GIT_MODE_EXECUTABLE:
                target.chmod(0o755)

    def _read_blobs(self, shas: Sequence[str]) -> Dict[str, bytes]:
        unique = list(dict.fromkeys(shas))
        request = ("\n".join(unique) + "\n").encode("ascii")
        out = self._git("cat-file", "--batch", input=request, text=False).stdout
        blobs: Dict[str, bytes] = {}
        pos = 0
        while pos < len(out):
            eol = out.index(b"\n", pos)
            header = out[pos:eol].decode("ascii").split()
            if len(header) != 3:
                raise RepositoryError(
                    f"无法读取对象: {' '.join(header)}", {"repo": str(self.root)}
                )
            sha, _, size = header
            start = eol + 1
            blobs[sha] = out[start : start + int(size)]
            pos = start + int(size) + 1
        return blobs

    # ------------------------------------------------------------------
    # 写入
    # ------------------------------------------------------------------

    def add(self, paths: Sequence[Path]) -> None:
        self._git("add", "--", *[str(p) for p in paths])

    def commit(self, message: str, author_name: str, author_email: str) -> str:
        env = _git_identity_env(author_name, author_email)
        self._git("commit", "--quiet", "-m", message, env=env)
        head = self.head()
        if head is None:
            raise RepositoryError("提交后 HEAD 仍未指向任何提交", {"repo": str(self.root)})
        return head

    def _hash_snapshot(self, snapshot_dir: Path) -> List[bytes]:
        """把快照按原始字节写入对象库，返回 update-index --index-info 的 -z 条目"""
        files: List[Tuple[str, str]] = []
        links: List[str] = []
        for root, dirs, names in os.walk(snapshot_dir):
            # 指向目录的符号链接作为链接本身记录，不进入
            for name in list(dirs):
                if os.path.islink(os.path.join(root, name)):
                    dirs.remove(name)
                    names.append(name)
            for name in names:
                full = os.path.join(root, name)
                rel = os.path.relpath(full, snapshot_dir)
                if os.path.islink(full):
                    links.append(rel)
                elif os.stat(full).st_mode & stat.S_IXUSR:
                    files.append((_GIT_MODE_EXECUTABLE, rel))
                else:
                    files.append((_GIT_MODE_FILE, rel))

        entries = []
        if files:
            paths = "".join(os.path.join(snapshot_dir, rel) + "\n" for _, rel in files)
            shas = self._git(
                "hash-object", "-w", "--no-filters", "--stdin-paths", input=paths
            ).stdout.split()
            for (mode, rel), sha in zip(files, shas):
                entries.append(_index_entry(mode, sha, rel))
        for rel in links:
            link_target = os.readlink(os.path.join(snapshot_dir, rel))
            out = self._git(
                "hash-object", "-w", "--stdin", input=os.fsencode(link_target), text=False
            ).stdout
            entries.append(_index_entry(_GIT_MODE_SYMLINK, out.decode("ascii").strip(), rel))
        return entries

    def commit_snapshot(
        self, snapshot_dir: Path, parents: Sequence[str], metadata: CommitMetadata
    ) -> str:
        git_dir = self.git_dir()
        index_file = git_dir / "vcsmirror-index"
        if index_file.exists():
            index_file.unlink()
        env = {"GIT_INDEX_FILE": str(index_file)}
        try:
            entries = self._hash_snapshot(snapshot_dir)
            if entries:
                self._git(
                    "update-index", "-z", "--add", "--index-info",
                    env=env, input=b"".join(entries), text=False,
                )
            tree = self._git("write-tree", env=env).stdout.strip()
        finally:
            if index_file.exists():
                index_file.unlink()

        args = ["commit-tree", tree]
        for parent in parents:
            args += ["-p", parent]
        env = _git_identity_env(
            metadata.author_name,
            metadata.author_email,
            date=f"{metadata.timestamp} {metadata.tz_offset}",
            committer_name=metadata.committer_name,
            committer_email=metadata.committer_email,
            committer_date=metadata.committer_date,
        )
        commit = self._git(*args, env=env, input=metadata.message).stdout.strip()
        self._git("update-ref", "HEAD", commit)
        if not self.is_bare():
            self.reset_hard("HEAD")
        return commit


def _index_entry(mode: str, sha: str, rel_path: str) -> bytes:
    path = os.fsencode(rel_path.replace(os.sep, "/"))
    return f"{mode} {sha}\t".encode("ascii") + path + b"\0"


def _git_identity_env(
    name: str,
    email: str,
    *,
    date: Optional[str] = None,
    committer_name: Optional[str] = None,
    committer_email: Optional[str] = None,
    committer_date: Optional[str] = None,
) -> Dict[str, str]:
    env = {
        "GIT_AUTHOR_NAME": name,
        "GIT_AUTHOR_EMAIL": email,
        "GIT_COMMITTER_NAME": committer_name if committer_name is not None else name,
        "GIT_COMMITTER_EMAIL": committer_email if committer_email is not None else email,
    }
    if date is not None:
        env["GIT_AUTHOR_DATE"] = date
        env["GIT_COMMITTER_DATE"] = committer_date or date
    return env


# =============================================================================
# hg
# =============================================================================


class HgRepository(Repository):
    """Mercurial 仓库"""

    kind = VCS_HG
    default_remote = "default"

    _ENV = {"HGPLAIN": "1", "HGENCODING": "utf-8"}

    @classmethod
    def clone_into(cls, uri: str, directory: Path) -> "HgRepository":
        directory.mkdir(parents=True, exist_ok=True)
        run_command(["hg", "clone", "--quiet", uri, str(directory)], env=cls._ENV)
        return cls(directory)

    @classmethod
    def init_in(cls, directory: Path) -> "HgRepository":
        directory.mkdir(parents=True, exist_ok=True)
        run_command(["hg", "init", str(directory)], env=cls._ENV)
        return cls(directory)

    def _hg(
        self, *args: str, check: bool = True, input: Optional[str] = None
    ) -> subprocess.CompletedProcess:
        cmd = ["hg", "--cwd", str(self.root), *args]
        return run_command(cmd, env=self._ENV, check=check, input=input, timeout=self.timeout)

    # ------------------------------------------------------------------
    # 同步
    # ------------------------------------------------------------------

    def checkout(self, branch: str) -> None:
        self._hg("update", "--quiet", "--rev", branch)

    def pull(self, remote: str, branch: str) -> None:
        self._hg("pull", "--quiet", "--branch", branch, remote)
        self._hg("update", "--quiet", "--rev", branch)

    def fetch(self, uri: str, ref: str) -> str:
        self._hg("pull", "--quiet", "--rev", ref, uri)
        resolved = self.resolve(ref)
        if resolved is None:
            raise RepositoryError(f"拉取后无法解析: {ref}", {"uri": uri, "ref": ref})
        return resolved

    def push(self, ref: str, uri: str, branch: str, force: bool = False) -> None:
        args = ["push", "--quiet", "--rev", ref]
        if force:
            args.append("--force")
        proc = self._hg(*args, uri, check=False)
        # hg push 在没有可推送的变更时以 1 退出
        if proc.returncode not in (0, 1):
            raise RepositoryCommandError(
                f"命令执行失败: hg push {uri}",
                cmd=["hg", *args, uri],
                returncode=proc.returncode,
                stderr=proc.stderr,
            )

    # ------------------------------------------------------------------
    # 读取
    # ------------------------------------------------------------------

    def resolve(self, ref: str) -> Optional[str]:
        proc = self._hg("log", "--rev", ref, "--limit", "1", "--template", "{node}", check=False)
        node = proc.stdout.strip()
        if proc.returncode != 0 or not node or node == NULL_HASH:
            return None
        return node

    def head(self) -> Optional[str]:
        return self.resolve("tip")

    def _log(self, revset: str) -> List[CommitMetadata]:
        out = self._hg("log", "--rev", revset, "--template", "json").stdout
        entries = json.loads(out or "[]")
        commits = []
        for entry in entries:
            name, email = parseaddr(entry.get("user", ""))
            ts, offset = entry.get("date", [0, 0])
            parents = tuple(p for p in entry.get("parents", []) if p != NULL_HASH)
            commits.append(
                CommitMetadata(
                    hash=entry["node"],
                    parents=parents,
                    author_name=name or entry.get("user", ""),
                    author_email=email,
                    timestamp=int(ts),
                    tz_offset=_git_tz_from_hg_offset(int(offset)),
                    message=entry.get("desc", ""),
                )
            )
        return commits

    def commit_metadata(self, ref: Optional[str] = None) -> List[CommitMetadata]:
        rev = ref or "tip"
        if self.resolve(rev) is None:
            return []
        return self._log(f"reverse(::{rev})")

    def topo_commits(self, ref: str) -> List[CommitMetadata]:
        if self.resolve(ref) is None:
            raise RepositoryError(f"无法解析引用: {ref}", {"ref": ref, "repo": str(self.root)})
        # 本地修订号天然满足父提交在前
        return self._log(f"::{ref}")

    def export_tree(self, commit: str, dest: Path) -> None:
        if dest.exists():
            if any(dest.iterdir()):
                raise RepositoryError(f"导出目录非空: {dest}", {"dest": str(dest)})
            dest.rmdir()
        self._hg(
            "--config", "ui.archivemeta=False",
            "archive", "--quiet", "--rev", commit, "--type", "files", str(dest),
        )

    # ------------------------------------------------------------------
    # 写入
    # ------------------------------------------------------------------

    def add(self, paths: Sequence[Path]) -> None:
        self._hg("add", "--quiet", *[str(p) for p in paths])

    def commit(self, message: str, author_name: str, author_email: str) -> str:
        user = f"{author_name} <{author_email}>" if author_email else author_name
        self._hg("commit", "--quiet", "--user", user, "--message", message)
        head = self.head()
        if head is None:
            raise RepositoryError("提交后 HEAD 仍未指向任何提交", {"repo": str(self.root)})
        return head

    def commit_snapshot(
        self, snapshot_dir: Path, parents: Sequence[str], metadata: CommitMetadata
    ) -> str:
        if len(parents) > 2:
            raise ConversionError(
                f"hg 不支持超过 2 个父提交的合并: {metadata.hash}",
                {"hash": metadata.hash, "parents": list(parents)},
            )
        self._hg("update", "--quiet", "--clean", "--rev", parents[0] if parents else "null")
        _clear_worktree(self.root, keep=".hg")
        shutil.copytree(snapshot_dir, self.root, symlinks=True, dirs_exist_ok=True)
        self._hg("addremove", "--quiet")
        if len(parents) == 2:
            self._hg("debugsetparents", parents[0], parents[1])

        offset = _hg_offset_from_git_tz(metadata.tz_offset)
        # hg 不接受空提交消息
        message = metadata.message if metadata.message.strip() else "<empty>"
        self._hg(
            "--config", "ui.allowemptycommit=True",
            "commit", "--quiet",
            "--user", metadata.author,
            "--date", f"{metadata.timestamp} {offset}",
            "--message", message,
        )
        node = self.head()
        if node is None:
            raise ConversionError(f"提交后无法读取 tip: {metadata.hash}", {"hash": metadata.hash})
        return node
