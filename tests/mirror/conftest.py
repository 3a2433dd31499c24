# -*- coding: utf-8 -*-
"""
pytest 共享 fixtures

提供:
- 隔离的 git/hg 身份与全局配置（HOME 指向临时目录）
- 带 3 个提交的源仓库（bare 远端 + 工作副本）
- 存储根目录 / scratch 目录
- git 命令辅助函数（git_run fixture）
"""

import subprocess
from pathlib import Path
from typing import Dict, List

import pytest

from vcsmirror.config import Config, MirrorContext

AUTHOR_NAME = "duke"
AUTHOR_EMAIL = "duke@openjdk.org"

_GITCONFIG = f"""\
[user]
    name = {AUTHOR_NAME}
    email = {AUTHOR_EMAIL}
[init]
    defaultBranch = master
[commit]
    gpgsign = false
[protocol "file"]
    allow = always
"""


def git(cwd: Path, *args: str) -> str:
    """在 cwd 执行 git 命令，返回 stdout"""
    proc = subprocess.run(
        ["git", *args], cwd=str(cwd), capture_output=True, text=True, check=True
    )
    return proc.stdout


def commit_file(work: Path, name: str, content: str, message: str) -> str:
    """写入文件并提交，返回提交 hash"""
    (work / name).write_text(content, encoding="utf-8")
    git(work, "add", name)
    git(work, "commit", "--quiet", "-m", message)
    return git(work, "rev-parse", "HEAD").strip()


def count_git_commits(repo: Path, ref: str = "HEAD") -> int:
    return int(git(repo, "rev-list", "--count", ref).strip())


class SourceRepo:
    """bare 远端 + 用于推送新提交的工作副本"""

    def __init__(self, remote: Path, work: Path):
        self.remote = remote
        self.work = work
        self.commits: List[str] = []

    @property
    def uri(self) -> str:
        return str(self.remote)

    def add_commit(self, name: str, content: str, message: str) -> str:
        commit = commit_file(self.work, name, content, message)
        git(self.work, "push", "--quiet", "origin", "master")
        self.commits.append(commit)
        return commit


@pytest.fixture
def vcs_env(tmp_path: Path, monkeypatch) -> Dict[str, str]:
    """隔离 git/hg 的用户配置"""
    home = tmp_path / "home"
    home.mkdir()
    (home / ".gitconfig").write_text(_GITCONFIG, encoding="utf-8")
    env = {
        "HOME": str(home),
        "GIT_CONFIG_NOSYSTEM": "1",
        "GIT_AUTHOR_NAME": AUTHOR_NAME,
        "GIT_AUTHOR_EMAIL": AUTHOR_EMAIL,
        "GIT_COMMITTER_NAME": AUTHOR_NAME,
        "GIT_COMMITTER_EMAIL": AUTHOR_EMAIL,
        "HGRCPATH": "",
        "HGUSER": f"{AUTHOR_NAME} <{AUTHOR_EMAIL}>",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    monkeypatch.delenv("VCSMIRROR_CONFIG", raising=False)
    monkeypatch.delenv("VCSMIRROR_MARKS_DSN", raising=False)
    return env


@pytest.fixture
def empty_source(tmp_path: Path, vcs_env) -> SourceRepo:
    """没有提交的源仓库"""
    remote = tmp_path / "remote" / "jdk.git"
    remote.mkdir(parents=True)
    git(remote, "init", "--quiet", "--bare")
    git(remote, "symbolic-ref", "HEAD", "refs/heads/master")
    work = tmp_path / "source-work"
    git(tmp_path, "clone", "--quiet", str(remote), str(work))
    git(work, "symbolic-ref", "HEAD", "refs/heads/master")
    return SourceRepo(remote, work)


@pytest.fixture
def source_repo(empty_source: SourceRepo) -> SourceRepo:
    """带 3 个提交的源仓库（master 分支）"""
    empty_source.add_commit("README", "Hello, world!\n", "Add README")
    empty_source.add_commit("README", "Hello, world!\nSecond line\n", "Modify README")
    empty_source.add_commit("README", "Hello again\n", "Final README")
    return empty_source


@pytest.fixture
def storage_dir(tmp_path: Path) -> Path:
    path = tmp_path / "storage"
    path.mkdir()
    return path


@pytest.fixture
def scratch_dir(tmp_path: Path) -> Path:
    path = tmp_path / "scratch"
    path.mkdir()
    return path


@pytest.fixture
def context() -> MirrorContext:
    return MirrorContext(config=Config(data={}))


@pytest.fixture
def git_run():
    """git(cwd, *args) -> stdout"""
    return git


@pytest.fixture
def make_work_repo(tmp_path: Path, vcs_env):
    """创建带 master 分支的非 bare 仓库"""

    def _make(name: str) -> Path:
        path = tmp_path / name
        path.mkdir(parents=True)
        git(path, "init", "--quiet")
        git(path, "symbolic-ref", "HEAD", "refs/heads/master")
        return path

    return _make


@pytest.fixture
def make_bare_repo(tmp_path: Path, vcs_env):
    """创建空的 bare 仓库"""

    def _make(name: str) -> Path:
        path = tmp_path / name
        path.mkdir(parents=True)
        git(path, "init", "--quiet", "--bare")
        git(path, "symbolic-ref", "HEAD", "refs/heads/master")
        return path

    return _make
