# -*- coding: utf-8 -*-
"""
CLI 测试

测试:
- --version
- 配置错误: 单行 stderr 诊断，退出码 1
- run --once: 端到端镜像，--json 输出结果摘要
- sync: 远端分支同步、分支过滤、同步源解析
"""

import json
import shutil

import pytest

from vcsmirror import __version__
from vcsmirror.cli import create_parser, main, resolve_sync_source, resolve_sync_target
from vcsmirror.errors import ConfigValueError
from vcsmirror.marks import parse_marks
from vcsmirror.repository import GitRepository

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="需要 git 命令")


def error_lines(stderr: str):
    return [line for line in stderr.splitlines() if line.startswith("error: ")]


class TestParser:
    """参数解析测试"""

    def test_run_arguments(self):
        args = create_parser().parse_args(
            ["run", "--from", "uri", "--branch", "dev", "--to", "/t", "--once", "--json", "-c", "c.toml"]
        )
        assert args.command == "run"
        assert args.source == "uri"
        assert args.branch == "dev"
        assert args.target == "/t"
        assert args.once is True
        assert args.json is True
        assert args.config_path == "c.toml"

    def test_sync_arguments(self):
        args = create_parser().parse_args(["sync", "--branches", "a,b", "--pull", "--verbose"])
        assert args.command == "sync"
        assert args.branches == "a,b"
        assert args.pull is True
        assert args.verbose is True


class TestMainBasics:
    """main 基本行为测试"""

    def test_version(self, capsys):
        assert main(["--version"]) == 0
        assert capsys.readouterr().out.strip() == f"vcsmirror version: {__version__}"

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "vcsmirror" in capsys.readouterr().out

    def test_missing_items(self, tmp_path, monkeypatch, capsys):
        """没有可执行的镜像: 配置错误，退出码 1"""
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path))
        monkeypatch.delenv("VCSMIRROR_CONFIG", raising=False)
        assert main(["run", "--storage", str(tmp_path / "s"), "--once"]) == 1
        stderr = capsys.readouterr().err
        assert len(error_lines(stderr)) == 1

    def test_missing_storage(self, tmp_path, monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path))
        monkeypatch.delenv("VCSMIRROR_CONFIG", raising=False)
        assert main(["run", "--from", "uri", "--to", str(tmp_path / "t"), "--once"]) == 1
        assert "storage" in capsys.readouterr().err

    def test_missing_config_file(self, tmp_path, capsys):
        assert main(["run", "-c", str(tmp_path / "missing.toml"), "--once"]) == 1
        stderr = capsys.readouterr().err
        assert error_lines(stderr)[0].startswith("error: 配置文件不存在")

    def test_json_error_output(self, tmp_path, monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path))
        monkeypatch.delenv("VCSMIRROR_CONFIG", raising=False)
        assert main(["run", "--once", "--json"]) == 1
        payload = json.loads(capsys.readouterr().out)
        assert payload["ok"] is False
        assert payload["code"] == "CONFIG_VALUE_ERROR"

    def test_unknown_marks_backend(self, tmp_path, capsys):
        config = tmp_path / "config.toml"
        config.write_text(
            f'[mirror]\nstorage = "{tmp_path / "s"}"\n\n[marks]\nbackend = "s3"\n\n'
            f'[[mirror.items]]\nfrom = "uri"\nto = "{tmp_path / "t"}"\n',
            encoding="utf-8",
        )
        assert main(["run", "-c", str(config), "--once"]) == 1
        assert "s3" in capsys.readouterr().err


@requires_git
class TestRunCommand:
    """run 子命令端到端测试"""

    def test_run_once_json(self, source_repo, tmp_path, capsys):
        storage = tmp_path / "storage"
        target = tmp_path / "target"
        argv = [
            "run",
            "--from", source_repo.uri,
            "--to", str(target),
            "--storage", str(storage),
            "--target-kind", "git",
            "--once",
            "--json",
        ]
        assert main(argv) == 0

        payload = json.loads(capsys.readouterr().out)
        assert payload["ok"] is True
        [result] = payload["results"]
        assert result["success"] is True
        assert result["mode"] == "full"
        assert result["persisted_marks"] == 3

        marks_files = list((storage / "marks").glob("*/marks.txt"))
        assert len(marks_files) == 1
        assert [m.key for m in parse_marks(marks_files[0].read_text(encoding="utf-8"))] == [1, 2, 3]

        source_repo.add_commit("NEWS", "news\n", "Add NEWS")
        assert main(argv) == 0
        payload = json.loads(capsys.readouterr().out)
        assert payload["results"][0]["mode"] == "incremental"
        assert payload["results"][0]["persisted_marks"] == 1

    def test_run_from_config_items(self, source_repo, tmp_path, capsys):
        storage = tmp_path / "storage"
        config = tmp_path / "config.toml"
        config.write_text(
            f"""
[mirror]
storage = "{storage}"
target_kind = "git"

[marks]
backend = "file"
path = "{tmp_path / 'marks.txt'}"

[[mirror.items]]
from = "{source_repo.uri}"
branch = "master"
to = "{tmp_path / 'target'}"
""",
            encoding="utf-8",
        )
        assert main(["run", "-c", str(config), "--once"]) == 0
        marks = parse_marks((tmp_path / "marks.txt").read_text(encoding="utf-8"))
        assert len(marks) == 3

    def test_run_failure_exit_code(self, source_repo, tmp_path, capsys, git_run):
        """目标被带外修改: 退出码取 StateCorruptionError 的 exit_code"""
        storage = tmp_path / "storage"
        target = tmp_path / "target"
        argv = [
            "run", "--from", source_repo.uri, "--to", str(target),
            "--storage", str(storage), "--target-kind", "git", "--once",
        ]
        assert main(argv) == 0
        (target / "LOCAL").write_text("x\n", encoding="utf-8")
        git_run(target, "add", "LOCAL")
        git_run(target, "commit", "--quiet", "-m", "Out of band")

        assert main(argv) == 6
        assert error_lines(capsys.readouterr().err)


@requires_git
class TestSyncCommand:
    """sync 子命令测试"""

    @pytest.fixture
    def remotes(self, make_bare_repo, make_work_repo, git_run):
        """upstream 有 master/dev 两个分支，fork 为空，本地仓库配置了两个远端"""
        upstream = make_bare_repo("upstream.git")
        fork = make_bare_repo("fork.git")

        seed = make_work_repo("seed")
        (seed / "README").write_text("hello\n", encoding="utf-8")
        git_run(seed, "add", "README")
        git_run(seed, "commit", "--quiet", "-m", "Initial")
        git_run(seed, "branch", "dev")
        git_run(seed, "push", "--quiet", str(upstream), "master", "dev")

        local = make_work_repo("local")
        git_run(local, "remote", "add", "upstream", str(upstream))
        git_run(local, "remote", "add", "fork", str(fork))
        return {"upstream": upstream, "fork": fork, "local": local}

    def test_sync_all_branches(self, remotes, monkeypatch, capsys, git_run):
        monkeypatch.chdir(remotes["local"])
        assert main(["sync"]) == 0

        out = capsys.readouterr().out
        assert "Syncing upstream/master to fork/master... done" in out
        assert "Syncing upstream/dev to fork/dev... done" in out
        heads = git_run(remotes["fork"], "for-each-ref", "--format=%(refname:short)", "refs/heads")
        assert sorted(heads.split()) == ["dev", "master"]

    def test_sync_branch_filter(self, remotes, monkeypatch, capsys, git_run):
        monkeypatch.chdir(remotes["local"])
        assert main(["sync", "--from", "upstream", "--to", "fork", "--branches", "dev", "--verbose"]) == 0

        out = capsys.readouterr().out
        assert "Skipping branch master" in out
        heads = git_run(remotes["fork"], "for-each-ref", "--format=%(refname:short)", "refs/heads")
        assert heads.split() == ["dev"]

    def test_sync_branches_from_git_config(self, remotes, monkeypatch, git_run):
        git_run(remotes["local"], "config", "sync.branches", "master")
        monkeypatch.chdir(remotes["local"])
        assert main(["sync"]) == 0
        heads = git_run(remotes["fork"], "for-each-ref", "--format=%(refname:short)", "refs/heads")
        assert heads.split() == ["master"]

    def test_sync_to_unknown_remote_in_config(self, remotes, monkeypatch, capsys, git_run):
        git_run(remotes["local"], "config", "sync.to", "nowhere")
        monkeypatch.chdir(remotes["local"])
        assert main(["sync"]) == 1
        assert "nowhere" in capsys.readouterr().err

    def test_no_sync_source(self, make_work_repo, make_bare_repo, monkeypatch, capsys, git_run):
        """只有 origin 且没有 fork 时无法确定同步源"""
        local = make_work_repo("lonely")
        git_run(local, "remote", "add", "origin", str(make_bare_repo("origin.git")))
        monkeypatch.chdir(local)
        assert main(["sync"]) == 1
        stderr = capsys.readouterr().err
        assert error_lines(stderr) == [
            "error: Could not find repository to sync from, please specify one with --from"
        ]

    def test_not_a_repository(self, tmp_path, monkeypatch, capsys, vcs_env):
        outside = tmp_path / "outside"
        outside.mkdir()
        monkeypatch.chdir(outside)
        monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path))
        assert main(["sync"]) == 1
        assert "no repository found" in capsys.readouterr().err


@requires_git
class TestSyncResolution:
    """同步源/目标解析规则测试"""

    def test_source_preference(self, make_work_repo, git_run):
        repo = GitRepository(make_work_repo("r"))
        assert resolve_sync_source(repo, "explicit", []) == "explicit"
        assert resolve_sync_source(repo, None, ["origin", "upstream"]) == "upstream"
        assert resolve_sync_source(repo, None, ["origin", "fork"]) == "origin"
        with pytest.raises(ConfigValueError):
            resolve_sync_source(repo, None, ["origin"])

        git_run(repo.root, "config", "sync.from", "origin")
        assert resolve_sync_source(repo, None, ["origin", "upstream"]) == "origin"

    def test_target_preference(self, make_work_repo):
        repo = GitRepository(make_work_repo("r"))
        assert resolve_sync_target(repo, None, ["origin", "fork"]) == "fork"
        assert resolve_sync_target(repo, None, ["origin"]) == "origin"
