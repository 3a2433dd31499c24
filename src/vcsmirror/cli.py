"""
vcsmirror.cli - 命令行入口

子命令:
    vcsmirror run   按配置或参数周期执行镜像（--once 只执行一轮）
    vcsmirror sync  在当前 git 仓库中把一个远端的分支同步推送到另一个远端

用法:
    vcsmirror run --from https://example.com/repo.git --branch master --to /srv/hg/repo \\
        --storage /var/lib/vcsmirror --once --json
    vcsmirror run -c /etc/vcsmirror/config.toml
    vcsmirror sync --from upstream --to origin --branches master,dev --pull

错误处理:
    stderr 输出单行 "error: <message>"，退出码取异常的 exit_code（配置错误为 1）。
"""

from __future__ import annotations

import argparse
import logging
import subprocess
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set
from urllib.parse import quote_plus

from . import __version__
from .config import Config, MirrorContext, add_config_argument, configure_logging
from .coordinator import MirrorCoordinator
from .errors import ConfigError, ConfigValueError, ExitCode, MirrorError
from .io import log_error, output_json, report_error
from .mark_store import create_mark_store
from .repository import VALID_VCS, VCS_HG, GitRepository, run_command
from .scheduler import DEFAULT_INTERVAL_SECONDS, DEFAULT_MAX_WORKERS, MirrorScheduler

__all__ = ["create_parser", "build_coordinators", "main"]

DEFAULT_BRANCH = "master"

logger = logging.getLogger(__name__)


# =============================================================================
# 参数解析
# =============================================================================


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--verbose", action="store_true", help="输出 INFO 级别日志")
    parser.add_argument("--debug", action="store_true", help="输出 DEBUG 级别日志")


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vcsmirror",
        description="增量、可续跑的跨 VCS 分支镜像",
    )
    parser.add_argument(
        "-v", "--version", action="store_true", help="输出版本号后退出"
    )
    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", help="执行镜像")
    add_config_argument(run)
    _add_common_arguments(run)
    run.add_argument("--from", dest="source", metavar="URI", help="源仓库 URI")
    run.add_argument("--branch", metavar="NAME", help=f"源分支（默认 {DEFAULT_BRANCH}）")
    run.add_argument("--to", dest="target", metavar="PATH", help="目标仓库路径")
    run.add_argument("--storage", metavar="DIR", help="源缓存与 file marks 的根目录")
    run.add_argument("--scratch", metavar="DIR", help="marks 工作目录根（默认 <storage>/scratch）")
    run.add_argument(
        "--target-kind", choices=sorted(VALID_VCS), help=f"目标 VCS（默认 {VCS_HG}）"
    )
    run.add_argument("--once", action="store_true", help="只执行一轮")
    run.add_argument("--interval", type=float, metavar="SECONDS", help="周期间隔秒数")
    run.add_argument("--json", action="store_true", help="输出 JSON 结果摘要")

    sync = subparsers.add_parser("sync", help="同步远端分支")
    _add_common_arguments(sync)
    sync.add_argument("--from", dest="source", metavar="REMOTE", help="拉取变更的远端")
    sync.add_argument("--to", dest="target", metavar="REMOTE", help="推送变更的远端")
    sync.add_argument("--branches", metavar="BRANCHES", help="逗号分隔的待同步分支")
    sync.add_argument("--pull", action="store_true", help="同步成功后对当前分支执行 pull")
    return parser


# =============================================================================
# run
# =============================================================================


def _mirror_items(args: argparse.Namespace, config: Config) -> List[Dict[str, str]]:
    if args.source or args.target:
        if not (args.source and args.target):
            raise ConfigValueError("--from 与 --to 必须同时指定")
        return [
            {"from": args.source, "branch": args.branch or DEFAULT_BRANCH, "to": args.target}
        ]

    items = config.get("mirror.items") or []
    if not isinstance(items, list) or not items:
        raise ConfigValueError("没有可执行的镜像：请指定 --from/--to 或配置 [[mirror.items]]")
    resolved = []
    for index, item in enumerate(items):
        if not isinstance(item, dict) or not item.get("from") or not item.get("to"):
            raise ConfigValueError(
                f"mirror.items[{index}] 缺少 from/to", {"index": index, "item": item}
            )
        resolved.append(
            {
                "from": str(item["from"]),
                "branch": str(item.get("branch") or DEFAULT_BRANCH),
                "to": str(item["to"]),
            }
        )
    return resolved


def build_coordinators(
    args: argparse.Namespace, context: MirrorContext
) -> List[MirrorCoordinator]:
    """根据参数与配置构造 coordinator 列表"""
    config = context.config
    storage = args.storage or config.get("mirror.storage")
    if not storage:
        raise ConfigValueError("缺少源缓存目录：请指定 --storage 或配置 mirror.storage")
    storage_dir = Path(storage).expanduser()

    target_kind = args.target_kind or config.get("mirror.target_kind", VCS_HG)
    if target_kind not in VALID_VCS:
        raise ConfigValueError(
            f"未知的目标 VCS: {target_kind}",
            {"target_kind": target_kind, "valid": sorted(VALID_VCS)},
        )

    coordinators = []
    for item in _mirror_items(args, config):
        target_path = Path(item["to"]).expanduser()
        store = create_mark_store(
            config,
            storage_dir=storage_dir,
            target_path=target_path,
            namespace=quote_plus(str(target_path)),
        )
        coordinators.append(
            MirrorCoordinator(
                item["from"],
                item["branch"],
                target_path,
                storage_dir=storage_dir,
                mark_store=store,
                target_kind=target_kind,
                context=context,
            )
        )
    return coordinators


def run_command_main(args: argparse.Namespace, context: MirrorContext) -> int:
    config = context.config
    coordinators = build_coordinators(args, context)

    storage_dir = Path(args.storage or config.get("mirror.storage")).expanduser()
    scratch = args.scratch or config.get("mirror.scratch")
    scratch_dir = Path(scratch).expanduser() if scratch else storage_dir / "scratch"
    interval = args.interval
    if interval is None:
        interval = config.get_int("mirror.interval_seconds", DEFAULT_INTERVAL_SECONDS)

    scheduler = MirrorScheduler(
        scratch_dir,
        max_workers=config.get_int("mirror.max_workers", DEFAULT_MAX_WORKERS),
        context=context,
    )
    try:
        outcomes = scheduler.run_forever(
            coordinators, interval_seconds=interval, once=args.once
        )
    except KeyboardInterrupt:
        log_error("操作被用户中断")
        return ExitCode.MIRROR_ERROR

    failures = [o for o in outcomes if o.error is not None]
    if args.json:
        output_json(
            {
                "ok": not failures,
                "results": [
                    c.last_result.to_dict() for c in coordinators if c.last_result is not None
                ],
            }
        )
    if failures:
        for outcome in failures:
            log_error(f"{outcome.item}: {outcome.error}")
        first = failures[0].error
        return first.exit_code if isinstance(first, MirrorError) else ExitCode.MIRROR_ERROR
    return ExitCode.SUCCESS


# =============================================================================
# sync
# =============================================================================


def _open_cwd_repository(cwd: Path) -> GitRepository:
    proc = run_command(["git", "rev-parse", "--show-toplevel"], cwd=cwd, check=False)
    if proc.returncode != 0:
        raise ConfigError(f"no repository found at {cwd}", {"cwd": str(cwd)})
    return GitRepository(Path(proc.stdout.strip()))


def _single_config_value(repo: GitRepository, key: str) -> Optional[str]:
    lines = repo.config_value(key)
    return lines[0] if len(lines) == 1 else None


def resolve_sync_source(repo: GitRepository, requested: Optional[str], remotes: Sequence[str]) -> str:
    if requested:
        return requested
    configured = _single_config_value(repo, "sync.from")
    if configured is not None and configured in remotes:
        return configured
    if "upstream" in remotes:
        return "upstream"
    if "origin" in remotes and "fork" in remotes:
        return "origin"
    raise ConfigValueError(
        "Could not find repository to sync from, please specify one with --from",
        {"remotes": list(remotes)},
    )


def resolve_sync_target(repo: GitRepository, requested: Optional[str], remotes: Sequence[str]) -> str:
    if requested:
        return requested
    configured = _single_config_value(repo, "sync.to")
    if configured is not None:
        if configured not in remotes:
            raise ConfigValueError(
                f"The given remote to push to, {configured}, does not exist",
                {"remote": configured, "remotes": list(remotes)},
            )
        return configured
    return "fork" if "fork" in remotes else "origin"


def _sync_branches(repo: GitRepository, requested: Optional[str]) -> Set[str]:
    raw = requested if requested else _single_config_value(repo, "sync.branches")
    if not raw:
        return set()
    return {name.strip() for name in raw.split(",") if name.strip()}


def sync_command_main(args: argparse.Namespace, cwd: Optional[Path] = None) -> int:
    repo = _open_cwd_repository(cwd or Path.cwd())
    remotes = repo.remotes()

    source = resolve_sync_source(repo, args.source, remotes)
    source_path = repo.pull_path(source) if source in remotes else source
    target = resolve_sync_target(repo, args.target, remotes)
    target_path = repo.pull_path(target) if target in remotes else target
    branches = _sync_branches(repo, args.branches)
    verbose = args.verbose or args.debug

    for name, _ in repo.remote_branches(source_path):
        if branches and name not in branches:
            if verbose:
                print(f"Skipping branch {name}")
            continue
        fetched = repo.fetch(source_path, f"refs/heads/{name}")
        repo.push(fetched, target_path, name)
        print(f"Syncing {source}/{name} to {target}/{name}... done", flush=True)

    should_pull = args.pull
    if not should_pull:
        configured = _single_config_value(repo, "sync.pull")
        should_pull = configured is not None and configured.lower() == "always"
    if should_pull:
        return subprocess.run(["git", "pull"], cwd=str(repo.root)).returncode
    return ExitCode.SUCCESS


# =============================================================================
# main
# =============================================================================


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(f"vcsmirror version: {__version__}")
        return ExitCode.SUCCESS
    if args.command is None:
        parser.print_help()
        return ExitCode.SUCCESS

    root_logger = configure_logging(verbose=args.verbose, debug=args.debug)
    json_mode = getattr(args, "json", False)
    try:
        if args.command == "sync":
            return sync_command_main(args)
        config = Config(args.config_path).load()
        return run_command_main(args, MirrorContext(config=config, logger=root_logger))
    except MirrorError as e:
        logger.debug("%s", e.details)
        return report_error(e, json_mode=json_mode)
    except Exception as e:
        logger.debug("未预期的错误", exc_info=True)
        return report_error(e, json_mode=json_mode)


if __name__ == "__main__":
    sys.exit(main())
