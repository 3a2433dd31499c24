# -*- coding: utf-8 -*-
"""
vcsmirror.scheduler - work item 调度

契约:
- WorkItem.concurrent_with(other): 两个 item 能否同时运行（必须对称）
- WorkItem.run(scratch_dir): 同步执行一次，返回后续 work item 列表
- Bot.get_periodic_items(): 每个周期需要执行的 work item

MirrorScheduler:
- 线程池执行；准入前与所有运行中的 item 两两检查排他谓词，冲突的 item 延后到有 item 完成后再试
- 每个运行中的 item 租用一个 worker 槽位，拿到槽位独占的 scratch 子目录 scratch_root/worker-<n>，完成后归还
- 单个 item 失败只记录日志和结果，不在周期内重试，下一个周期会再次执行
- run_forever() 按固定间隔循环执行所有 bot 的周期 item
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Sequence, Tuple

from .config import MirrorContext

__all__ = [
    "DEFAULT_MAX_WORKERS",
    "DEFAULT_INTERVAL_SECONDS",
    "WorkItem",
    "Bot",
    "WorkItemOutcome",
    "MirrorScheduler",
]

DEFAULT_MAX_WORKERS = 4
DEFAULT_INTERVAL_SECONDS = 60


class WorkItem(ABC):
    """可被调度的工作单元"""

    @abstractmethod
    def concurrent_with(self, other: "WorkItem") -> bool:
        """与 other 同时运行是否安全"""

    @abstractmethod
    def run(self, scratch_dir: Path) -> List["WorkItem"]:
        """执行一次，返回后续 work item"""


class Bot(ABC):
    @abstractmethod
    def get_periodic_items(self) -> List[WorkItem]: ...


@dataclass
class WorkItemOutcome:
    """单个 work item 的执行结果"""

    item: str
    success: bool
    duration_seconds: float
    error: Optional[BaseException] = None
    follow_ups: int = 0

    def to_dict(self) -> Dict[str, Any]:
        error: Optional[Dict[str, Any]] = None
        if self.error is not None:
            to_dict = getattr(self.error, "to_dict", None)
            error = to_dict() if callable(to_dict) else {
                "ok": False,
                "code": type(self.error).__name__,
                "message": str(self.error),
                "detail": {},
            }
        return {
            "item": self.item,
            "success": self.success,
            "duration_seconds": self.duration_seconds,
            "follow_ups": self.follow_ups,
            "error": error,
        }


def _can_admit(item: WorkItem, active: Sequence[WorkItem]) -> bool:
    return all(item.concurrent_with(other) and other.concurrent_with(item) for other in active)


class MirrorScheduler:
    """带排他准入的 work item 调度器"""

    def __init__(
        self,
        scratch_root: Path,
        *,
        max_workers: int = DEFAULT_MAX_WORKERS,
        context: Optional[MirrorContext] = None,
    ):
        if max_workers < 1:
            raise ValueError("max_workers 必须 >= 1")
        self.scratch_root = Path(scratch_root)
        self.max_workers = max_workers
        self._ctx = (context or MirrorContext()).child("scheduler")

    def slot_dir(self, slot: int) -> Path:
        """worker 槽位独占的 scratch 子目录"""
        return self.scratch_root / f"worker-{slot}"

    def _run_one(self, item: WorkItem, scratch_dir: Path) -> Tuple[WorkItemOutcome, List[WorkItem]]:
        started = time.monotonic()
        try:
            scratch_dir.mkdir(parents=True, exist_ok=True)
            follow_ups = item.run(scratch_dir) or []
        except Exception as exc:
            self._ctx.logger.error("%s 执行失败，等待下一个周期重试: %s", item, exc)
            self._ctx.logger.debug("%s 失败详情", item, exc_info=True)
            return (
                WorkItemOutcome(
                    item=str(item),
                    success=False,
                    duration_seconds=round(time.monotonic() - started, 3),
                    error=exc,
                ),
                [],
            )
        return (
            WorkItemOutcome(
                item=str(item),
                success=True,
                duration_seconds=round(time.monotonic() - started, 3),
                follow_ups=len(follow_ups),
            ),
            list(follow_ups),
        )

    def run_items(self, items: Sequence[WorkItem]) -> List[WorkItemOutcome]:
        """
        执行一批 work item（包括它们产生的后续 item），全部完成后返回

        互不排斥的 item 并行执行；与运行中 item 冲突的 item 延后执行。
        """
        self.scratch_root.mkdir(parents=True, exist_ok=True)
        pending: Deque[WorkItem] = deque(items)
        active: Dict[Future, WorkItem] = {}
        slots: Dict[Future, int] = {}
        free_slots: Deque[int] = deque(range(self.max_workers))
        outcomes: List[WorkItemOutcome] = []

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="vcsmirror") as pool:
            while pending or active:
                deferred: Deque[WorkItem] = deque()
                while pending:
                    item = pending.popleft()
                    if free_slots and _can_admit(item, list(active.values())):
                        slot = free_slots.popleft()
                        self._ctx.logger.debug("准入 %s（槽位 %d）", item, slot)
                        future = pool.submit(self._run_one, item, self.slot_dir(slot))
                        active[future] = item
                        slots[future] = slot
                    else:
                        deferred.append(item)
                pending = deferred

                done, _ = wait(list(active), return_when=FIRST_COMPLETED)
                for future in done:
                    active.pop(future)
                    free_slots.append(slots.pop(future))
                    outcome, follow_ups = future.result()
                    outcomes.append(outcome)
                    pending.extend(follow_ups)
        return outcomes

    def run_periodic_items(self, bot: Bot, *, raise_on_error: bool = True) -> List[WorkItemOutcome]:
        """
        同步执行一个 bot 的一轮周期 item

        Args:
            raise_on_error: 任一 item 失败时重新抛出其异常
        """
        outcomes = self.run_items(bot.get_periodic_items())
        if raise_on_error:
            for outcome in outcomes:
                if outcome.error is not None:
                    raise outcome.error
        return outcomes

    def run_forever(
        self,
        bots: Sequence[Bot],
        *,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        once: bool = False,
        stop_event: Optional[threading.Event] = None,
    ) -> List[WorkItemOutcome]:
        """
        周期执行所有 bot 的 item

        Returns:
            最后一个周期的执行结果
        """
        stop_event = stop_event or threading.Event()
        outcomes: List[WorkItemOutcome] = []
        while not stop_event.is_set():
            items: List[WorkItem] = []
            for bot in bots:
                items.extend(bot.get_periodic_items())
            outcomes = self.run_items(items)
            failed = sum(1 for o in outcomes if not o.success)
            self._ctx.logger.info("本周期执行 %d 个 item，失败 %d 个", len(outcomes), failed)
            if once:
                break
            stop_event.wait(interval_seconds)
        return outcomes
