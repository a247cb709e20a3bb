"""执行注册表。

跟踪所有进行中的执行，提供：
- ExecutionRegistry: 活动执行的登记和管理
- 按 ID 取消或批量取消（例如进程收到 SIGTERM 时清理所有子进程树）

执行结束（end 事件）时自动注销。
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional

from .context import ExecContext, ExecResult, normalize_ctx
from .engine import invoke
from .events import EventKind

__all__ = ["ExecutionRegistry", "ExecutionInfo"]

logger = logging.getLogger(__name__)


@dataclass
class ExecutionInfo:
    """活动执行的信息。

    Attributes:
        ctx: 执行上下文
        label: 可选的说明
        created_at: 登记时间
    """

    ctx: ExecContext
    label: str = ""
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def execution_id(self) -> str:
        return self.ctx.id

    def __repr__(self) -> str:
        elapsed = (datetime.now() - self.created_at).total_seconds()
        status = "done" if self.ctx.done else "running"
        return (
            f"ExecutionInfo(id={self.ctx.id[:8]}..., "
            f"cmd={self.ctx.cmd!r}, "
            f"status={status}, "
            f"elapsed={elapsed:.1f}s)"
        )


class ExecutionRegistry:
    """活动执行的注册表。

    线程安全：end 事件可能来自调度器的工作线程，所有操作都持有内部锁。

    Example:
        ```python
        registry = ExecutionRegistry()

        ctx = registry.spawn({"cmd": "sleep 30"}, label="long job")

        if registry.has_active():
            print(f"Active: {registry.active_count}")

        cancelled = registry.cancel_all("shutdown")
        ```
    """

    def __init__(self) -> None:
        """初始化执行注册表。"""
        self._executions: Dict[str, ExecutionInfo] = {}
        self._on_empty_callbacks: list[Callable[[], None]] = []
        self._lock = threading.RLock()

    def register(self, ctx: ExecContext, label: str = "") -> ExecutionInfo:
        """登记执行。必须在 invoke() 之前调用，否则可能错过 end 事件。

        Args:
            ctx: 尚未执行的上下文
            label: 可选的说明

        Raises:
            ValueError: 如果 ctx.id 已存在
        """
        with self._lock:
            if ctx.id in self._executions:
                raise ValueError(f"Execution {ctx.id} already registered")
            info = ExecutionInfo(ctx=ctx, label=label)
            self._executions[ctx.id] = info

        def on_end(result: ExecResult, ended: ExecContext) -> None:
            # 总线可能被多个执行共享
            if ended is not ctx:
                return
            ctx.bus.off(EventKind.END, on_end)
            self.unregister(ctx.id)

        ctx.bus.on(EventKind.END, on_end)
        logger.debug(f"Registered execution: {info}")
        return info

    def spawn(
        self,
        partial: Mapping[str, Any] | None = None,
        label: str = "",
        **overrides: Any,
    ) -> ExecContext:
        """标准化、登记并执行。

        Returns:
            执行上下文（同步模式下已经完成并注销）
        """
        ctx = normalize_ctx(partial, **overrides)
        self.register(ctx, label=label)
        return invoke(ctx)

    def unregister(self, execution_id: str) -> bool:
        """注销执行。

        Returns:
            是否成功注销（执行存在则返回 True）
        """
        with self._lock:
            info = self._executions.pop(execution_id, None)
            if info is None:
                return False
            callbacks = list(self._on_empty_callbacks) if not self._executions else []

        logger.debug(f"Unregistered execution: {info}")

        # 如果注册表变空，触发回调
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning(f"Error in on_empty callback: {e}")
        return True

    def get(self, execution_id: str) -> Optional[ExecutionInfo]:
        """获取执行信息。"""
        with self._lock:
            return self._executions.get(execution_id)

    def cancel(self, execution_id: str, reason: Any = None) -> bool:
        """取消指定执行。

        Returns:
            是否成功发起取消（执行存在且未完成则返回 True）
        """
        info = self.get(execution_id)
        if info and not info.ctx.done:
            info.ctx.cancel(reason)
            logger.info(f"Cancelled execution: {info}")
            return True
        return False

    def cancel_all(self, reason: Any = None) -> int:
        """取消所有活动执行。

        Returns:
            成功发起取消的执行数量
        """
        cancelled = 0
        for info in self.list_active():
            if info.ctx.cancel(reason):
                logger.info(f"Cancelled execution: {info}")
                cancelled += 1

        if cancelled > 0:
            logger.info(f"Cancelled {cancelled} active execution(s)")

        return cancelled

    def has_active(self) -> bool:
        """是否存在未完成的执行。"""
        with self._lock:
            return any(not info.ctx.done for info in self._executions.values())

    @property
    def active_count(self) -> int:
        """未完成的执行数量。"""
        with self._lock:
            return sum(1 for info in self._executions.values() if not info.ctx.done)

    def list_active(self) -> list[ExecutionInfo]:
        """列出所有活动执行（按登记时间排序）。"""
        with self._lock:
            active = [info for info in self._executions.values() if not info.ctx.done]
        return sorted(active, key=lambda x: x.created_at)

    def add_on_empty_callback(self, callback: Callable[[], None]) -> None:
        """添加注册表变空时的回调。"""
        with self._lock:
            self._on_empty_callbacks.append(callback)

    def remove_on_empty_callback(self, callback: Callable[[], None]) -> None:
        """移除注册表变空时的回调。"""
        with self._lock:
            if callback in self._on_empty_callbacks:
                self._on_empty_callbacks.remove(callback)

    def __len__(self) -> int:
        with self._lock:
            return len(self._executions)

    def __contains__(self, execution_id: str) -> bool:
        with self._lock:
            return execution_id in self._executions
