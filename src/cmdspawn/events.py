"""执行生命周期事件总线。

每次执行拥有一个 EventBus（也可以由调用方在多次执行之间共享）。
事件种类是封闭集合 EventKind，处理函数签名统一为 handler(payload, ctx)，
ctx 用于在共享总线上区分并发执行。

事件顺序保证：
- start 先于同一执行的所有 stdout/stderr
- end 每次执行恰好触发一次，并且总是最后一个
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from .context import ExecContext

__all__ = ["EventBus", "EventKind", "EventHandler"]

logger = logging.getLogger(__name__)

# 类型别名：事件处理函数
EventHandler = Callable[[Any, "ExecContext"], None]


class EventKind(str, Enum):
    """事件种类。

    - START: 进程启动后（payload 为子进程句柄，同步模式为 CompletedProcess）
    - STDOUT / STDERR: 每个输出块（payload 为 bytes）
    - ABORT: 取消信号触发（payload 为 CancelToken）
    - ERR: 记录到错误（payload 为异常对象）
    - END: 最终结果（payload 为 ExecResult）
    """

    START = "start"
    STDOUT = "stdout"
    STDERR = "stderr"
    ABORT = "abort"
    ERR = "err"
    END = "end"

    @classmethod
    def parse(cls, value: "str | EventKind") -> "EventKind":
        """从字符串解析事件种类。

        Args:
            value: 事件名（忽略大小写）或 EventKind

        Returns:
            对应的 EventKind

        Raises:
            ValueError: 未知事件名
        """
        if isinstance(value, cls):
            return value
        name = str(value).lower().strip()
        for kind in cls:
            if kind.value == name:
                return kind
        raise ValueError(f"unknown event kind: {value!r}")


class EventBus:
    """发布/订阅事件总线。

    - 按注册顺序分发
    - 每个处理函数相互隔离：某个处理函数抛出异常时记录日志，其余处理函数照常收到事件
    - 线程安全：分发前对处理函数列表做快照

    Example:
        ```python
        bus = EventBus()
        bus.on("stdout", lambda chunk, ctx: print(ctx.id, chunk))
        bus.once(EventKind.END, lambda result, ctx: print(result.status))
        ```
    """

    def __init__(self) -> None:
        """初始化事件总线。"""
        self._handlers: dict[EventKind, list[EventHandler]] = {kind: [] for kind in EventKind}
        self._lock = threading.Lock()

    def on(self, kind: str | EventKind, handler: EventHandler) -> EventHandler:
        """注册处理函数。

        Args:
            kind: 事件种类
            handler: 处理函数 handler(payload, ctx)

        Returns:
            传入的 handler（便于 off()）
        """
        event = EventKind.parse(kind)
        with self._lock:
            self._handlers[event].append(handler)
        return handler

    def once(self, kind: str | EventKind, handler: EventHandler) -> EventHandler:
        """注册只触发一次的处理函数。

        Returns:
            包装后的处理函数（用于 off()）
        """
        event = EventKind.parse(kind)

        def wrapper(payload: Any, ctx: "ExecContext") -> None:
            self.off(event, wrapper)
            handler(payload, ctx)

        wrapper.__wrapped__ = handler  # type: ignore[attr-defined]
        return self.on(event, wrapper)

    def off(self, kind: str | EventKind, handler: EventHandler) -> bool:
        """注销处理函数（也接受 once() 注册时传入的原始函数）。

        Returns:
            是否找到并移除
        """
        event = EventKind.parse(kind)
        with self._lock:
            handlers = self._handlers[event]
            for registered in handlers:
                if registered == handler or getattr(registered, "__wrapped__", None) == handler:
                    handlers.remove(registered)
                    return True
        return False

    def emit(self, kind: str | EventKind, payload: Any, ctx: "ExecContext") -> int:
        """分发事件。

        Args:
            kind: 事件种类
            payload: 事件负载
            ctx: 所属执行上下文

        Returns:
            被调用的处理函数数量
        """
        event = EventKind.parse(kind)
        with self._lock:
            handlers = list(self._handlers[event])

        for handler in handlers:
            try:
                handler(payload, ctx)
            except Exception:
                logger.exception(
                    f"Error in {event.value} handler {handler!r} (ctx={getattr(ctx, 'id', '?')})"
                )
        return len(handlers)

    def listener_count(self, kind: str | EventKind) -> int:
        """获取某个事件的处理函数数量。"""
        event = EventKind.parse(kind)
        with self._lock:
            return len(self._handlers[event])

    def clear(self) -> None:
        """移除所有处理函数。"""
        with self._lock:
            for handlers in self._handlers.values():
                handlers.clear()

    def __repr__(self) -> str:
        counts = ", ".join(
            f"{kind.value}={len(handlers)}" for kind, handlers in self._handlers.items() if handlers
        )
        return f"EventBus({counts})"
