"""执行上下文与执行结果。

ExecContext 持有一次执行的全部状态：请求字段、控制字段以及由引擎写入的结果字段。
每次执行创建新的上下文，从不复用，确保执行之间状态隔离。

normalize_ctx() 把若干部分请求与默认值合并为完整的上下文：
默认值最先应用，后面的部分请求覆盖前面的。
"""

from __future__ import annotations

import asyncio
import os
import threading
import uuid
from concurrent.futures import Future
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Generator, Mapping, Sequence

from .cancel import CancelToken
from .config import get_config
from .errors import SpawnSetupError
from .events import EventBus, EventHandler
from .scheduler import Scheduler, get_default_scheduler
from .sink import VoidSink

__all__ = [
    "ExecContext",
    "ExecResult",
    "Input",
    "normalize_ctx",
    "PIPE_STDIO",
]

# stdio 始终是固定的三个管道端点
PIPE_STDIO = ("pipe", "pipe", "pipe")

# 类型别名：stdin 输入（文本、字节、文件对象或异步可迭代对象）
Input = Any

# 结果字段只能由引擎写入
_OUTCOME_FIELDS = frozenset({"child", "fulfilled", "error", "future"})


def _noop(*_args: Any) -> None:
    pass


@dataclass
class ExecResult:
    """执行结果。

    每个上下文恰好产生一次。非零退出码或被信号终止都不算引擎错误，
    调用方根据 status / signal 自行判断。

    Attributes:
        stdout: 捕获的标准输出文本
        stderr: 捕获的标准错误文本
        stdall: 两者的拼接（同步模式为 stdout + stderr；异步模式为到达顺序，尽力而为）
        status: 退出码（被信号终止或未能启动时为 None）
        signal: 终止信号名，例如 "SIGTERM"
        duration: 从调用到完成的耗时（毫秒）
        ctx: 所属上下文（非拥有引用）
        error: 错误对象（仅在出错时）
        child: 子进程句柄（仅异步模式）
        stdio: (stdin, stdout, stderr) 三个 sink
    """

    stdout: str = ""
    stderr: str = ""
    stdall: str = ""
    status: int | None = None
    signal: str | None = None
    duration: float = 0.0
    ctx: "ExecContext | None" = field(default=None, repr=False, compare=False)
    error: BaseException | None = None
    child: Any = field(default=None, repr=False, compare=False)
    stdio: tuple[Any, ...] = field(default=(), repr=False, compare=False)

    @property
    def ok(self) -> bool:
        """没有错误并且以 0 退出。"""
        return self.error is None and self.status == 0

    def __str__(self) -> str:
        return self.stdout


@dataclass(eq=False)
class ExecContext:
    """执行上下文 - 一次执行的完整描述以及执行中/执行后的状态。

    通常通过 normalize_ctx() 创建，而不是直接构造。

    请求字段:
        id: 随机唯一 ID
        cmd: 命令名（shell 模式下可以是完整命令行）
        args: 参数列表
        cwd: 工作目录
        env: 环境变量
        shell: True/False，或 shell 可执行文件路径
        detached: 是否在新的进程组/会话中启动
        sync: 同步（阻塞）模式
        input: stdin 输入（str / bytes / 文件对象 / 异步可迭代对象）
        stdio: 固定为三个管道
        stdin / stdout / stderr: sink
        spawn_opts: 透传给进程创建调用的额外参数

    控制字段:
        signal: 取消令牌
        on: 监听器表 {事件名: 处理函数或处理函数列表}
        bus: 事件总线
        scheduler: 异步路径的调度器
        callback: 完成回调 callback(error, result)，恰好调用一次

    结果字段（仅引擎写入）:
        child: 子进程句柄（仅异步模式）
        fulfilled: 最终结果，只会从 None 变为结果一次
        error: 执行过程中记录的错误
        future: 结果就绪时完成的 Future
    """

    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    cmd: str = ""
    args: Sequence[str] = ()
    cwd: str = field(default_factory=os.getcwd)
    env: Mapping[str, str] = field(default_factory=lambda: dict(os.environ))
    shell: bool | str = True
    detached: bool = True
    sync: bool = False
    input: Input = None
    stdio: tuple[str, str, str] = PIPE_STDIO
    stdin: Any = field(default_factory=VoidSink)
    stdout: Any = field(default_factory=VoidSink)
    stderr: Any = field(default_factory=VoidSink)
    spawn_opts: dict[str, Any] = field(default_factory=dict)
    encoding: str = "utf-8"
    chunk_size: int = 65536
    kill_timeout: float = 2.0

    signal: CancelToken = field(default_factory=CancelToken)
    on: Mapping[Any, EventHandler | Sequence[EventHandler]] = field(default_factory=dict)
    bus: EventBus = field(default_factory=EventBus)
    scheduler: Scheduler = field(default_factory=get_default_scheduler)
    callback: Callable[[BaseException | None, ExecResult], None] = _noop

    child: Any = field(default=None, repr=False)
    fulfilled: ExecResult | None = field(default=None, repr=False)
    error: BaseException | None = None
    future: "Future[ExecResult]" = field(default_factory=Future, repr=False)

    # 内部状态
    _owns_stdin: bool = field(default=False, repr=False)
    _listeners_attached: bool = field(default=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def done(self) -> bool:
        """是否已产生最终结果。"""
        return self.fulfilled is not None

    def cancel(self, reason: Any = None) -> bool:
        """触发取消令牌。"""
        return self.signal.cancel(reason)

    def result(self, timeout: float | None = None) -> ExecResult:
        """阻塞等待最终结果（可在任意线程调用）。

        Raises:
            concurrent.futures.TimeoutError: 超时
        """
        return self.future.result(timeout)

    def __await__(self) -> Generator[Any, None, ExecResult]:
        return asyncio.wrap_future(self.future).__await__()

    def __repr__(self) -> str:
        state = "done" if self.fulfilled is not None else "pending"
        return (
            f"ExecContext(id={self.id[:8]}..., cmd={self.cmd!r}, "
            f"args={list(self.args)!r}, sync={self.sync}, {state})"
        )


_CONTEXT_FIELDS = frozenset(f.name for f in fields(ExecContext) if not f.name.startswith("_"))


def _defaults() -> dict[str, Any]:
    """按当前配置生成默认字段。"""
    config = get_config()
    return {
        "id": uuid.uuid4().hex,
        "cmd": "",
        "args": (),
        "cwd": os.getcwd(),
        "env": dict(os.environ),
        "shell": config.shell,
        "detached": config.detached,
        "sync": False,
        "input": None,
        "stdio": PIPE_STDIO,
        "stdin": VoidSink(),
        "stdout": VoidSink(),
        "stderr": VoidSink(),
        "spawn_opts": {},
        "encoding": config.encoding,
        "chunk_size": config.chunk_size,
        "kill_timeout": config.kill_timeout,
        "signal": CancelToken(),
        "on": {},
        "bus": EventBus(),
        "scheduler": get_default_scheduler(),
        "callback": _noop,
    }


def normalize_ctx(*partials: Mapping[str, Any] | None, **overrides: Any) -> ExecContext:
    """合并部分请求，生成完整的执行上下文。

    除了结构性检查外不做任何校验：不存在的命令等问题会在运行时以错误结果的形式出现。

    Args:
        *partials: 部分请求（后面的覆盖前面的，None 会被忽略）
        **overrides: 最后应用的字段

    Returns:
        新的 ExecContext

    Raises:
        SpawnSetupError: 未知字段、结果字段或非法的 stdio
    """
    merged = _defaults()
    default_stdin = merged["stdin"]

    for partial in (*partials, overrides):
        if not partial:
            continue
        for key, value in partial.items():
            if key in _OUTCOME_FIELDS:
                raise SpawnSetupError(f"'{key}' is set by the engine and cannot be requested")
            if key not in _CONTEXT_FIELDS:
                raise SpawnSetupError(f"unknown execution field: {key!r}")
            merged[key] = value

    if tuple(merged["stdio"]) != PIPE_STDIO:
        raise SpawnSetupError(f"stdio must be {PIPE_STDIO}, got {merged['stdio']!r}")

    merged["stdio"] = PIPE_STDIO
    merged["args"] = tuple(merged["args"])
    merged["env"] = dict(merged["env"])
    merged["spawn_opts"] = dict(merged["spawn_opts"])
    merged["on"] = dict(merged["on"])

    ctx = ExecContext(**merged)
    ctx._owns_stdin = ctx.stdin is default_stdin
    return ctx
