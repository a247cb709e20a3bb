"""cmdspawn 异常类。

引擎本身从不向调用方抛出异常：所有错误都会被记录到 ExecResult.error，
并通过 err / end 事件和回调送达。这里的异常类用于标记错误来源。
"""

from __future__ import annotations

__all__ = [
    "SpawnError",
    "SpawnSetupError",
    "SchedulerError",
    "ProcessKillError",
    "SpawnAbortedError",
]


class SpawnError(Exception):
    """cmdspawn 基础异常。"""
    pass


class SpawnSetupError(SpawnError):
    """启动前的配置错误（如未知的上下文字段、非法的 stdio）。"""
    pass


class SchedulerError(SpawnError):
    """调度器无法派发异步执行。"""
    pass


class ProcessKillError(SpawnError):
    """进程组和子进程都无法终止。

    Attributes:
        pid: 目标进程 ID
        cause: 最后一次终止尝试的异常
    """

    def __init__(self, pid: int, cause: BaseException | None = None) -> None:
        self.pid = pid
        self.cause = cause
        super().__init__(f"failed to kill pid={pid}: {cause}")


class SpawnAbortedError(SpawnError):
    """取消信号在子进程启动之前已经触发，进程没有被创建。"""
    pass
