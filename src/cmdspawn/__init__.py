"""cmdspawn - 子进程执行引擎。

以同步（阻塞）或异步（非阻塞）方式启动外部命令，捕获标准流，
并通过事件、回调和结果对象报告完成。

环境变量:
    CMDSPAWN_SHELL: 默认 shell 模式 (默认 true)
    CMDSPAWN_DETACHED: 默认在新进程组中启动 (默认 true)
    CMDSPAWN_KILL_TIMEOUT: 取消后升级为 SIGKILL 的等待时间 (默认 2.0s)

用法:
    from cmdspawn import exec_, sh

    result = sh("echo {}", "hello", sync=True)
"""

__version__ = "0.1.0"

from .cancel import CancelToken
from .command import build_cmd, quote, sh, substitute
from .context import ExecContext, ExecResult, normalize_ctx
from .engine import exec_, invoke, run
from .errors import (
    ProcessKillError,
    SchedulerError,
    SpawnAbortedError,
    SpawnError,
    SpawnSetupError,
)
from .events import EventBus, EventKind
from .registry import ExecutionRegistry
from .scheduler import (
    InlineScheduler,
    SerialScheduler,
    ThreadScheduler,
    TickScheduler,
)
from .sink import VoidSink

__all__ = [
    "__version__",
    "CancelToken",
    "EventBus",
    "EventKind",
    "ExecContext",
    "ExecResult",
    "ExecutionRegistry",
    "InlineScheduler",
    "ProcessKillError",
    "SchedulerError",
    "SerialScheduler",
    "SpawnAbortedError",
    "SpawnError",
    "SpawnSetupError",
    "ThreadScheduler",
    "TickScheduler",
    "VoidSink",
    "build_cmd",
    "exec_",
    "invoke",
    "normalize_ctx",
    "quote",
    "run",
    "sh",
    "substitute",
]
