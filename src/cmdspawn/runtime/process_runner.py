"""Process creation and process-tree termination.

cmdspawn runtime module

This module provides:
- Launch option building shared by the blocking and asyncio paths
- Cross-platform process isolation (new session / process group) for
  detached executions
- Process-tree termination (group kill) with single-process kill as an
  explicit fallback
- SIGTERM -> timeout -> SIGKILL escalation

Key design points:
- POSIX: start_new_session=True makes the child a process group leader,
  so the group id equals the child pid
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation, CREATE_NO_WINDOW
  to hide console windows
- Group kill is only attempted for detached children; a non-detached child
  shares our own process group
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from typing import TYPE_CHECKING, Any, Protocol

from ..errors import ProcessKillError

if TYPE_CHECKING:
    from ..context import ExecContext

__all__ = [
    "IS_WINDOWS",
    "KillTarget",
    "build_spawn_opts",
    "command_line",
    "create_process",
    "popen",
    "kill_process_tree",
    "group_alive",
    "terminate",
    "escalate",
    "split_returncode",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

# Windows creation flags (0 elsewhere so the constants are always defined)
CREATE_NEW_PROCESS_GROUP = getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)
CREATE_NO_WINDOW = getattr(subprocess, "CREATE_NO_WINDOW", 0)

DEFAULT_TERM_SIGNAL = signal.SIGTERM
DEFAULT_KILL_SIGNAL = getattr(signal, "SIGKILL", signal.SIGTERM)


class KillTarget(Protocol):
    """The part of Popen / asyncio Process the kill logic needs."""

    pid: int

    @property
    def returncode(self) -> int | None: ...

    def send_signal(self, sig: int) -> None: ...


def command_line(ctx: "ExecContext") -> str | list[str]:
    """Build what gets handed to the OS.

    Shell mode joins command and arguments with spaces, unquoted, and lets
    the shell interpret the line. Otherwise the argument vector is used as is.
    """
    if ctx.shell:
        return " ".join([ctx.cmd, *ctx.args])
    return [ctx.cmd, *ctx.args]


def build_spawn_opts(ctx: "ExecContext") -> dict[str, Any]:
    """Build platform-specific process-creation kwargs.

    Caller-supplied ``spawn_opts`` go first so the resolved context values
    always win.

    Args:
        ctx: Normalized execution context

    Returns:
        Dict of kwargs shared by subprocess.Popen and asyncio subprocess calls
    """
    kwargs: dict[str, Any] = dict(ctx.spawn_opts)

    kwargs["env"] = dict(ctx.env)
    kwargs["cwd"] = ctx.cwd

    if isinstance(ctx.shell, str):
        kwargs["executable"] = ctx.shell

    if IS_WINDOWS:
        # Hidden window always; new process group only when detached
        flags = kwargs.get("creationflags", 0) | CREATE_NO_WINDOW
        if ctx.detached:
            flags |= CREATE_NEW_PROCESS_GROUP
        kwargs["creationflags"] = flags
    else:
        # POSIX: start_new_session (equivalent to setsid)
        kwargs["start_new_session"] = bool(ctx.detached)

    return kwargs


def popen(ctx: "ExecContext", opts: dict[str, Any]) -> subprocess.Popen[bytes]:
    """Start the child for the blocking path, all three stdio piped."""
    return subprocess.Popen(
        command_line(ctx),
        shell=bool(ctx.shell),
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        **opts,
    )


async def create_process(
    ctx: "ExecContext",
    opts: dict[str, Any],
) -> asyncio.subprocess.Process:
    """Start the child for the asyncio path, all three stdio piped."""
    line = command_line(ctx)
    stdio = dict(
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    if isinstance(line, str):
        return await asyncio.create_subprocess_shell(line, **stdio, **opts)
    return await asyncio.create_subprocess_exec(*line, **stdio, **opts)


def kill_process_tree(pid: int, sig: int = DEFAULT_TERM_SIGNAL) -> None:
    """Signal the whole process group led by ``pid``.

    Raises:
        ProcessLookupError: The group no longer exists
        OSError: Group signalling is not possible
    """
    if IS_WINDOWS:
        # Windows: CTRL_BREAK_EVENT reaches the whole CREATE_NEW_PROCESS_GROUP group
        os.kill(pid, signal.CTRL_BREAK_EVENT)
        logger.debug(f"Sent CTRL_BREAK_EVENT to pid={pid}")
        return
    os.killpg(pid, sig)
    logger.debug(f"Sent {signal.Signals(sig).name} to process group pgid={pid}")


def group_alive(pid: int) -> bool:
    """Whether any member of the process group ``pid`` still exists.

    The group outlives its leader: a backgrounded descendant keeps it alive
    after the leader has exited. Always False on Windows, where groups cannot
    be probed.
    """
    if IS_WINDOWS:
        return False
    try:
        os.killpg(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError as e:
        logger.debug(f"Cannot probe process group pgid={pid}: {e}")
        return False
    return True


def terminate(
    process: KillTarget,
    *,
    detached: bool,
    sig: int = DEFAULT_TERM_SIGNAL,
) -> str:
    """Terminate a child, preferring its whole process tree.

    Strategy:
    1. Detached: signal the process group, even when the leader has already
       exited (descendants may still hold the group)
    2. On failure, or when not detached: signal only the direct child, unless
       it has already exited

    Args:
        process: Popen or asyncio Process
        detached: Whether the child leads its own process group
        sig: Signal to send

    Returns:
        "group", "process" or "gone" (nothing left to signal)

    Raises:
        ProcessKillError: Neither the group nor the child could be signalled
    """
    pid = process.pid

    if detached:
        try:
            kill_process_tree(pid, sig)
            return "group"
        except ProcessLookupError:
            logger.debug(f"Process group already gone pgid={pid}")
            return "gone"
        except OSError as e:
            # Fallback to signalling just the process
            logger.warning(f"Group kill failed pgid={pid}, falling back to single process: {e}")

    if process.returncode is not None:
        return "gone"

    try:
        process.send_signal(sig)
        logger.debug(f"Sent signal {sig} to pid={pid}")
        return "process"
    except ProcessLookupError:
        logger.debug(f"Process already exited pid={pid}")
        return "gone"
    except OSError as e:
        raise ProcessKillError(pid, e) from e


async def _wait_group_gone(pid: int, timeout: float, interval: float = 0.05) -> bool:
    """Poll until the process group ``pid`` is empty; False on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while group_alive(pid):
        remaining = deadline - loop.time()
        if remaining <= 0:
            return False
        await asyncio.sleep(min(interval, remaining))
    return True


async def escalate(
    process: asyncio.subprocess.Process,
    *,
    detached: bool,
    timeout: float,
) -> None:
    """Force kill if the child survives ``timeout`` seconds after SIGTERM.

    For a detached child the whole group is watched: members that ignore
    SIGTERM are killed even when the leader itself has exited.
    """
    if timeout <= 0:
        return

    if detached and not IS_WINDOWS:
        if await _wait_group_gone(process.pid, timeout):
            return
        logger.debug(f"Force killing process group pgid={process.pid}")
        try:
            kill_process_tree(process.pid, DEFAULT_KILL_SIGNAL)
            return
        except ProcessLookupError:
            return
        except OSError as e:
            logger.warning(f"Group kill failed pgid={process.pid}, falling back to single process: {e}")
    else:
        try:
            await asyncio.wait_for(asyncio.shield(process.wait()), timeout=timeout)
            return
        except asyncio.TimeoutError:
            pass

    logger.debug(f"Force killing subprocess pid={process.pid}")
    try:
        terminate(process, detached=False, sig=DEFAULT_KILL_SIGNAL)
    except ProcessKillError as e:
        logger.warning(f"Subprocess did not accept SIGKILL: {e}")


def split_returncode(returncode: int | None) -> tuple[int | None, str | None]:
    """Split a Python return code into (exit status, signal name).

    Negative return codes mean "terminated by signal N" on POSIX; the
    status is then None.
    """
    if returncode is None:
        return None, None
    if returncode < 0 and not IS_WINDOWS:
        try:
            return None, signal.Signals(-returncode).name
        except ValueError:
            return None, f"SIG{-returncode}"
    return returncode, None
