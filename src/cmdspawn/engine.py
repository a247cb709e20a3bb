"""Execution engine.

invoke() drives exactly one of two paths, chosen by ``ctx.sync``:

- Synchronous: block until the child exits, then replay its output to the
  sinks and the event bus.
- Asynchronous: hand the whole child lifecycle to ``ctx.scheduler``; stream
  output chunk by chunk while the child runs.

Either way the execution ends in the same triple: completion callback
(exactly once), ``err`` when an error was recorded, and ``end`` (exactly
once, always last). Nothing raised while setting up an execution escapes
invoke(); it is converted into a result with the error populated.
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
import time
from typing import Any, Mapping

import anyio

from .cancel import CancelToken
from .context import ExecContext, ExecResult, normalize_ctx
from .errors import ProcessKillError, SpawnAbortedError, SpawnSetupError
from .events import EventKind
from .runtime.process_runner import (
    build_spawn_opts,
    create_process,
    escalate,
    group_alive,
    popen,
    split_returncode,
    terminate,
)
from .sink import FanOut, VoidSink, write_chunk

__all__ = ["invoke", "exec_", "run"]

logger = logging.getLogger(__name__)


def _elapsed_ms(started: float) -> float:
    return (time.monotonic() - started) * 1000.0


def _attach_listeners(ctx: ExecContext) -> None:
    """Register ``ctx.on`` handlers on the bus (once per context)."""
    with ctx._lock:
        if ctx._listeners_attached:
            return
        ctx._listeners_attached = True

    for name, handlers in ctx.on.items():
        if callable(handlers):
            handlers = [handlers]
        for handler in handlers:
            ctx.bus.on(name, handler)


def _finalize(ctx: ExecContext, result: ExecResult) -> None:
    """Store the result and deliver completion exactly once."""
    with ctx._lock:
        if ctx.fulfilled is not None:
            logger.warning(f"Execution {ctx.id} already fulfilled, dropping second result")
            return
        ctx.fulfilled = result

    logger.debug(
        f"Execution finished ctx={ctx.id} status={result.status} "
        f"signal={result.signal} duration={result.duration:.1f}ms error={result.error!r}"
    )

    try:
        ctx.callback(result.error, result)
    except Exception:
        logger.exception(f"Error in completion callback (ctx={ctx.id})")

    ctx.bus.emit(EventKind.END, result, ctx)

    if not ctx.future.done():
        ctx.future.set_result(result)


def _fail(ctx: ExecContext, error: BaseException, started: float) -> None:
    """Failure boundary: turn an exception into a completed execution."""
    _attach_listeners(ctx)
    ctx.error = error
    logger.debug(f"Execution failed before completion ctx={ctx.id}: {error!r}")

    ctx.bus.emit(EventKind.ERR, error, ctx)
    _finalize(
        ctx,
        ExecResult(
            error=error,
            status=None,
            signal=None,
            duration=_elapsed_ms(started),
            ctx=ctx,
            child=ctx.child,
            stdio=(ctx.stdin, ctx.stdout, ctx.stderr),
        ),
    )


def _decode(data: bytes | None, encoding: str) -> str:
    return data.decode(encoding, "replace") if data else ""


# =============================================================================
# Synchronous path
# =============================================================================


def _sync_input(ctx: ExecContext) -> bytes | None:
    """Resolve stdin for the blocking path.

    Text and bytes are sent as is; file-like objects are read fully. Async
    streams and VoidSink sources cannot be consumed while blocking.
    """
    source = ctx.input
    if source is None:
        return None
    if isinstance(source, str):
        return source.encode(ctx.encoding)
    if isinstance(source, (bytes, bytearray, memoryview)):
        return bytes(source)
    if hasattr(source, "read"):
        data = source.read()
        return data.encode(ctx.encoding) if isinstance(data, str) else data
    raise SpawnSetupError(f"unsupported input for sync mode: {type(source).__name__}")


def _run_sync(ctx: ExecContext, started: float) -> None:
    _attach_listeners(ctx)

    if ctx.signal.cancelled:
        ctx.bus.emit(EventKind.ABORT, ctx.signal, ctx)
        raise SpawnAbortedError(f"execution {ctx.id} cancelled before launch")

    opts = build_spawn_opts(ctx)
    data = _sync_input(ctx)

    process = popen(ctx, opts)
    logger.debug(f"Started subprocess pid={process.pid} cmd={ctx.cmd!r} sync=True")

    def on_cancel(token: CancelToken) -> None:
        _abort(ctx, process)

    remove_listener = ctx.signal.add_listener(on_cancel)
    try:
        stdout, stderr = process.communicate(data)
    finally:
        remove_listener()

    completed = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
    ctx.bus.emit(EventKind.START, completed, ctx)

    if stdout:
        write_chunk(ctx.stdout, stdout)
        ctx.bus.emit(EventKind.STDOUT, stdout, ctx)
    if stderr:
        write_chunk(ctx.stderr, stderr)
        ctx.bus.emit(EventKind.STDERR, stderr, ctx)

    for sink in (ctx.stdout, ctx.stderr):
        if isinstance(sink, VoidSink):
            sink.end()

    status, sig = split_returncode(process.returncode)
    out_text = _decode(stdout, ctx.encoding)
    err_text = _decode(stderr, ctx.encoding)

    # Non-zero exit is not an engine failure: the callback gets no error
    _finalize(
        ctx,
        ExecResult(
            stdout=out_text,
            stderr=err_text,
            stdall=out_text + err_text,
            status=status,
            signal=sig,
            duration=_elapsed_ms(started),
            ctx=ctx,
            stdio=(ctx.stdin, ctx.stdout, ctx.stderr),
        ),
    )


# =============================================================================
# Cancellation
# =============================================================================


def _abort(ctx: ExecContext, process: Any) -> None:
    """Kill the child (tree first when detached) and emit ``abort``."""
    try:
        how = terminate(process, detached=ctx.detached)
        logger.debug(f"Cancelled ctx={ctx.id} pid={process.pid} via {how}")
    except ProcessKillError as e:
        logger.warning(f"Could not terminate cancelled execution ctx={ctx.id}: {e}")
    ctx.bus.emit(EventKind.ABORT, ctx.signal, ctx)


# =============================================================================
# Asynchronous path
# =============================================================================


async def _write_stdin(stdin: asyncio.StreamWriter, chunk: bytes | str, encoding: str) -> None:
    stdin.write(chunk.encode(encoding) if isinstance(chunk, str) else chunk)
    await stdin.drain()


class _SinkPipe:
    """Forward chunks written to a VoidSink into the child's stdin until it ends.

    Subscribes on construction so nothing written after launch is missed.
    """

    def __init__(self, source: VoidSink, stdin: asyncio.StreamWriter, encoding: str) -> None:
        self._source = source
        self._stdin = stdin
        self._encoding = encoding
        self._loop = asyncio.get_running_loop()
        self._ended = asyncio.Event()

        source.on("data", self._on_data)
        source.on("end", self._on_end)
        if source.closed:
            self._ended.set()

    def _on_data(self, chunk: bytes | str) -> None:
        data = chunk.encode(self._encoding) if isinstance(chunk, str) else chunk
        self._loop.call_soon_threadsafe(self._stdin.write, data)

    def _on_end(self) -> None:
        self._loop.call_soon_threadsafe(self._ended.set)

    async def wait(self) -> None:
        try:
            await self._ended.wait()
            await self._stdin.drain()
        finally:
            self.close()

    def close(self) -> None:
        self._source.off("data", self._on_data)
        self._source.off("end", self._on_end)


def _input_source(ctx: ExecContext) -> Any:
    """``ctx.input`` wins; otherwise a caller-supplied stdin stream, if any."""
    if ctx.input is not None:
        return ctx.input
    if not ctx._owns_stdin:
        return ctx.stdin
    return None


async def _feed_input(
    ctx: ExecContext,
    stdin: asyncio.StreamWriter,
    source: Any,
    pipe: _SinkPipe | None,
) -> None:
    """Send the input source to the child, then close its stdin.

    Text and bytes are written in one go. Streams are piped through chunk by
    chunk rather than buffered.
    """
    try:
        if pipe is not None:
            await pipe.wait()
        elif source is None:
            pass
        elif isinstance(source, (str, bytes, bytearray, memoryview)):
            await _write_stdin(stdin, source if isinstance(source, str) else bytes(source), ctx.encoding)
        elif hasattr(source, "__aiter__"):
            async for chunk in source:
                await _write_stdin(stdin, chunk, ctx.encoding)
        elif hasattr(source, "read"):
            while True:
                chunk = await anyio.to_thread.run_sync(source.read, ctx.chunk_size)
                if not chunk:
                    break
                await _write_stdin(stdin, chunk, ctx.encoding)
        else:
            raise SpawnSetupError(f"unsupported input: {type(source).__name__}")
    except (BrokenPipeError, ConnectionResetError) as e:
        # Child exited or closed stdin before reading everything
        logger.debug(f"stdin closed early ctx={ctx.id}: {e}")
    finally:
        stdin.close()
        try:
            await stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError):
            pass


async def _pump(
    ctx: ExecContext,
    stream: asyncio.StreamReader | None,
    fan: FanOut,
    kind: EventKind,
) -> None:
    """Copy one child output stream through its fan-out, emitting per chunk."""
    if stream is None:
        return
    try:
        while True:
            chunk = await stream.read(ctx.chunk_size)
            if not chunk:
                break
            await fan.push(chunk)
            ctx.bus.emit(kind, chunk, ctx)
    finally:
        fan.close()


def _record_error(ctx: ExecContext, error: BaseException) -> None:
    """Runtime error: remember it and emit ``err``; completion comes later."""
    if ctx.error is None:
        ctx.error = error
    ctx.bus.emit(EventKind.ERR, error, ctx)


async def _launch(ctx: ExecContext, started: float) -> None:
    _attach_listeners(ctx)

    if ctx.signal.cancelled:
        ctx.bus.emit(EventKind.ABORT, ctx.signal, ctx)
        raise SpawnAbortedError(f"execution {ctx.id} cancelled before launch")

    opts = build_spawn_opts(ctx)
    try:
        child = await create_process(ctx, opts)
    except OSError as e:
        # No process, so the close notification follows immediately
        logger.debug(f"Subprocess failed to start ctx={ctx.id}: {e}")
        _record_error(ctx, e)
        _finalize(
            ctx,
            ExecResult(
                error=e,
                duration=_elapsed_ms(started),
                ctx=ctx,
                stdio=(ctx.stdin, ctx.stdout, ctx.stderr),
            ),
        )
        return

    ctx.child = child
    logger.debug(f"Started subprocess pid={child.pid} cmd={ctx.cmd!r} detached={ctx.detached}")

    source = _input_source(ctx)
    pipe = None
    if isinstance(source, VoidSink) and child.stdin is not None:
        pipe = _SinkPipe(source, child.stdin, ctx.encoding)

    ctx.bus.emit(EventKind.START, child, ctx)

    loop = asyncio.get_running_loop()
    escalations: list[asyncio.Task[None]] = []

    def abort_on_loop() -> None:
        if ctx.fulfilled is not None:
            return
        _abort(ctx, child)
        if ctx.kill_timeout > 0 and (
            child.returncode is None or (ctx.detached and group_alive(child.pid))
        ):
            escalations.append(
                loop.create_task(escalate(child, detached=ctx.detached, timeout=ctx.kill_timeout))
            )

    def on_cancel(token: CancelToken) -> None:
        try:
            loop.call_soon_threadsafe(abort_on_loop)
        except RuntimeError:
            logger.debug(f"Event loop closed, cannot cancel ctx={ctx.id}")

    stdout_buf: list[bytes] = []
    stderr_buf: list[bytes] = []
    stdall_buf: list[bytes] = []
    out_fan = FanOut(ctx.stdout, stdout_buf, stdall_buf, ctx.encoding)
    err_fan = FanOut(ctx.stderr, stderr_buf, stdall_buf, ctx.encoding)

    remove_listener = ctx.signal.add_listener(on_cancel)
    input_task = asyncio.create_task(_feed_input(ctx, child.stdin, source, pipe))
    try:
        try:
            await asyncio.gather(
                _pump(ctx, child.stdout, out_fan, EventKind.STDOUT),
                _pump(ctx, child.stderr, err_fan, EventKind.STDERR),
            )
            await child.wait()
        except (anyio.get_cancelled_exc_class(), asyncio.CancelledError):
            # Host task cancelled: do not leave the tree running
            logger.debug(f"Execution task cancelled ctx={ctx.id}, terminating pid={child.pid}")
            try:
                terminate(child, detached=ctx.detached)
            except ProcessKillError as e:
                logger.warning(f"Could not terminate pid={child.pid}: {e}")
            raise

        if not input_task.done():
            input_task.cancel()
        try:
            await input_task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            _record_error(ctx, e)

        # Group members may outlive the leader and its pipes
        if escalations:
            await asyncio.gather(*escalations)
    finally:
        remove_listener()
        if not input_task.done():
            input_task.cancel()
        if pipe is not None:
            pipe.close()
        for task in escalations:
            task.cancel()

    for fan in (out_fan, err_fan):
        if fan.error is not None:
            _record_error(ctx, fan.error)

    status, sig = split_returncode(child.returncode)
    out_text = _decode(b"".join(stdout_buf), ctx.encoding)
    err_text = _decode(b"".join(stderr_buf), ctx.encoding)
    all_text = _decode(b"".join(stdall_buf), ctx.encoding)

    _finalize(
        ctx,
        ExecResult(
            stdout=out_text,
            stderr=err_text,
            stdall=all_text,
            status=status,
            signal=sig,
            duration=_elapsed_ms(started),
            ctx=ctx,
            error=ctx.error,
            child=child,
            stdio=(ctx.stdin, ctx.stdout, ctx.stderr),
        ),
    )


async def _run_async(ctx: ExecContext, started: float) -> None:
    """Scheduled job: the whole async lifecycle behind the failure boundary."""
    try:
        await _launch(ctx, started)
    except asyncio.CancelledError as e:
        if ctx.fulfilled is None:
            _fail(ctx, e, started)
        raise
    except Exception as e:
        if ctx.fulfilled is None:
            _fail(ctx, e, started)
        else:
            logger.exception(f"Error after completion (ctx={ctx.id})")


# =============================================================================
# Entry points
# =============================================================================


def invoke(ctx: ExecContext) -> ExecContext:
    """Run a normalized context.

    Sync mode returns with ``ctx.fulfilled`` already set. Async mode returns
    immediately; the outcome arrives through events, the callback, and the
    awaitable context.

    Never raises: every failure is delivered as a result.
    """
    started = time.monotonic()
    try:
        if ctx.sync:
            _run_sync(ctx, started)
        else:
            ctx.scheduler.schedule(lambda: _run_async(ctx, started), ctx)
    except Exception as e:
        if ctx.fulfilled is None:
            _fail(ctx, e, started)
        else:
            logger.exception(f"Error after completion (ctx={ctx.id})")
    return ctx


_SALVAGED_FIELDS = ("id", "callback", "on", "bus", "signal")


def exec_(partial: Mapping[str, Any] | None = None, **overrides: Any) -> ExecContext:
    """Normalize a partial request and invoke it.

    A request that cannot be normalized still completes: the failure is
    delivered on a default context that keeps the caller's callback and
    listeners where those are usable.
    """
    started = time.monotonic()
    try:
        ctx = normalize_ctx(partial, **overrides)
    except Exception as e:
        requested = {**(partial or {}), **overrides}
        salvage = {key: requested[key] for key in _SALVAGED_FIELDS if key in requested}
        try:
            ctx = normalize_ctx(salvage)
        except Exception:
            ctx = normalize_ctx()
        _fail(ctx, e, started)
        return ctx
    return invoke(ctx)


def run(partial: Mapping[str, Any] | None = None, **overrides: Any) -> ExecResult:
    """Blocking convenience: execute in sync mode and return the result."""
    ctx = exec_(partial, **{**overrides, "sync": True})
    return ctx.result()

