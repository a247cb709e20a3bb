"""ExecContext / normalize_ctx 测试。"""

from __future__ import annotations

import os

import pytest

from cmdspawn.cancel import CancelToken
from cmdspawn.context import PIPE_STDIO, ExecContext, ExecResult, normalize_ctx
from cmdspawn.errors import SpawnSetupError
from cmdspawn.events import EventBus
from cmdspawn.scheduler import InlineScheduler, get_default_scheduler
from cmdspawn.sink import VoidSink


class TestNormalizeDefaults:
    """测试默认值填充。"""

    def test_empty_request(self):
        ctx = normalize_ctx()
        assert ctx.cmd == ""
        assert ctx.args == ()
        assert ctx.cwd == os.getcwd()
        assert ctx.env == dict(os.environ)
        assert ctx.shell is True
        assert ctx.detached is True
        assert ctx.sync is False
        assert ctx.input is None
        assert ctx.stdio == PIPE_STDIO
        assert isinstance(ctx.stdin, VoidSink)
        assert isinstance(ctx.stdout, VoidSink)
        assert isinstance(ctx.stderr, VoidSink)
        assert ctx.spawn_opts == {}
        assert isinstance(ctx.signal, CancelToken)
        assert isinstance(ctx.bus, EventBus)
        assert ctx.scheduler is get_default_scheduler()
        assert ctx.on == {}

    def test_outcome_fields_unset(self):
        ctx = normalize_ctx({"cmd": "ls"})
        assert ctx.child is None
        assert ctx.fulfilled is None
        assert ctx.error is None
        assert not ctx.future.done()
        assert ctx.done is False

    def test_fresh_instances_per_context(self):
        """每个上下文拥有独立的 id、env、sink、token 和总线。"""
        a = normalize_ctx()
        b = normalize_ctx()
        assert a.id != b.id
        assert a.env is not b.env
        assert a.stdout is not b.stdout
        assert a.signal is not b.signal
        assert a.bus is not b.bus

    def test_callback_default_is_noop(self):
        ctx = normalize_ctx()
        assert ctx.callback(None, ExecResult()) is None


class TestNormalizeOverrides:
    """测试覆盖规则。"""

    def test_later_partials_win(self):
        ctx = normalize_ctx({"cmd": "a", "sync": True}, {"cmd": "b"}, None, cwd="/tmp")
        assert ctx.cmd == "b"
        assert ctx.sync is True
        assert ctx.cwd == "/tmp"

    def test_args_coerced_to_tuple(self):
        ctx = normalize_ctx({"cmd": "echo", "args": ["a", "b"]})
        assert ctx.args == ("a", "b")

    def test_env_copied(self):
        env = {"FOO": "1"}
        ctx = normalize_ctx({"env": env})
        env["FOO"] = "2"
        assert ctx.env == {"FOO": "1"}

    def test_supplied_fields_kept(self):
        token = CancelToken()
        bus = EventBus()
        scheduler = InlineScheduler()
        ctx = normalize_ctx({"signal": token, "bus": bus, "scheduler": scheduler, "id": "fixed"})
        assert ctx.signal is token
        assert ctx.bus is bus
        assert ctx.scheduler is scheduler
        assert ctx.id == "fixed"

    def test_stdin_ownership(self):
        """只有默认 stdin 由引擎拥有。"""
        assert normalize_ctx()._owns_stdin is True
        assert normalize_ctx({"stdin": VoidSink()})._owns_stdin is False

    def test_explicit_pipe_stdio_accepted(self):
        ctx = normalize_ctx({"stdio": ["pipe", "pipe", "pipe"]})
        assert ctx.stdio == PIPE_STDIO


class TestNormalizeErrors:
    """测试结构性错误。"""

    def test_unknown_field(self):
        with pytest.raises(SpawnSetupError, match="unknown execution field"):
            normalize_ctx({"command": "ls"})

    @pytest.mark.parametrize("key", ["child", "fulfilled", "error", "future"])
    def test_outcome_field_rejected(self, key):
        with pytest.raises(SpawnSetupError, match="set by the engine"):
            normalize_ctx({key: None})

    def test_private_field_rejected(self):
        with pytest.raises(SpawnSetupError):
            normalize_ctx({"_owns_stdin": True})

    def test_non_pipe_stdio(self):
        with pytest.raises(SpawnSetupError, match="stdio must be"):
            normalize_ctx({"stdio": ("inherit", "pipe", "pipe")})


class TestExecResult:
    """测试结果对象。"""

    def test_ok(self):
        assert ExecResult(status=0).ok is True
        assert ExecResult(status=1).ok is False
        assert ExecResult(status=0, error=RuntimeError()).ok is False
        assert ExecResult(signal="SIGTERM").ok is False

    def test_str_is_stdout(self):
        assert str(ExecResult(stdout="out\n")) == "out\n"


class TestExecContext:
    """测试上下文辅助方法。"""

    def test_cancel_delegates_to_token(self):
        ctx = normalize_ctx()
        assert ctx.cancel("stop") is True
        assert ctx.signal.cancelled is True
        assert ctx.signal.reason == "stop"

    def test_result_waits_for_future(self):
        ctx = normalize_ctx()
        result = ExecResult(stdout="x")
        ctx.future.set_result(result)
        assert ctx.result(timeout=1) is result

    @pytest.mark.asyncio
    async def test_awaitable(self):
        ctx = normalize_ctx()
        result = ExecResult(stdout="x")
        ctx.future.set_result(result)
        assert await ctx is result

    def test_repr(self):
        ctx = ExecContext(id="0123456789abcdef", cmd="ls", args=("-l",))
        assert repr(ctx) == "ExecContext(id=01234567..., cmd='ls', args=['-l'], sync=False, pending)"
