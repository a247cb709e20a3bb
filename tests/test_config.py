"""Config 模块测试。

测试 CMDSPAWN_* 环境变量解析和配置管理。
"""

from __future__ import annotations

import logging
import os
from unittest import mock

import pytest

from cmdspawn.config import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_KILL_TIMEOUT,
    Config,
    get_config,
    load_config,
    reload_config,
    setup_logging,
)
from cmdspawn.context import normalize_ctx


class TestDefaults:
    """测试默认值。"""

    def test_defaults(self):
        """未设置任何环境变量。"""
        config = load_config()
        assert config.shell is True
        assert config.detached is True
        assert config.encoding == "utf-8"
        assert config.chunk_size == DEFAULT_CHUNK_SIZE
        assert config.kill_timeout == DEFAULT_KILL_TIMEOUT
        assert config.log_debug is False
        assert config.log_file is None


class TestParseShell:
    """测试 shell 解析。"""

    @pytest.mark.parametrize("value", ["true", "1", "YES", "on"])
    def test_truthy(self, value):
        with mock.patch.dict(os.environ, {"CMDSPAWN_SHELL": value}):
            assert load_config().shell is True

    @pytest.mark.parametrize("value", ["false", "0", "No", "off"])
    def test_falsy(self, value):
        with mock.patch.dict(os.environ, {"CMDSPAWN_SHELL": value}):
            assert load_config().shell is False

    def test_path(self):
        """其他值作为 shell 路径。"""
        with mock.patch.dict(os.environ, {"CMDSPAWN_SHELL": " /bin/bash "}):
            assert load_config().shell == "/bin/bash"

    def test_empty_means_default(self):
        with mock.patch.dict(os.environ, {"CMDSPAWN_SHELL": "  "}):
            assert load_config().shell is True


class TestParseDetached:
    """测试 detached 解析。"""

    def test_disable(self):
        with mock.patch.dict(os.environ, {"CMDSPAWN_DETACHED": "false"}):
            assert load_config().detached is False

    def test_unknown_value_is_false(self):
        """非 true 值视为关闭。"""
        with mock.patch.dict(os.environ, {"CMDSPAWN_DETACHED": "maybe"}):
            assert load_config().detached is False


class TestParseEncoding:
    """测试编码解析。"""

    def test_normalized_name(self):
        with mock.patch.dict(os.environ, {"CMDSPAWN_ENCODING": "Latin-1"}):
            assert load_config().encoding == "iso8859-1"

    def test_unknown_falls_back(self):
        with mock.patch.dict(os.environ, {"CMDSPAWN_ENCODING": "no-such-codec"}):
            assert load_config().encoding == "utf-8"


class TestParseChunkSize:
    """测试块大小解析。"""

    def test_valid(self):
        with mock.patch.dict(os.environ, {"CMDSPAWN_CHUNK_SIZE": "4096"}):
            assert load_config().chunk_size == 4096

    def test_clamped_low(self):
        """小于 1 KiB 时限制为 1024。"""
        with mock.patch.dict(os.environ, {"CMDSPAWN_CHUNK_SIZE": "10"}):
            assert load_config().chunk_size == 1024

    def test_clamped_high(self):
        """大于 1 MiB 时限制为 1048576。"""
        with mock.patch.dict(os.environ, {"CMDSPAWN_CHUNK_SIZE": "99999999"}):
            assert load_config().chunk_size == 1024 * 1024

    def test_invalid(self):
        with mock.patch.dict(os.environ, {"CMDSPAWN_CHUNK_SIZE": "big"}):
            assert load_config().chunk_size == DEFAULT_CHUNK_SIZE


class TestParseKillTimeout:
    """测试 SIGKILL 升级时间解析。"""

    def test_valid(self):
        with mock.patch.dict(os.environ, {"CMDSPAWN_KILL_TIMEOUT": "0.5"}):
            assert load_config().kill_timeout == 0.5

    def test_zero_disables(self):
        with mock.patch.dict(os.environ, {"CMDSPAWN_KILL_TIMEOUT": "0"}):
            assert load_config().kill_timeout == 0.0

    def test_negative_clamped(self):
        with mock.patch.dict(os.environ, {"CMDSPAWN_KILL_TIMEOUT": "-3"}):
            assert load_config().kill_timeout == 0.0

    def test_max(self):
        with mock.patch.dict(os.environ, {"CMDSPAWN_KILL_TIMEOUT": "600"}):
            assert load_config().kill_timeout == 60.0

    def test_invalid(self):
        with mock.patch.dict(os.environ, {"CMDSPAWN_KILL_TIMEOUT": "soon"}):
            assert load_config().kill_timeout == DEFAULT_KILL_TIMEOUT


class TestLogDebug:
    """测试调试日志配置。"""

    def test_log_file_generated(self, tmp_path):
        """开启调试时生成临时目录下的日志文件路径。"""
        with mock.patch.dict(os.environ, {"CMDSPAWN_LOG_DEBUG": "1"}), \
                mock.patch("tempfile.gettempdir", return_value=str(tmp_path)):
            config = load_config()
        assert config.log_debug is True
        assert config.log_file is not None
        assert config.log_file.startswith(str(tmp_path.resolve()))
        assert "cmdspawn_debug_" in config.log_file

    def test_setup_logging_levels(self):
        """root 为 WARNING，cmdspawn 命名空间为 INFO。"""
        root = logging.getLogger()
        saved_handlers = list(root.handlers)
        saved_level = root.level
        try:
            root.handlers.clear()
            setup_logging(Config())
            assert root.level == logging.WARNING
            assert logging.getLogger("cmdspawn").level == logging.INFO
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)
            logging.getLogger("cmdspawn").setLevel(logging.NOTSET)


class TestGlobalConfig:
    """测试全局配置实例。"""

    def test_get_config_cached(self):
        assert get_config() is get_config()

    def test_reload_config(self):
        first = get_config()
        with mock.patch.dict(os.environ, {"CMDSPAWN_DETACHED": "false"}):
            second = reload_config()
        assert second is not first
        assert second.detached is False

    def test_defaults_feed_normalize_ctx(self):
        """配置值作为上下文默认值。"""
        with mock.patch.dict(
            os.environ,
            {"CMDSPAWN_SHELL": "false", "CMDSPAWN_KILL_TIMEOUT": "1.5"},
        ):
            reload_config()
            ctx = normalize_ctx({"cmd": "true"})
        assert ctx.shell is False
        assert ctx.kill_timeout == 1.5

    def test_repr(self):
        assert "kill_timeout=2.0" in repr(Config())
