"""cmdspawn 环境变量配置管理。

环境变量:
    CMDSPAWN_SHELL: 默认的 shell 解释模式
        - true/1/yes = 通过系统默认 shell 执行 (默认)
        - false/0/no = 直接执行程序，不经过 shell
        - 其他值 = 作为 shell 可执行文件路径，例: "/bin/bash"

    CMDSPAWN_DETACHED: 是否默认在新的进程组中启动子进程
        - true/1/yes = 新进程组 (默认，取消时可以整组终止)
        - false/0/no = 与父进程共享进程组

    CMDSPAWN_ENCODING: 捕获输出的文本编码
        - 默认 utf-8，无法解码的字节会被替换

    CMDSPAWN_CHUNK_SIZE: 异步模式下每次从管道读取的字节数
        - 默认 65536，限制在 1024-1048576 范围

    CMDSPAWN_KILL_TIMEOUT: 取消后 SIGTERM 升级为 SIGKILL 的等待时间（秒）
        - 默认 2.0 秒，0 表示不升级，上限 60 秒

    CMDSPAWN_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)
"""

from __future__ import annotations

import codecs
import logging
import os
import sys
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

__all__ = [
    "Config",
    "load_config",
    "get_config",
    "reload_config",
    "setup_logging",
]

DEFAULT_CHUNK_SIZE = 65536
DEFAULT_KILL_TIMEOUT = 2.0

_TRUE_VALUES = ("true", "1", "yes", "on")
_FALSE_VALUES = ("false", "0", "no", "off")


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in _TRUE_VALUES


def _parse_shell(value: str | None) -> bool | str:
    """解析 shell 环境变量。

    Args:
        value: 布尔字符串或 shell 可执行文件路径

    Returns:
        True/False，或者 shell 路径字符串
    """
    if value is None or not value.strip():
        return True
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    return value.strip()


def _parse_encoding(value: str | None) -> str:
    """解析编码名称，未知编码回退到 utf-8。"""
    if not value or not value.strip():
        return "utf-8"
    try:
        return codecs.lookup(value.strip()).name
    except LookupError:
        return "utf-8"


def _parse_chunk_size(value: str | None) -> int:
    """解析管道读取块大小。"""
    if not value:
        return DEFAULT_CHUNK_SIZE
    try:
        size = int(value)
        return max(1024, min(size, 1024 * 1024))  # 限制在 1 KiB - 1 MiB 范围
    except ValueError:
        return DEFAULT_CHUNK_SIZE


def _parse_kill_timeout(value: str | None) -> float:
    """解析 SIGKILL 升级等待时间。"""
    if not value:
        return DEFAULT_KILL_TIMEOUT
    try:
        timeout = float(value)
        return max(0.0, min(timeout, 60.0))
    except ValueError:
        return DEFAULT_KILL_TIMEOUT


@dataclass
class Config:
    """cmdspawn 配置。

    这些值只作为 normalize_ctx() 的默认值，调用方传入的字段始终优先。

    Attributes:
        shell: 默认 shell 模式（True/False 或 shell 路径）
        detached: 默认是否在新进程组中启动
        encoding: 捕获输出的解码编码
        chunk_size: 异步读取块大小（字节）
        kill_timeout: 取消后升级为 SIGKILL 的等待时间（秒，0 = 不升级）
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
    """

    shell: bool | str = True
    detached: bool = True
    encoding: str = "utf-8"
    chunk_size: int = DEFAULT_CHUNK_SIZE
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    log_debug: bool = False
    log_file: str | None = None

    def __repr__(self) -> str:
        return (
            f"Config(shell={self.shell}, "
            f"detached={self.detached}, "
            f"encoding={self.encoding}, "
            f"chunk_size={self.chunk_size}, "
            f"kill_timeout={self.kill_timeout}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file})"
        )


def _generate_log_file_path() -> str:
    """生成日志文件路径。

    Returns:
        临时目录下的日志文件绝对路径
    """
    log_dir = Path(tempfile.gettempdir()) / "cmdspawn"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"cmdspawn_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get("CMDSPAWN_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        shell=_parse_shell(os.environ.get("CMDSPAWN_SHELL")),
        detached=_parse_bool(os.environ.get("CMDSPAWN_DETACHED"), default=True),
        encoding=_parse_encoding(os.environ.get("CMDSPAWN_ENCODING")),
        chunk_size=_parse_chunk_size(os.environ.get("CMDSPAWN_CHUNK_SIZE")),
        kill_timeout=_parse_kill_timeout(os.environ.get("CMDSPAWN_KILL_TIMEOUT")),
        log_debug=log_debug,
        log_file=log_file,
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config


def setup_logging(config: Config | None = None) -> None:
    """配置 cmdspawn 命名空间的日志输出。

    库默认不安装任何 handler；嵌入方可以调用此函数获得与 CLI 工具一致的输出格式。

    Args:
        config: 配置实例（默认使用全局配置）
    """
    config = config or get_config()
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        # LOG_DEBUG 模式：输出到临时文件
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        # 默认模式：输出到 stderr
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    # 配置 root logger（第三方库）为 WARNING，减少噪音
    logging.basicConfig(
        level=logging.WARNING,
        handlers=log_handlers,
    )
    # 只对 cmdspawn 命名空间启用详细日志
    logging.getLogger("cmdspawn").setLevel(log_level)
