"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import os
import shutil
import sys
from pathlib import Path
from unittest import mock

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

# 测试辅助脚本目录
FIXTURES_DIR = PROJECT_ROOT / "tests" / "fixtures"

from cmdspawn.config import reload_config  # noqa: E402
from cmdspawn.runtime import IS_WINDOWS  # noqa: E402


@pytest.fixture
def project_root() -> Path:
    """项目根目录。"""
    return PROJECT_ROOT


@pytest.fixture
def fake_cli() -> Path:
    """模拟长时间运行的子进程脚本。"""
    return FIXTURES_DIR / "fake_cli.py"


@pytest.fixture
def temp_workspace(tmp_path: Path) -> Path:
    """临时工作目录。"""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return workspace


@pytest.fixture(autouse=True)
def clean_config():
    """每个测试使用不受 CMDSPAWN_* 环境变量影响的默认配置。"""
    env = {k: v for k, v in os.environ.items() if not k.startswith("CMDSPAWN_")}
    with mock.patch.dict(os.environ, env, clear=True):
        reload_config()
        yield
    reload_config()


@pytest.fixture
def posix_only():
    """跳过 Windows。"""
    if IS_WINDOWS:
        pytest.skip("POSIX only")


@pytest.fixture
def bash_path() -> str:
    """bash 可执行文件路径（不存在时跳过）。"""
    path = shutil.which("bash")
    if path is None:
        pytest.skip("bash not available")
    return path
