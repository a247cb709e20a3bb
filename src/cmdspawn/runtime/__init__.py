"""Runtime module for subprocess creation and process-tree termination.

This module provides isolated process launch with detached process groups
and reliable termination for the execution engine.
"""

from __future__ import annotations

from .process_runner import (
    IS_WINDOWS,
    build_spawn_opts,
    kill_process_tree,
    split_returncode,
    terminate,
)

__all__ = [
    "IS_WINDOWS",
    "build_spawn_opts",
    "kill_process_tree",
    "split_returncode",
    "terminate",
]
