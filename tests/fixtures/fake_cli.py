#!/usr/bin/env python3
"""Long-running child process for cancellation tests.

Usage:
    python fake_cli.py [--duration SECONDS] [--interval SECONDS]
                       [--spawn-child] [--pid-file PATH] [--ignore-term]
                       [--child-ignore-term]

Arguments:
    --duration: Total duration to run (default: 30 seconds)
    --interval: Interval between ticks (default: 0.2 seconds)
    --spawn-child: Start a grandchild (this script again) before ticking
    --pid-file: Append our pid (and the grandchild's) to this file
    --ignore-term: Ignore SIGTERM so only SIGKILL stops the process
    --child-ignore-term: Only the spawned child ignores SIGTERM

Each tick prints "tick N" to stdout. On SIGTERM (unless ignored) the script
prints "terminated" and exits with 143.
"""

from __future__ import annotations

import argparse
import os
import signal
import subprocess
import sys
import time


def handle_term(signum: int, frame) -> None:
    print("terminated", flush=True)
    sys.exit(128 + signum)


def write_pid(path: str, pid: int) -> None:
    with open(path, "a", encoding="utf-8") as f:
        f.write(f"{pid}\n")


def main() -> int:
    parser = argparse.ArgumentParser(description="Fake child for testing")
    parser.add_argument("--duration", type=float, default=30.0)
    parser.add_argument("--interval", type=float, default=0.2)
    parser.add_argument("--spawn-child", action="store_true")
    parser.add_argument("--pid-file", type=str, default=None)
    parser.add_argument("--ignore-term", action="store_true")
    parser.add_argument("--child-ignore-term", action="store_true")
    args = parser.parse_args()

    if args.ignore_term:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
    else:
        signal.signal(signal.SIGTERM, handle_term)

    if args.pid_file:
        write_pid(args.pid_file, os.getpid())

    if args.spawn_child:
        cmd = [sys.executable, __file__, "--duration", str(args.duration)]
        if args.pid_file:
            cmd += ["--pid-file", args.pid_file]
        if args.ignore_term or args.child_ignore_term:
            cmd.append("--ignore-term")
        # Inherits our process group
        subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)

    print("ready", flush=True)

    deadline = time.monotonic() + args.duration
    tick = 0
    while time.monotonic() < deadline:
        tick += 1
        print(f"tick {tick}", flush=True)
        time.sleep(args.interval)
    return 0


if __name__ == "__main__":
    sys.exit(main())
