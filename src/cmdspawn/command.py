"""命令行模板构建与参数转义。

把字面量片段与参数值交替拼接成一条命令字符串，参数值经过 shell 转义：
- 只包含安全字符（字母、数字、_./:=@-）的参数或空字符串原样保留
- 其他参数使用 $'...' 形式，并转义反斜杠、单引号和控制字符
- 列表参数展开为空格分隔、逐个转义的多个 token
- 之前的执行结果按其 stdout 替换（去掉末尾的一个换行）

任何参数是待定的异步值（awaitable）时，整个构建变为异步：先解析所有参数，再同步构建。

Example:
    ```python
    sh("echo {}", "hello world", sync=True).stdout   # 'hello world\\n'

    async def main():
        branch = sh("git branch --show-current")
        result = await sh("git log -1 {}", branch)
    ```
"""

from __future__ import annotations

import asyncio
import inspect
import re
import shutil
from string import Formatter
from typing import Any, Awaitable, Callable, Sequence, cast

from .context import ExecResult
from .engine import exec_

__all__ = [
    "quote",
    "substitute",
    "build_cmd",
    "parse_template",
    "sh",
]

# 安全字符集合（ASCII 单词字符加 ./:=@-）
_SAFE_TOKEN = re.compile(r"^[\w./:=@-]+$", re.ASCII)

# 转义顺序：反斜杠必须最先处理
_ESCAPES = (
    ("\\", "\\\\"),
    ("'", "\\'"),
    ("\f", "\\f"),
    ("\n", "\\n"),
    ("\r", "\\r"),
    ("\t", "\\t"),
    ("\v", "\\v"),
    ("\0", "\\0"),
)

Quote = Callable[[str], str]
Substitute = Callable[[Any], str]


def quote(arg: str) -> str:
    """转义单个参数，使其可以安全地放入 shell 命令行。

    Args:
        arg: 原始参数

    Returns:
        安全字符或空字符串原样返回，否则返回 $'...' 形式
    """
    if arg == "" or _SAFE_TOKEN.match(arg):
        return arg

    escaped = arg
    for char, replacement in _ESCAPES:
        escaped = escaped.replace(char, replacement)
    return f"$'{escaped}'"


def substitute(arg: Any) -> str:
    """把参数值转换为字符串。

    带有字符串 stdout 属性的对象（执行结果）替换为 stdout，并去掉末尾的一个换行。
    """
    stdout = getattr(arg, "stdout", None)
    if isinstance(stdout, str):
        return stdout[:-1] if stdout.endswith("\n") else stdout
    return f"{arg}"


def build_cmd(
    quote: Quote,
    pieces: Sequence[str],
    args: Sequence[Any],
    subs: Substitute = substitute,
) -> str | Awaitable[str]:
    """交替拼接字面量片段和转义后的参数。

    Args:
        quote: 转义函数
        pieces: 字面量片段（比参数多一个）
        args: 参数值
        subs: 参数值到字符串的转换函数

    Returns:
        命令字符串；存在 awaitable 参数时返回协程

    Raises:
        ValueError: 片段与参数数量不匹配
    """
    if len(pieces) != len(args) + 1:
        raise ValueError(f"expected {len(args) + 1} template pieces, got {len(pieces)}")

    if any(inspect.isawaitable(arg) for arg in args):
        return _build_deferred(quote, pieces, args, subs)

    cmd = pieces[0]
    for i, arg in enumerate(args):
        if isinstance(arg, (list, tuple)):
            token = " ".join(quote(subs(item)) for item in arg)
        else:
            token = quote(subs(arg))
        cmd += token + pieces[i + 1]
    return cmd


async def _resolve(arg: Any) -> Any:
    return await arg if inspect.isawaitable(arg) else arg


async def _build_deferred(
    quote: Quote,
    pieces: Sequence[str],
    args: Sequence[Any],
    subs: Substitute,
) -> str:
    resolved = await asyncio.gather(*(_resolve(arg) for arg in args))
    return cast(str, build_cmd(quote, pieces, resolved, subs))


def parse_template(template: str) -> list[str]:
    """把 str.format 风格的模板拆成字面量片段。

    只支持位置占位符 ``{}``；``{{`` 和 ``}}`` 表示字面量花括号。

    Raises:
        ValueError: 模板包含命名占位符、格式说明或转换
    """
    pieces = [""]
    for literal, field_name, format_spec, conversion in Formatter().parse(template):
        pieces[-1] += literal
        if field_name is None:
            continue
        if field_name != "" or format_spec or conversion:
            raise ValueError(f"only bare '{{}}' placeholders are supported, got {{{field_name}}}")
        pieces.append("")
    return pieces


def _template_shell() -> bool | str:
    """$'...' 转义需要 bash 兼容的 shell，可用时优先使用 bash。"""
    return shutil.which("bash") or True


def sh(template: str, *args: Any, **opts: Any) -> Any:
    """按模板构建命令并执行。

    Args:
        template: 命令模板，例如 ``"ls -la {}"``
        *args: 依次替换占位符的参数
        **opts: 执行字段（sync、cwd、env、on、callback 等）

    Returns:
        同步模式返回 ExecResult；异步模式返回可 await 的对象（结果为 ExecResult）

    Raises:
        ValueError: 模板与参数不匹配
        TypeError: 同步模式收到待定的异步参数
    """
    pieces = parse_template(template)
    cmd = build_cmd(quote, pieces, args)
    opts.setdefault("shell", _template_shell())

    if not isinstance(cmd, str):
        if opts.get("sync"):
            if inspect.iscoroutine(cmd):
                cmd.close()
            raise TypeError("sync mode cannot substitute pending asynchronous values")

        async def deferred() -> ExecResult:
            command = await cmd
            return await exec_({**opts, "cmd": command})

        return deferred()

    ctx = exec_({**opts, "cmd": cmd})
    if opts.get("sync"):
        return ctx.result()
    return ctx
