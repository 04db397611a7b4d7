"""包构建命令执行

全局安装时，包清单里的 install 字段（如 "make install"）在包目录中执行。
CommandExecutor 协议隔离子进程调用，测试注入记录型实现即可断言命令与环境。
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import Protocol

from depkit.core.exceptions import ExecutionError

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """构建命令的退出码与输出"""

    returncode: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.returncode == 0


class CommandExecutor(Protocol):
    """执行一条构建命令；env 为完整环境"""

    def execute(
        self,
        cmd: str | list[str],
        *,
        cwd: str = ".",
        env: dict[str, str] | None = None,
        timeout: int | None = None,
    ) -> CommandResult:
        ...


class LocalExecutor:
    """在本机包目录中以子进程执行构建命令，不经过 shell 解释"""

    def execute(
        self,
        cmd: str | list[str],
        *,
        cwd: str = ".",
        env: dict[str, str] | None = None,
        timeout: int | None = None,
    ) -> CommandResult:
        args = shlex.split(cmd) if isinstance(cmd, str) else cmd
        try:
            r = subprocess.run(
                args, capture_output=True, text=True,
                cwd=cwd, env=env, check=False, timeout=timeout,
            )
        except FileNotFoundError as e:
            # 构建工具（make、cmake 等）不在 PATH 中
            return CommandResult(returncode=127, stdout="", stderr=str(e))
        return CommandResult(r.returncode, r.stdout, r.stderr)


def run_cmd(
    cmd: str, *, cwd: str = ".",
    env: dict[str, str] | None = None,
    label: str = "构建",
    executor: CommandExecutor | None = None,
) -> CommandResult:
    """执行构建命令，失败抛 ExecutionError

    env 只需给出要覆盖的变量（如 PREFIX），其余继承当前进程环境。
    错误信息只保留 stderr 末尾，编译器输出通常很长而关键行在最后。
    """
    full_env = {**os.environ, **(env or {})}
    logger.info("%s: %s (cwd=%s)", label, cmd, cwd)
    r = (executor or LocalExecutor()).execute(cmd, cwd=cwd, env=full_env)
    if not r.success:
        tail = r.stderr.strip()[-500:]
        raise ExecutionError(f"{label}失败 (rc={r.returncode}): {tail}")
    logger.debug("%s 完成", label)
    return r
