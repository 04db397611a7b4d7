"""depkit 命令行接口

CLI 按领域拆分为子模块，每个模块注册自己的命令到 main group。
"""

import os

import click

from depkit import __version__
from depkit.utils.logger import setup_logging


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """depkit - 依赖包安装工具"""
    setup_logging(
        level=os.getenv("DEPKIT_LOG_LEVEL", "INFO"),
        json_output=os.getenv("DEPKIT_LOG_JSON", "") == "1",
    )


# 注册各领域子命令
from depkit.cli.cmd_install import register as _reg_install  # noqa: E402
from depkit.cli.cmd_cache import register as _reg_cache  # noqa: E402

_reg_install(main)
_reg_cache(main)
