"""CLI — 安装命令"""

from __future__ import annotations

import logging

import click

from depkit.core.config import Config, InstallOptions
from depkit.core.exceptions import DepkitError
from depkit.services.container import ServiceContainer


def register(group: click.Group) -> None:
    group.add_command(install)


@click.command()
@click.argument("packages", nargs=-1)
@click.option("-o", "--out", "out_dir", default=None, help="输出目录 [deps]")
@click.option("-P", "--prefix", default="", help="安装前缀（通常为 /usr/local）")
@click.option("-q", "--quiet", is_flag=True, help="关闭详细输出")
@click.option("-v", "--verbose", is_flag=True, help="输出调试日志")
@click.option("-d", "--dev", is_flag=True, help="同时安装开发依赖")
@click.option("-S", "--save", is_flag=True, help="把依赖保存到清单 dependencies 段")
@click.option("-D", "--save-dev", is_flag=True, help="把依赖保存到清单 development 段")
@click.option("-f", "--force", is_flag=True, help="强制重新拉取，覆盖已安装的包")
@click.option("-c", "--skip-cache", is_flag=True, help="安装时跳过缓存")
@click.option("-g", "--global", "global_install", is_flag=True,
              help="全局安装: 不写入输出目录，执行包的构建命令")
@click.option("-t", "--token", default="", help="访问私有内容的令牌")
@click.option("-C", "--concurrency", type=click.IntRange(min=1), default=None,
              help="并发安装数（默认取配置）")
@click.option("--config", "config_path", default="configs/default.yml", help="配置文件路径")
def install(
    packages: tuple[str, ...], out_dir: str | None, prefix: str,
    quiet: bool, verbose: bool, dev: bool, save: bool, save_dev: bool,
    force: bool, skip_cache: bool, global_install: bool, token: str,
    concurrency: int | None, config_path: str,
) -> None:
    """安装依赖包；不指定包名时安装当前清单中的全部依赖"""
    if quiet:
        logging.getLogger().setLevel(logging.WARNING)
    elif verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        cfg = Config.from_file(config_path)
    except (DepkitError, OSError, ValueError) as e:
        raise click.ClickException(f"配置加载失败: {e}") from e

    options = InstallOptions(
        out_dir=out_dir or cfg.out_dir,
        prefix=prefix,
        token=token,
        verbose=not quiet,
        dev=dev,
        save=save,
        save_dev=save_dev,
        force=force,
        global_install=global_install,
        skip_cache=skip_cache,
        concurrency=concurrency or 0,
    )
    container = ServiceContainer(cfg, options)

    try:
        report = container.installer.install(container.root_manifest, list(packages))
    except DepkitError as e:
        click.echo(f"error: {e}", err=True)
        raise SystemExit(1) from e

    if not report.success:
        click.echo(f"error: {report.message()}", err=True)
        raise SystemExit(report.exit_code)
    if not quiet:
        click.echo(report.message())
    for err in report.save_errors:
        click.echo(f"warning: {err}", err=True)
