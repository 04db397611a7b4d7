"""CLI — 缓存管理命令"""

from __future__ import annotations

import time

import click

from depkit.core.config import Config
from depkit.core.dep.cache import PackageCache
from depkit.core.dep.models import PackageIdentifier
from depkit.core.exceptions import DepkitError, ValidationError


def register(group: click.Group) -> None:
    group.add_command(cache)


def _open_cache(config_path: str) -> PackageCache:
    try:
        cfg = Config.from_file(config_path)
    except (DepkitError, OSError, ValueError) as e:
        raise click.ClickException(f"配置加载失败: {e}") from e
    return PackageCache(cfg.cache_dir, cfg.cache_ttl_seconds)


@click.group()
def cache() -> None:
    """本地包缓存管理"""


@cache.command(name="list")
@click.option("--config", "config_path", default="configs/default.yml", help="配置文件路径")
def list_cache(config_path: str) -> None:
    """列出缓存条目"""
    entries = _open_cache(config_path).list_entries()
    if not entries:
        click.echo("缓存为空。")
        return
    for e in entries:
        stamp = time.strftime("%Y-%m-%d %H:%M", time.localtime(e["stored_at"]))
        marker = " (已过期)" if e["expired"] else ""
        click.echo(f"  {e['key']:40s} {stamp}{marker}")


@cache.command(name="evict")
@click.argument("slug")
@click.option("--config", "config_path", default="configs/default.yml", help="配置文件路径")
def evict(slug: str, config_path: str) -> None:
    """清除单个包的缓存（author/name[@version]）"""
    try:
        ident = PackageIdentifier.parse(slug)
    except ValidationError as e:
        raise click.BadParameter(str(e), param_hint="SLUG") from e
    if _open_cache(config_path).evict(ident.cache_key):
        click.echo(f"已清除: {ident.slug}")
    else:
        click.echo(f"缓存中没有: {ident.slug}")


@cache.command(name="clear")
@click.option("--config", "config_path", default="configs/default.yml", help="配置文件路径")
def clear(config_path: str) -> None:
    """清空全部缓存"""
    removed = _open_cache(config_path).clear()
    click.echo(f"已删除 {removed} 项缓存。")
